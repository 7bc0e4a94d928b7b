"""
Profit Event Generator — turns a recipient's daily total into a handful of
timestamped increments spread over the rest of the local day.

Invariants for every (recipient, day):
- amounts sum to the daily total (the last amount absorbs float drift)
- due times lie strictly between generation time and local midnight
- one batch per day: regenerating discards the pending batch first and only
  emits what is still owed after delivered / in-flight events
"""

import logging
import random
from datetime import datetime, time, timedelta
from typing import Dict, List, Tuple

import pytz

import config
from database import ProfitEvent, Recipient, utcnow

logger = logging.getLogger("emission.profit_generator")

SUM_TOLERANCE = 1e-6

# Tariff plans: daily percent paid on the balance
TARIFF_PLANS = [
    {"name": "Bronze", "min_deposit": 10, "max_deposit": 99, "daily_percent": 0.5},
    {"name": "Silver", "min_deposit": 100, "max_deposit": 499, "daily_percent": 1.0},
    {"name": "Gold", "min_deposit": 500, "max_deposit": 999, "daily_percent": 2.0},
    {"name": "Platinum", "min_deposit": 1000, "max_deposit": 4999, "daily_percent": 3.0},
    {"name": "Diamond", "min_deposit": 5000, "max_deposit": 19999, "daily_percent": 5.0},
    {"name": "Black", "min_deposit": 20000, "max_deposit": float("inf"), "daily_percent": 7.0},
]


def get_tariff_plan(balance: float) -> Dict:
    """Plan whose deposit range contains the balance (Bronze when none does)"""
    for plan in TARIFF_PLANS:
        if plan["min_deposit"] <= balance <= plan["max_deposit"]:
            return plan
    # Gaps between integer plan bounds (e.g. 99.5) belong to the lower plan
    for plan in reversed(TARIFF_PLANS):
        if balance >= plan["min_deposit"]:
            return plan
    return TARIFF_PLANS[0]


def daily_total_for_balance(balance: float) -> float:
    if balance <= 0:
        return 0.0
    plan = get_tariff_plan(balance)
    return balance * plan["daily_percent"] / 100


def local_day_bounds(now: datetime, tz) -> Tuple[str, datetime]:
    """
    Returns (day key, end of day) for the local calendar day containing `now`.
    End of day is the next local midnight, as an aware UTC datetime.
    """
    local_now = now.astimezone(tz)
    next_midnight = tz.localize(datetime.combine(local_now.date() + timedelta(days=1), time.min))
    return local_now.strftime("%Y-%m-%d"), next_midnight.astimezone(pytz.utc)


def split_amount(total: float, count: int, rng: random.Random = None) -> List[float]:
    """
    Split `total` into `count` positive amounts with random weights.
    The last amount is total minus the others so the sum is exact.
    """
    rng = rng or random
    if count <= 0 or total <= 0:
        return []
    # 1 - random() lies in (0, 1], so no weight is ever zero
    weights = [1.0 - rng.random() for _ in range(count)]
    weight_sum = sum(weights)
    amounts = [total * w / weight_sum for w in weights[:-1]]
    amounts.append(total - sum(amounts))
    return amounts


def draw_due_times(now: datetime, end_of_day: datetime, count: int, rng: random.Random = None) -> List[datetime]:
    """`count` instants drawn uniformly from the open interval (now, end_of_day), ascending"""
    rng = rng or random
    span_us = int((end_of_day - now) / timedelta(microseconds=1))
    if count <= 0 or span_us < 2:
        return []
    offsets = sorted(rng.randint(1, span_us - 1) for _ in range(count))
    return [now + timedelta(microseconds=offset) for offset in offsets]


def generate_profit_events(
    recipient_id: str,
    daily_total: float,
    now: datetime,
    tz=None,
    count_range: Tuple[int, int] = None,
    rng: random.Random = None,
    amount_to_emit: float = None,
    end_of_day: datetime = None,
) -> List[Dict]:
    """
    Build (but do not persist) one batch of events for a recipient.

    `amount_to_emit` defaults to the daily total; regeneration passes what is
    still owed. `end_of_day` defaults to the next local midnight. Returns []
    for a zero total or when `now` is at or past the end of the day.
    """
    rng = rng or random
    tz = tz or pytz.timezone(config.TARGET_TIMEZONE)
    low, high = count_range or (config.PROFIT_EVENTS_MIN, config.PROFIT_EVENTS_MAX)
    amount = daily_total if amount_to_emit is None else amount_to_emit

    if amount <= SUM_TOLERANCE:
        return []

    day, local_end = local_day_bounds(now, tz)
    end_of_day = end_of_day or local_end
    if now >= end_of_day:
        return []

    count = rng.randint(low, high)
    due_times = draw_due_times(now, end_of_day, count, rng)
    if not due_times:
        return []

    amounts = split_amount(amount, len(due_times), rng)
    return [
        {
            "recipient_id": recipient_id,
            "amount": value,
            "due_at": due_at,
            "daily_total": daily_total,
            "day": day,
        }
        for value, due_at in zip(amounts, due_times)
    ]


class ProfitEventGenerator:
    """
    Persists daily batches.

    Usage:
        generator = ProfitEventGenerator()
        generator.generate_for_recipient("12345", 100.0)
        generator.generate_for_all()   # every funded ACTIVE account
    """

    def __init__(self, tz_name: str = None, count_range: Tuple[int, int] = None, rng: random.Random = None):
        self.tz = pytz.timezone(tz_name or config.TARGET_TIMEZONE)
        self.count_range = count_range or (config.PROFIT_EVENTS_MIN, config.PROFIT_EVENTS_MAX)
        self.rng = rng or random.Random()

        if self.count_range[0] < 1 or self.count_range[0] > self.count_range[1]:
            raise ValueError(f"invalid profit event count range: {self.count_range}")

    def day_key(self, now: datetime = None) -> str:
        return local_day_bounds(now or utcnow(), self.tz)[0]

    def next_midnight(self, now: datetime = None) -> datetime:
        return local_day_bounds(now or utcnow(), self.tz)[1]

    def generate_for_recipient(self, recipient_id: str, daily_total: float, now: datetime = None) -> List[Dict]:
        now = now or utcnow()
        day, end_of_day = local_day_bounds(now, self.tz)

        if daily_total <= 0:
            logger.debug(f"profit_skip_zero_total: {recipient_id}")
            return []
        if now >= end_of_day:
            logger.info(f"profit_skip_day_over: {recipient_id} day={day}")
            return []

        discarded = ProfitEvent.discard_pending(recipient_id, day)
        if discarded:
            logger.info(f"profit_batch_discarded: {recipient_id} day={day} events={discarded}")

        # Delivered and in-flight events survive the discard and still count toward the total
        kept = ProfitEvent.get_for_day(recipient_id, day)
        already_emitted = sum(doc["amount"] for doc in kept)
        remaining = daily_total - already_emitted

        events = generate_profit_events(
            recipient_id,
            daily_total,
            now,
            tz=self.tz,
            count_range=self.count_range,
            rng=self.rng,
            amount_to_emit=remaining,
        )
        if not events:
            logger.info(
                f"profit_nothing_to_emit: {recipient_id} day={day} "
                f"total={daily_total:.4f} emitted={already_emitted:.4f}"
            )
            return []

        ids = ProfitEvent.create_batch(events)
        for event, event_id in zip(events, ids):
            event["_id"] = event_id

        logger.info(
            f"profit_batch_generated: {recipient_id} day={day} events={len(events)} "
            f"amount={remaining:.4f} daily_total={daily_total:.4f}",
            extra={
                "recipient": recipient_id,
                "day": day,
                "events": len(events),
                "amount": round(remaining, 6),
                "daily_total": round(daily_total, 6),
            },
        )
        return events

    def generate_for_all(self, now: datetime = None, force: bool = False) -> Dict[str, int]:
        """
        Generate today's batch for every funded ACTIVE recipient.
        Recipients that already have a batch for the day are skipped unless force.
        """
        now = now or utcnow()
        day = self.day_key(now)
        stats = {"recipients": 0, "generated": 0, "skipped": 0, "events": 0, "errors": 0}

        for user in Recipient.get_funded():
            stats["recipients"] += 1
            recipient_id = user["telegram_id"]
            try:
                if not force and ProfitEvent.has_batch(recipient_id, day):
                    stats["skipped"] += 1
                    continue
                total = daily_total_for_balance(user["balance"])
                events = self.generate_for_recipient(recipient_id, total, now)
                if events:
                    stats["generated"] += 1
                    stats["events"] += len(events)
                else:
                    stats["skipped"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"profit_generation_failed: {recipient_id}: {e}", exc_info=True)

        logger.info(
            f"profit_generation_done: day={day} recipients={stats['recipients']} "
            f"generated={stats['generated']} skipped={stats['skipped']} "
            f"events={stats['events']} errors={stats['errors']}"
        )
        return stats
