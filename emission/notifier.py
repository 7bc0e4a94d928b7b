"""
Due-Time Notifier — periodically delivers profit events whose time has come.

Each poll:
1. releases claims abandoned by a crashed poll
2. selects due, undelivered, unclaimed events (earliest due first)
3. claims each one with a conditional update, then delivers it
4. delivered or unreachable → mark delivered (one flip per event)
   exhausted → release the claim; the next poll retries it

A poll never overlaps another poll in this process; the conditional claim
keeps separate processes from acting on the same event.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, Optional

import config
from database import ProfitEvent, utcnow
from emission.channel import TextContent
from emission.retrier import DeliveryRetrier, DeliveryStatus

logger = logging.getLogger("emission.notifier")


def format_profit_message(event: Dict) -> str:
    amount = event["amount"]
    daily_total = event.get("daily_total") or 0.0
    return (
        f"💰 *Profit credited:* +${amount:.2f}\n"
        f"📊 Today's expected profit: ${daily_total:.2f}"
    )


class DueTimeNotifier:
    """
    Lifecycle:
        notifier = DueTimeNotifier(retrier)
        await notifier.run_periodic(shutdown_event)
    """

    def __init__(
        self,
        retrier: DeliveryRetrier,
        poll_seconds: int = None,
        batch_size: int = None,
        claim_timeout_minutes: int = None,
    ):
        self.retrier = retrier
        self.poll_seconds = poll_seconds or config.NOTIFIER_POLL_SECONDS
        self.batch_size = batch_size or config.NOTIFIER_BATCH_SIZE
        self.claim_timeout_minutes = claim_timeout_minutes or config.CLAIM_TIMEOUT_MINUTES
        self._poll_in_flight = False
        self._shutdown = asyncio.Event()

    @property
    def poll_in_flight(self) -> bool:
        return self._poll_in_flight

    async def poll_once(self, now: datetime = None) -> Optional[Dict[str, int]]:
        """
        One pass over due events. Returns counts, or None when skipped
        because a previous poll is still running.
        """
        if self._poll_in_flight:
            logger.warning("notifier_poll_skipped: previous poll still running")
            return None

        self._poll_in_flight = True
        try:
            return await self._poll(now or utcnow())
        finally:
            self._poll_in_flight = False

    async def _poll(self, now: datetime) -> Dict[str, int]:
        stats = {"due": 0, "delivered": 0, "unreachable": 0, "exhausted": 0, "skipped": 0, "errors": 0}

        released = ProfitEvent.release_stale_claims(self.claim_timeout_minutes, now=now)
        if released:
            logger.warning(f"stale_claims_released: {released}")

        events = ProfitEvent.find_due(now, limit=self.batch_size)
        stats["due"] = len(events)
        token = uuid.uuid4().hex

        for event in events:
            if self._shutdown.is_set():
                break

            event_id = event["_id"]
            if not ProfitEvent.claim(event_id, token):
                # Someone else delivered or claimed it since the select
                stats["skipped"] += 1
                continue

            try:
                outcome = await self.retrier.deliver(
                    event["recipient_id"],
                    TextContent(format_profit_message(event)),
                )
            except Exception as e:
                stats["errors"] += 1
                ProfitEvent.release(event_id, token, attempts=1, error=str(e)[:200])
                logger.error(f"profit_notification_error: {event_id}: {e}", exc_info=True)
                continue

            if outcome.status == DeliveryStatus.EXHAUSTED:
                stats["exhausted"] += 1
                ProfitEvent.release(event_id, token, attempts=outcome.attempts, error=outcome.last_error)
                continue

            if outcome.status == DeliveryStatus.UNREACHABLE:
                bookkeeping = ProfitEvent.OUTCOME_UNREACHABLE
                stats["unreachable"] += 1
            else:
                bookkeeping = ProfitEvent.OUTCOME_DELIVERED
                stats["delivered"] += 1

            if not ProfitEvent.mark_delivered(event_id, token, bookkeeping, attempts=outcome.attempts):
                logger.error(f"profit_mark_delivered_lost_claim: {event_id}")

        if stats["due"]:
            logger.info(
                f"notifier_poll_done: due={stats['due']} delivered={stats['delivered']} "
                f"unreachable={stats['unreachable']} exhausted={stats['exhausted']} "
                f"skipped={stats['skipped']} errors={stats['errors']}",
                extra={"poll_stats": stats},
            )
        return stats

    async def run_periodic(self, shutdown: asyncio.Event = None):
        """Poll every poll_seconds until shutdown."""
        shutdown = shutdown or self._shutdown
        logger.info(f"notifier_periodic_start: every {self.poll_seconds}s", extra={"interval_sec": self.poll_seconds})

        while not shutdown.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Notifier poll failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self.poll_seconds)
                break
            except asyncio.TimeoutError:
                continue

        logger.info("notifier_periodic_stopped")

    def request_shutdown(self):
        self._shutdown.set()
