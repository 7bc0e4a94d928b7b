"""
Broadcast Window Scheduler — decides when today's trading cards go out.

Every local day (reference zone = fixed UTC offset):
    count  = uniform [min_per_day, max_per_day]
    times  = `count` distinct minutes inside the local window, converted to UTC
    timers = one call_later() per time; a time already past today fires
             tomorrow instead of immediately

The window is converted to UTC minutes-of-day. When the converted end is
numerically before the start (window crosses UTC midnight) it is split into
[start, 23:59] and [00:00, end], and each time is drawn from a randomly
chosen sub-range.

All armed timers belong to this object. cancel_all() drops every pending
timer in one synchronous step; dispatches that already started keep running.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set, Tuple

import config
from emission.settings import (
    MINUTES_PER_DAY,
    BroadcastSettings,
    ConfigurationError,
    format_minutes,
    load_broadcast_settings,
)

logger = logging.getLogger("emission.broadcast_scheduler")

SCHEDULE_RETRY_SECONDS = 60


@dataclass
class BroadcastFireTime:
    local_time: str
    native_time: str
    fire_at: datetime
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    fired: bool = False

    @property
    def pending(self) -> bool:
        return not self.fired and self.handle is not None and not self.handle.cancelled()


def native_ranges(settings: BroadcastSettings) -> List[Tuple[int, int]]:
    """Inclusive UTC minute-of-day ranges covered by the local window."""
    offset = settings.utc_offset_hours * 60
    start = (settings.start_minute - offset) % MINUTES_PER_DAY
    end = (settings.end_minute - offset) % MINUTES_PER_DAY
    if end < start:
        return [(start, MINUTES_PER_DAY - 1), (0, end)]
    return [(start, end)]


def draw_fire_minutes(count: int, ranges: List[Tuple[int, int]], rng: random.Random = None) -> List[int]:
    """`count` distinct minutes from the ranges, ascending. Capped at the window size."""
    rng = rng or random
    capacity = sum(high - low + 1 for low, high in ranges)
    count = min(count, capacity)

    chosen: Set[int] = set()
    while len(chosen) < count:
        low, high = rng.choice(ranges)
        chosen.add(rng.randint(low, high))
    return sorted(chosen)


def resolve_fire_instant(minute_of_day: int, now: datetime) -> datetime:
    """Today's UTC instant for a minute-of-day; tomorrow's if it has already passed."""
    target = now.replace(
        hour=minute_of_day // 60,
        minute=minute_of_day % 60,
        second=0,
        microsecond=0,
    )
    if target <= now:
        target += timedelta(days=1)
    return target


def next_local_midnight(now: datetime, utc_offset_hours: int) -> datetime:
    offset = timedelta(hours=utc_offset_hours)
    local = now + offset
    local_midnight = datetime.combine(local.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
    return local_midnight - offset


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BroadcastWindowScheduler:
    """
    Lifecycle:
        scheduler = BroadcastWindowScheduler(dispatcher.dispatch)
        await scheduler.run(shutdown_event)   # arms today, re-arms every local midnight
        scheduler.reschedule()                # after an operator changes settings
    """

    def __init__(
        self,
        on_fire: Callable[[], Awaitable],
        settings_loader: Callable[[], BroadcastSettings] = load_broadcast_settings,
        rng: random.Random = None,
        clock: Callable[[], datetime] = _utcnow,
        retry_seconds: float = SCHEDULE_RETRY_SECONDS,
    ):
        self.on_fire = on_fire
        self._settings_loader = settings_loader
        self.rng = rng or random.Random()
        self._clock = clock
        self.retry_seconds = retry_seconds
        self._fire_times: List[BroadcastFireTime] = []
        self._in_flight: Set[asyncio.Task] = set()
        self.settings: Optional[BroadcastSettings] = None

    @property
    def fire_times(self) -> List[BroadcastFireTime]:
        return list(self._fire_times)

    @property
    def pending(self) -> List[BroadcastFireTime]:
        return [ft for ft in self._fire_times if ft.pending]

    def plan(self, settings: BroadcastSettings, now: datetime) -> List[BroadcastFireTime]:
        """Pick today's fire times without arming anything."""
        count = self.rng.randint(settings.min_per_day, settings.max_per_day)
        minutes = draw_fire_minutes(count, native_ranges(settings), self.rng)
        offset = settings.utc_offset_hours * 60

        fire_times = [
            BroadcastFireTime(
                local_time=format_minutes(minute + offset),
                native_time=format_minutes(minute),
                fire_at=resolve_fire_instant(minute, now),
            )
            for minute in minutes
        ]
        fire_times.sort(key=lambda ft: ft.fire_at)
        return fire_times

    def schedule_today(self, now: datetime = None) -> List[BroadcastFireTime]:
        """
        Load settings, cancel whatever is pending and arm a fresh day.
        Raises ConfigurationError (leaving current timers untouched) if the
        settings are unusable.
        """
        settings = self._settings_loader()
        now = now or self._clock()
        fire_times = self.plan(settings, now)

        self.cancel_all()
        self.settings = settings
        loop = asyncio.get_running_loop()
        for ft in fire_times:
            delay = max(0.0, (ft.fire_at - now).total_seconds())
            ft.handle = loop.call_later(delay, self._on_timer, ft)
        self._fire_times = fire_times

        logger.info(
            f"broadcasts_scheduled: {len(fire_times)} posts "
            f"({settings.min_per_day}-{settings.max_per_day}/day, "
            f"window {settings.start_time}-{settings.end_time} UTC{settings.utc_offset_hours:+d})"
        )
        for index, ft in enumerate(fire_times, start=1):
            minutes_away = round((ft.fire_at - now).total_seconds() / 60)
            logger.info(
                f"  post {index} at {ft.native_time} UTC ({ft.local_time} local) "
                f"on {ft.fire_at:%Y-%m-%d} — in {minutes_away} min"
            )
        return self.fire_times

    def reschedule(self) -> List[BroadcastFireTime]:
        """Re-run the daily schedule after a configuration change."""
        logger.info("broadcasts_rescheduling: settings changed")
        return self.schedule_today()

    def cancel_all(self) -> int:
        cancelled = 0
        for ft in self._fire_times:
            if ft.pending:
                ft.handle.cancel()
                cancelled += 1
        self._fire_times = []
        if cancelled:
            logger.info(f"broadcasts_cancelled: {cancelled} pending timers")
        return cancelled

    def _on_timer(self, ft: BroadcastFireTime):
        ft.fired = True
        task = asyncio.ensure_future(self._fire(ft))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _fire(self, ft: BroadcastFireTime):
        logger.info(f"broadcast_firing: {ft.native_time} UTC ({ft.local_time} local)")
        try:
            await self.on_fire()
        except Exception as e:
            # One failed cycle must not stop later fire times
            logger.error(f"Broadcast cycle at {ft.native_time} failed: {e}", exc_info=True)

    def _rollover(self) -> bool:
        """Arm the day. Returns False when settings could not be read and a retry is due."""
        try:
            self.schedule_today()
        except ConfigurationError as e:
            self.cancel_all()
            logger.error(f"broadcast_config_invalid: {e} - no broadcasts armed today")
        except Exception as e:
            logger.error(
                f"broadcast_schedule_failed: {e} - retrying in {self.retry_seconds:.0f}s",
                exc_info=True,
            )
            return False
        return True

    async def run(self, shutdown: asyncio.Event):
        """Arm today and re-arm at every local midnight until shutdown."""
        armed = self._rollover()

        while not shutdown.is_set():
            offset = self.settings.utc_offset_hours if self.settings else config.BROADCAST_UTC_OFFSET_HOURS
            now = self._clock()
            midnight = next_local_midnight(now, offset)
            wait = (midnight - now).total_seconds()
            wait = max(1.0, wait) if armed else min(wait, self.retry_seconds)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=wait)
                break
            except asyncio.TimeoutError:
                if armed:
                    logger.info("broadcast_midnight_rollover")
                armed = self._rollover()

        self.cancel_all()

    async def wait_in_flight(self, timeout: float = 15.0):
        if self._in_flight:
            await asyncio.wait(list(self._in_flight), timeout=timeout)
