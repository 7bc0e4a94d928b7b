"""
Pacing helpers shared by every sender in the engine.

- exponential_backoff(): capped exponential delay for transient failures
- throttle_wait(): how long to back off after the channel says "slow down"
- SlidingWindowRateLimiter: global sends-per-window cap for one channel
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

logger = logging.getLogger("emission.pacing")


def exponential_backoff(attempt: int, base_seconds: float = 1.0, ceiling_seconds: float = 60.0) -> float:
    """
    Delay before retry number `attempt` (1-based): base, 2*base, 4*base ...
    never more than ceiling_seconds.
    """
    if attempt < 1:
        attempt = 1
    # Cap the exponent so huge attempt counts can't overflow
    delay = base_seconds * (2 ** min(attempt - 1, 30))
    return min(delay, ceiling_seconds)


def throttle_wait(
    retry_after: Optional[float],
    attempt: int,
    margin_seconds: float = 1.0,
    base_seconds: float = 1.0,
    ceiling_seconds: float = 60.0,
) -> float:
    """
    Wait after a throttled response.

    Uses the channel's suggested wait when it gives one; otherwise falls back
    to the regular exponential schedule. The margin is always added.
    """
    if retry_after is not None and retry_after >= 0:
        return float(retry_after) + margin_seconds
    return exponential_backoff(attempt, base_seconds, ceiling_seconds) + margin_seconds


class SlidingWindowRateLimiter:
    """
    At most `limit_per_window` acquisitions in any `window_sec` span.

    Single event loop only: callers are serialized by an asyncio.Lock so the
    timestamps deque is never mutated mid-wait by another task.
    """

    def __init__(
        self,
        limit_per_window: int,
        window_sec: float = 1.0,
        now_fn: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._limit = max(1, int(limit_per_window))
        self._window_sec = max(0.001, float(window_sec))
        self._now_fn = now_fn
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def limit_per_window(self) -> int:
        return self._limit

    def reserve_delay(self) -> float:
        """Record a send if there is room and return 0, else return the wait needed"""
        now = self._now_fn()
        while self._timestamps and (now - self._timestamps[0]) >= self._window_sec:
            self._timestamps.popleft()

        if len(self._timestamps) < self._limit:
            self._timestamps.append(now)
            return 0.0
        return max(0.0, self._window_sec - (now - self._timestamps[0]))

    async def acquire(self):
        async with self._lock:
            delay = self.reserve_delay()
            while delay > 0:
                logger.debug(f"rate_limit_wait: {delay:.3f}s")
                await self._sleep(delay)
                delay = self.reserve_delay()
