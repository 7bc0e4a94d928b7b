"""
Delivery Retrier — bounded retry around a channel client.

    Attempting → SUCCESS            → DELIVERED
               → PERMANENT_FAILURE  → UNREACHABLE (no further attempts)
               → REJECTED           → EXHAUSTED (no further attempts)
               → THROTTLED          → wait retry_after + margin → Attempting
               → TRANSIENT_FAILURE  → wait exponential backoff → Attempting

After max_attempts attempts that were all throttled/transient the outcome is
EXHAUSTED. No wait happens after the final attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import config
from emission.channel import SendResult, SendStatus
from emission.pacing import exponential_backoff, throttle_wait

logger = logging.getLogger("emission.retrier")


class Channel(Protocol):
    async def send(self, recipient_id: str, content) -> SendResult: ...


class DeliveryStatus:
    DELIVERED = "delivered"
    UNREACHABLE = "unreachable"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Per-recipient result of one delivery; never persisted on its own."""
    recipient_id: str
    status: str
    attempts: int
    artifact_handle: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class DeliveryRetrier:

    def __init__(
        self,
        channel: Channel,
        max_attempts: int = None,
        backoff_base: float = None,
        backoff_ceiling: float = None,
        throttle_margin: float = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.channel = channel
        self.max_attempts = max(1, max_attempts if max_attempts is not None else config.DELIVERY_MAX_ATTEMPTS)
        self.backoff_base = backoff_base if backoff_base is not None else config.BACKOFF_BASE_SECONDS
        self.backoff_ceiling = backoff_ceiling if backoff_ceiling is not None else config.BACKOFF_CEILING_SECONDS
        self.throttle_margin = throttle_margin if throttle_margin is not None else config.THROTTLE_MARGIN_SECONDS
        self._sleep = sleep

    async def deliver(self, recipient_id: str, content) -> DeliveryOutcome:
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            result = await self.channel.send(recipient_id, content)

            if result.status == SendStatus.SUCCESS:
                return DeliveryOutcome(
                    recipient_id=recipient_id,
                    status=DeliveryStatus.DELIVERED,
                    attempts=attempt,
                    artifact_handle=result.artifact_handle,
                )

            if result.status == SendStatus.PERMANENT_FAILURE:
                logger.info(
                    f"recipient_unreachable: {recipient_id} ({result.error})",
                    extra={"recipient": recipient_id, "attempts": attempt},
                )
                return DeliveryOutcome(
                    recipient_id=recipient_id,
                    status=DeliveryStatus.UNREACHABLE,
                    attempts=attempt,
                    last_error=result.error,
                )

            if result.status == SendStatus.REJECTED:
                logger.error(
                    f"content_rejected: {recipient_id} ({result.error})",
                    extra={"recipient": recipient_id, "attempts": attempt},
                )
                return DeliveryOutcome(
                    recipient_id=recipient_id,
                    status=DeliveryStatus.EXHAUSTED,
                    attempts=attempt,
                    last_error=result.error,
                )

            last_error = result.error
            if attempt == self.max_attempts:
                break

            if result.status == SendStatus.THROTTLED:
                wait = throttle_wait(
                    result.retry_after,
                    attempt,
                    margin_seconds=self.throttle_margin,
                    base_seconds=self.backoff_base,
                    ceiling_seconds=self.backoff_ceiling,
                )
                logger.warning(
                    f"channel_throttled: waiting {wait:.1f}s before attempt {attempt + 1}/{self.max_attempts}",
                    extra={"recipient": recipient_id},
                )
            else:
                wait = exponential_backoff(attempt, self.backoff_base, self.backoff_ceiling)
                logger.warning(
                    f"transient_send_failure: {result.error} — retry {attempt + 1}/{self.max_attempts} in {wait:.1f}s",
                    extra={"recipient": recipient_id},
                )
            await self._sleep(wait)

        logger.error(
            f"delivery_exhausted: {recipient_id} after {self.max_attempts} attempts ({last_error})",
            extra={"recipient": recipient_id},
        )
        return DeliveryOutcome(
            recipient_id=recipient_id,
            status=DeliveryStatus.EXHAUSTED,
            attempts=self.max_attempts,
            last_error=last_error,
        )
