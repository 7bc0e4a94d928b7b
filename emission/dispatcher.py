"""
Broadcast Dispatcher — one fire time, one render, every eligible recipient.

- renders exactly one artifact per cycle; a render failure aborts the cycle
- recipients are queried fresh each cycle and processed in order with a
  fixed delay between them
- the first successful send returns a file_id; every later recipient in the
  same cycle gets that file_id instead of the raw bytes
- a single recipient's failure never stops the fan-out
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

import config
from database import BroadcastLog, Recipient, utcnow
from emission.alerts import AlertLevel, send_alert
from emission.channel import PhotoContent
from emission.retrier import DeliveryRetrier, DeliveryStatus

logger = logging.getLogger("emission.dispatcher")


@dataclass
class BroadcastSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    recipients: int = 0
    delivered: int = 0
    unreachable: int = 0
    failed: int = 0
    reused_handle: int = 0
    aborted: bool = False
    error: Optional[str] = None
    order_number: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class BroadcastDispatcher:
    """
    Usage:
        dispatcher = BroadcastDispatcher(CardRenderer(), retrier)
        summary = await dispatcher.dispatch()
    """

    def __init__(
        self,
        renderer,
        retrier: DeliveryRetrier,
        recipient_source: Callable[[], List[str]] = Recipient.get_eligible_ids,
        send_delay: float = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        alert: Callable[..., Awaitable] = send_alert,
        record_summary: Callable[[Dict], object] = BroadcastLog.record,
    ):
        self.renderer = renderer
        self.retrier = retrier
        self.recipient_source = recipient_source
        self.send_delay = config.BROADCAST_SEND_DELAY_SECONDS if send_delay is None else send_delay
        self._sleep = sleep
        self._alert = alert
        self._record_summary = record_summary

    async def dispatch(self) -> BroadcastSummary:
        summary = BroadcastSummary(started_at=utcnow())
        # Belongs to this cycle only; cycles may overlap
        cached_handle: Optional[str] = None

        try:
            artifact = await asyncio.to_thread(self.renderer.render)
            recipients = await asyncio.to_thread(self.recipient_source)
        except Exception as e:
            summary.aborted = True
            summary.error = str(e)[:300]
            summary.finished_at = utcnow()
            logger.error(f"broadcast_cycle_aborted: {e}", exc_info=True)
            await self._alert(
                f"Broadcast cycle aborted before sending:\n```{summary.error}```",
                AlertLevel.CRITICAL,
            )
            self._save(summary)
            return summary

        summary.order_number = artifact.order_number
        summary.recipients = len(recipients)
        logger.info(f"broadcast_cycle_start: {len(recipients)} recipients, order #{artifact.order_number}")

        for index, recipient_id in enumerate(recipients):
            if index and self.send_delay > 0:
                await self._sleep(self.send_delay)

            reused = cached_handle is not None
            content = PhotoContent(
                photo=cached_handle if reused else artifact.data,
                caption=artifact.caption,
            )

            try:
                outcome = await self.retrier.deliver(recipient_id, content)
            except Exception as e:
                summary.failed += 1
                logger.error(f"broadcast_send_error: {recipient_id}: {e}", exc_info=True)
                continue

            if outcome.status == DeliveryStatus.DELIVERED:
                summary.delivered += 1
                if reused:
                    summary.reused_handle += 1
                elif outcome.artifact_handle:
                    cached_handle = outcome.artifact_handle
                    logger.debug(f"artifact_handle_cached: {outcome.artifact_handle[:16]}...")
            elif outcome.status == DeliveryStatus.UNREACHABLE:
                summary.unreachable += 1
            else:
                summary.failed += 1
                if reused:
                    # e.g. "wrong file identifier": upload raw bytes again
                    cached_handle = None

        summary.finished_at = utcnow()
        logger.info(
            f"broadcast_cycle_done: order #{summary.order_number} "
            f"delivered={summary.delivered}/{summary.recipients} "
            f"unreachable={summary.unreachable} failed={summary.failed}",
            extra={"broadcast": summary.to_dict()},
        )
        self._save(summary)

        if config.BROADCAST_SUMMARY_ALERTS:
            await self._alert(
                f"Order #{summary.order_number}: delivered {summary.delivered}/{summary.recipients}, "
                f"unreachable {summary.unreachable}, failed {summary.failed}",
                AlertLevel.INFO,
                title="📊 Broadcast cycle",
            )
        return summary

    def _save(self, summary: BroadcastSummary):
        try:
            self._record_summary(summary.to_dict())
        except Exception as e:
            logger.error(f"broadcast_summary_not_saved: {e}")
