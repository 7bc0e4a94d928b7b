"""
Unit tests for emission/dispatcher.py

Tests cover:
- Artifact handle reuse after the first successful send
- Handle cache reset between cycles
- Overlapping cycles never share a handle
- Render / enumeration failure aborts the cycle before any send
- One recipient's failure never stops the fan-out
- Inter-recipient delay and outcome counts
"""

import asyncio
import itertools
import unittest
from unittest.mock import AsyncMock, MagicMock
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from emission.alerts import AlertLevel
from emission.cards import Artifact
from emission.channel import SendResult
from emission.dispatcher import BroadcastDispatcher
from emission.retrier import DeliveryRetrier

RAW = b"\x89PNG-card"


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def no_sleep(seconds):
    return None


class FakeRenderer:

    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def render(self):
        self.calls += 1
        if self.error:
            raise self.error
        return Artifact(data=RAW, caption="✅ Order #5295 executed", order_number=5295, pair="BTC/USDT")


class RecordingChannel:
    """Succeeds with a fresh handle per upload unless scripted otherwise."""

    def __init__(self, results=None):
        self.results = results or {}
        self.sent = []

    async def send(self, recipient_id, content):
        self.sent.append((recipient_id, content.photo))
        result = self.results.get(recipient_id)
        if isinstance(result, Exception):
            raise result
        if result is not None:
            return result
        return SendResult.success("H" if content.is_upload else None)


class DispatcherTestCase(unittest.TestCase):

    def _dispatcher(self, channel, recipients, renderer=None, sleep=None):
        self.alert = AsyncMock(return_value=True)
        self.record = MagicMock()
        return BroadcastDispatcher(
            renderer or FakeRenderer(),
            DeliveryRetrier(channel, max_attempts=2, sleep=no_sleep),
            recipient_source=lambda: list(recipients),
            send_delay=0.05,
            sleep=sleep or no_sleep,
            alert=self.alert,
            record_summary=self.record,
        )


class TestHandleReuse(DispatcherTestCase):

    def test_second_and_third_sends_use_handle(self):
        channel = RecordingChannel()
        dispatcher = self._dispatcher(channel, ["1", "2", "3"])

        summary = run_async(dispatcher.dispatch())

        self.assertEqual([photo for _, photo in channel.sent], [RAW, "H", "H"])
        self.assertEqual(summary.delivered, 3)
        self.assertEqual(summary.reused_handle, 2)

    def test_raw_content_until_first_success(self):
        channel = RecordingChannel({"1": SendResult.permanent("Forbidden: bot was blocked by the user")})
        dispatcher = self._dispatcher(channel, ["1", "2", "3"])

        summary = run_async(dispatcher.dispatch())

        self.assertEqual([photo for _, photo in channel.sent], [RAW, RAW, "H"])
        self.assertEqual(summary.unreachable, 1)
        self.assertEqual(summary.delivered, 2)

    def test_rejected_handle_falls_back_to_upload(self):
        channel = RecordingChannel({"2": SendResult.rejected("Bad Request: wrong file identifier/HTTP URL specified")})
        dispatcher = self._dispatcher(channel, ["1", "2", "3"])

        summary = run_async(dispatcher.dispatch())

        self.assertEqual([photo for _, photo in channel.sent], [RAW, "H", RAW])
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.delivered, 2)

    def test_handle_cleared_between_cycles(self):
        channel = RecordingChannel()
        dispatcher = self._dispatcher(channel, ["1", "2"])

        run_async(dispatcher.dispatch())
        channel.sent.clear()
        run_async(dispatcher.dispatch())

        self.assertEqual([photo for _, photo in channel.sent], [RAW, "H"])

    def test_overlapping_cycles_keep_their_own_handle(self):
        numbers = itertools.count(1)

        class NumberedRenderer:
            def render(self):
                n = next(numbers)
                return Artifact(data=f"IMG{n}".encode(), caption=f"Order #{n}", order_number=n)

        sent = []

        class UploadChannel:
            async def send(self, recipient_id, content):
                sent.append((content.photo, content.caption))
                if content.is_upload:
                    return SendResult.success("H-" + content.photo.decode())
                return SendResult.success(None)

        async def yield_sleep(seconds):
            await asyncio.sleep(0)

        dispatcher = self._dispatcher(
            UploadChannel(), [f"r{i}" for i in range(20)],
            renderer=NumberedRenderer(), sleep=yield_sleep,
        )

        async def scenario():
            return await asyncio.gather(dispatcher.dispatch(), dispatcher.dispatch())

        summaries = run_async(scenario())

        self.assertEqual(len(sent), 40)
        self.assertEqual(sorted(s.order_number for s in summaries), [1, 2])
        for photo, caption in sent:
            n = caption.split("#")[1]
            expected = f"IMG{n}".encode() if isinstance(photo, bytes) else f"H-IMG{n}"
            self.assertEqual(photo, expected)
        self.assertEqual(sum(s.reused_handle for s in summaries), 38)


class TestAbortAndContinue(DispatcherTestCase):

    def test_render_failure_aborts_before_sending(self):
        channel = RecordingChannel()
        dispatcher = self._dispatcher(channel, ["1", "2"], renderer=FakeRenderer(OSError("template missing")))

        summary = run_async(dispatcher.dispatch())

        self.assertTrue(summary.aborted)
        self.assertIn("template missing", summary.error)
        self.assertEqual(channel.sent, [])
        self.assertEqual(self.alert.await_args.args[1], AlertLevel.CRITICAL)
        self.record.assert_called_once()

    def test_enumeration_failure_aborts(self):
        channel = RecordingChannel()
        dispatcher = self._dispatcher(channel, [])
        dispatcher.recipient_source = MagicMock(side_effect=RuntimeError("users query failed"))

        summary = run_async(dispatcher.dispatch())

        self.assertTrue(summary.aborted)
        self.assertEqual(channel.sent, [])

    def test_one_recipient_error_does_not_stop_fanout(self):
        channel = RecordingChannel({"2": RuntimeError("unexpected")})
        dispatcher = self._dispatcher(channel, ["1", "2", "3"])

        summary = run_async(dispatcher.dispatch())

        self.assertEqual([r for r, _ in channel.sent], ["1", "2", "3"])
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.delivered, 2)
        self.assertFalse(summary.aborted)

    def test_exhausted_counts_as_failed(self):
        channel = RecordingChannel({"2": SendResult.throttled(retry_after=1)})
        dispatcher = self._dispatcher(channel, ["1", "2", "3"])

        summary = run_async(dispatcher.dispatch())

        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.delivered, 2)
        self.assertEqual(summary.recipients, 3)


class TestPacingAndSummary(DispatcherTestCase):

    def test_delay_between_recipients_only(self):
        waits = []

        async def record_sleep(seconds):
            waits.append(seconds)

        dispatcher = self._dispatcher(RecordingChannel(), ["1", "2", "3"], sleep=record_sleep)
        run_async(dispatcher.dispatch())

        self.assertEqual(waits, [0.05, 0.05])

    def test_summary_recorded(self):
        dispatcher = self._dispatcher(RecordingChannel(), ["1", "2"])

        summary = run_async(dispatcher.dispatch())

        saved = self.record.call_args.args[0]
        self.assertEqual(saved["order_number"], 5295)
        self.assertEqual(saved["delivered"], 2)
        self.assertIsNotNone(summary.finished_at)

    def test_no_recipients(self):
        channel = RecordingChannel()
        summary = run_async(self._dispatcher(channel, []).dispatch())

        self.assertEqual(summary.recipients, 0)
        self.assertFalse(summary.aborted)
        self.assertEqual(channel.sent, [])


if __name__ == "__main__":
    unittest.main()
