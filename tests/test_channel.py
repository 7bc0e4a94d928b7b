"""
Unit tests for emission/channel.py

Tests cover:
- Bot API response classification (success / throttled / permanent / transient)
- TelegramChannel request building (text, photo upload, photo by file_id)
- Network errors never raise out of send()
"""

import asyncio
import json
import unittest
import sys
import os

import aiohttp

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from emission.channel import (
    PhotoContent,
    SendStatus,
    TelegramChannel,
    TextContent,
    classify_response,
)
from emission.pacing import SlidingWindowRateLimiter


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeResponse:

    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def text(self):
        return json.dumps(self.payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []
        self.closed = False

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


class TestClassifyResponse(unittest.TestCase):

    def test_text_success(self):
        result = classify_response(200, {"ok": True, "result": {"message_id": 5}})
        self.assertTrue(result.ok)
        self.assertIsNone(result.artifact_handle)

    def test_photo_success_returns_largest_file_id(self):
        payload = {
            "ok": True,
            "result": {"photo": [{"file_id": "small"}, {"file_id": "medium"}, {"file_id": "large"}]},
        }
        self.assertEqual(classify_response(200, payload).artifact_handle, "large")

    def test_throttled_carries_retry_after(self):
        payload = {
            "ok": False,
            "error_code": 429,
            "description": "Too Many Requests: retry after 7",
            "parameters": {"retry_after": 7},
        }
        result = classify_response(429, payload)
        self.assertEqual(result.status, SendStatus.THROTTLED)
        self.assertEqual(result.retry_after, 7.0)

    def test_throttled_without_hint(self):
        result = classify_response(429, {})
        self.assertEqual(result.status, SendStatus.THROTTLED)
        self.assertIsNone(result.retry_after)

    def test_blocked_user_is_permanent(self):
        payload = {"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"}
        result = classify_response(403, payload)
        self.assertEqual(result.status, SendStatus.PERMANENT_FAILURE)
        self.assertIn("blocked", result.error)

    def test_chat_not_found_is_permanent(self):
        result = classify_response(400, {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"})
        self.assertEqual(result.status, SendStatus.PERMANENT_FAILURE)

    def test_deactivated_user_is_permanent(self):
        payload = {"ok": False, "error_code": 400, "description": "Bad Request: USER_IS_DEACTIVATED"}
        self.assertEqual(classify_response(400, payload).status, SendStatus.PERMANENT_FAILURE)

    def test_content_errors_are_rejected_not_permanent(self):
        for description in (
            "Bad Request: wrong file identifier/HTTP URL specified",
            "Bad Request: can't parse entities: Can't find end of the entity starting at byte offset 12",
        ):
            result = classify_response(400, {"ok": False, "error_code": 400, "description": description})
            self.assertEqual(result.status, SendStatus.REJECTED)
            self.assertEqual(result.error, description)

    def test_server_error_is_transient(self):
        self.assertEqual(classify_response(502, {}).status, SendStatus.TRANSIENT_FAILURE)
        self.assertEqual(classify_response(500, {"ok": False}).error, "HTTP 500")


class TestPhotoContent(unittest.TestCase):

    def test_upload_vs_handle(self):
        self.assertTrue(PhotoContent(photo=b"\x89PNG").is_upload)
        self.assertFalse(PhotoContent(photo="AgACAgIAAx").is_upload)


class TestTelegramChannel(unittest.TestCase):

    def _channel(self, session):
        channel = TelegramChannel(
            token="TOKEN",
            api_base="https://api.example.test",
            request_timeout=5,
            rate_limiter=SlidingWindowRateLimiter(1000),
        )
        channel._session = session
        return channel

    def test_send_text(self):
        session = FakeSession(FakeResponse(200, {"ok": True, "result": {}}))
        channel = self._channel(session)

        result = run_async(channel.send("42", TextContent("hello")))

        self.assertTrue(result.ok)
        url, kwargs = session.calls[0]
        self.assertEqual(url, "https://api.example.test/botTOKEN/sendMessage")
        self.assertEqual(kwargs["json"]["chat_id"], "42")
        self.assertEqual(kwargs["json"]["text"], "hello")
        self.assertEqual(kwargs["json"]["parse_mode"], "Markdown")

    def test_send_photo_upload_uses_form(self):
        session = FakeSession(FakeResponse(200, {"ok": True, "result": {"photo": [{"file_id": "H"}]}}))
        channel = self._channel(session)

        result = run_async(channel.send("42", PhotoContent(photo=b"\x89PNG", caption="card")))

        self.assertEqual(result.artifact_handle, "H")
        url, kwargs = session.calls[0]
        self.assertTrue(url.endswith("/sendPhoto"))
        self.assertIsInstance(kwargs["data"], aiohttp.FormData)

    def test_send_photo_by_handle_uses_json(self):
        session = FakeSession(FakeResponse(200, {"ok": True, "result": {"photo": [{"file_id": "H"}]}}))
        channel = self._channel(session)

        run_async(channel.send("42", PhotoContent(photo="H", caption="card")))

        url, kwargs = session.calls[0]
        self.assertTrue(url.endswith("/sendPhoto"))
        self.assertEqual(kwargs["json"]["photo"], "H")
        self.assertEqual(kwargs["json"]["caption"], "card")

    def test_timeout_is_transient(self):
        channel = self._channel(FakeSession(error=asyncio.TimeoutError()))

        result = run_async(channel.send("42", TextContent("hello")))

        self.assertEqual(result.status, SendStatus.TRANSIENT_FAILURE)
        self.assertIn("timeout", result.error)

    def test_connection_error_is_transient(self):
        channel = self._channel(FakeSession(error=aiohttp.ClientConnectionError("reset by peer")))

        result = run_async(channel.send("42", TextContent("hello")))

        self.assertEqual(result.status, SendStatus.TRANSIENT_FAILURE)

    def test_close(self):
        session = FakeSession()
        channel = self._channel(session)

        run_async(channel.close())

        self.assertTrue(session.closed)
        self.assertIsNone(channel._session)


if __name__ == "__main__":
    unittest.main()
