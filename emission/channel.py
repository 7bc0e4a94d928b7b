"""
Telegram channel client — sends one piece of content to one chat.

Never raises for delivery problems. Every response is classified into a
SendResult so callers can tell a recipient that will never accept delivery
(blocked the bot, deleted account) from a channel that is only saturated:

    200 ok            → SUCCESS (carries the reusable file_id for photos)
    429               → THROTTLED (carries parameters.retry_after)
    403, 400 naming
    the recipient     → PERMANENT_FAILURE
    other 400         → REJECTED (bad content, not retried)
    5xx, timeouts,
    connection errors → TRANSIENT_FAILURE
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

import aiohttp

import config
from emission.pacing import SlidingWindowRateLimiter

logger = logging.getLogger("emission.channel")

# 400 descriptions that mean the chat itself is gone or closed to the bot
RECIPIENT_ERROR_MARKERS = (
    "chat not found",
    "user not found",
    "user is deactivated",
    "user_is_deactivated",
    "peer_id_invalid",
    "bot was blocked",
    "bot was kicked",
    "chat_write_forbidden",
    "have no rights to send",
    "group chat was upgraded",
)


class SendStatus:
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    THROTTLED = "throttled"
    TRANSIENT_FAILURE = "transient_failure"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SendResult:
    status: str
    artifact_handle: Optional[str] = None
    retry_after: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, artifact_handle: str = None) -> "SendResult":
        return cls(SendStatus.SUCCESS, artifact_handle=artifact_handle)

    @classmethod
    def permanent(cls, error: str) -> "SendResult":
        return cls(SendStatus.PERMANENT_FAILURE, error=error)

    @classmethod
    def throttled(cls, retry_after: float = None, error: str = None) -> "SendResult":
        return cls(SendStatus.THROTTLED, retry_after=retry_after, error=error)

    @classmethod
    def transient(cls, error: str) -> "SendResult":
        return cls(SendStatus.TRANSIENT_FAILURE, error=error)

    @classmethod
    def rejected(cls, error: str) -> "SendResult":
        return cls(SendStatus.REJECTED, error=error)

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.SUCCESS


@dataclass(frozen=True)
class TextContent:
    text: str
    parse_mode: Optional[str] = "Markdown"


@dataclass(frozen=True)
class PhotoContent:
    """A photo is either raw bytes (upload) or a file_id the channel already holds."""
    photo: Union[bytes, str]
    caption: str = ""
    parse_mode: Optional[str] = "Markdown"
    filename: str = "card.png"

    @property
    def is_upload(self) -> bool:
        return isinstance(self.photo, (bytes, bytearray))


def classify_response(status_code: int, payload: dict) -> SendResult:
    """Map a Bot API response onto a SendResult."""
    if status_code == 200 and payload.get("ok"):
        return SendResult.success(_extract_file_id(payload.get("result") or {}))

    description = str(payload.get("description") or f"HTTP {status_code}")
    error_code = payload.get("error_code") or status_code

    if error_code == 429:
        params = payload.get("parameters") or {}
        retry_after = params.get("retry_after")
        return SendResult.throttled(
            retry_after=float(retry_after) if retry_after is not None else None,
            error=description,
        )
    if error_code == 403:
        return SendResult.permanent(description)
    if error_code == 400:
        lowered = description.lower()
        if any(marker in lowered for marker in RECIPIENT_ERROR_MARKERS):
            return SendResult.permanent(description)
        return SendResult.rejected(description)
    return SendResult.transient(description)


def _extract_file_id(message: dict) -> Optional[str]:
    photos = message.get("photo") or []
    if photos:
        # Largest size is last
        return photos[-1].get("file_id")
    document = message.get("document") or {}
    return document.get("file_id")


class TelegramChannel:
    """
    Bot API client over one shared aiohttp session.

    Lifecycle:
        channel = TelegramChannel(token)
        result = await channel.send(chat_id, TextContent("hi"))
        await channel.close()
    """

    def __init__(
        self,
        token: str = None,
        api_base: str = None,
        request_timeout: float = None,
        rate_limiter: SlidingWindowRateLimiter = None,
    ):
        self.token = token if token is not None else config.BOT_TOKEN
        self.api_base = (api_base or config.TELEGRAM_API_BASE).rstrip("/")
        self.request_timeout = request_timeout or config.CHANNEL_REQUEST_TIMEOUT
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            config.CHANNEL_MAX_PER_SECOND, window_sec=1.0
        )
        self._session: Optional[aiohttp.ClientSession] = None

    def _url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.token}/{method}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def send(self, recipient_id: str, content: Union[TextContent, PhotoContent]) -> SendResult:
        await self.rate_limiter.acquire()

        if isinstance(content, TextContent):
            method = "sendMessage"
            kwargs = {"json": _text_payload(recipient_id, content)}
        elif content.is_upload:
            method = "sendPhoto"
            kwargs = {"data": _photo_form(recipient_id, content)}
        else:
            method = "sendPhoto"
            kwargs = {"json": _photo_payload(recipient_id, content)}

        try:
            session = self._get_session()
            async with session.post(self._url(method), **kwargs) as resp:
                body = await resp.text()
                try:
                    payload = json.loads(body) if body else {}
                except ValueError:
                    payload = {"description": body[:200]}
                result = classify_response(resp.status, payload)

        except asyncio.TimeoutError:
            result = SendResult.transient(f"timeout after {self.request_timeout}s")
        except aiohttp.ClientError as e:
            result = SendResult.transient(f"connection error: {e}")

        if not result.ok:
            logger.debug(
                f"channel_send_failed: {recipient_id} {result.status} ({result.error})",
                extra={"recipient": recipient_id, "status": result.status, "error": result.error},
            )
        return result

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _text_payload(chat_id: str, content: TextContent) -> dict:
    payload = {"chat_id": chat_id, "text": content.text}
    if content.parse_mode:
        payload["parse_mode"] = content.parse_mode
    return payload


def _photo_payload(chat_id: str, content: PhotoContent) -> dict:
    payload = {"chat_id": chat_id, "photo": content.photo, "caption": content.caption}
    if content.parse_mode:
        payload["parse_mode"] = content.parse_mode
    return payload


def _photo_form(chat_id: str, content: PhotoContent) -> aiohttp.FormData:
    form = aiohttp.FormData()
    form.add_field("chat_id", str(chat_id))
    form.add_field("caption", content.caption)
    if content.parse_mode:
        form.add_field("parse_mode", content.parse_mode)
    form.add_field("photo", bytes(content.photo), filename=content.filename, content_type="image/png")
    return form
