"""
Notification delivery for scheduled jobs.

Sends job notifications to Telegram users one at a time, spaced at
1000 / messages_per_second ms, with per-message exponential-backoff retry for
transient failures. Telegram's documented ceiling is 30 msg/s; the default of
25 leaves headroom.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Protocol

from telegram import Bot, InlineKeyboardMarkup
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TimedOut

from app.jobs.types import JobContext, JobNotification, ParseMode

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES_PER_SECOND = 25

# Fallback for errors without a typed classification
_RETRYABLE_PATTERNS = (
    "too many requests",
    "etimeout",
    "econnreset",
    "connection reset",
    "timed out",
    "network",
    "429",
    "503",
    "504",
)


class MessagingClient(Protocol):
    async def send_message(
        self,
        recipient_id: str,
        text: str,
        *,
        parse_mode: ParseMode | None = None,
        silent: bool = False,
        reply_markup: dict[str, Any] | None = None,
    ) -> int: ...

    def session(self) -> AsyncContextManager[Any]:
        """Scope one batch of sends; connections opened inside are closed on exit."""
        ...


@dataclass(frozen=True)
class NotificationPayload:
    telegram_user_id: str
    message: str
    parse_mode: ParseMode | None = "HTML"
    silent: bool = False
    reply_markup: dict[str, Any] | None = None

    @classmethod
    def from_notification(cls, n: JobNotification) -> NotificationPayload:
        return cls(
            telegram_user_id=n.telegram_user_id,
            message=n.message,
            parse_mode=n.parse_mode,
            silent=n.silent,
            reply_markup=n.reply_markup,
        )


@dataclass(frozen=True)
class NotificationResult:
    telegram_user_id: str
    success: bool
    message_id: int | None = None
    error: str | None = None
    retryable: bool = False


@dataclass(frozen=True)
class NotificationBatchResult:
    total: int
    successful: int
    failed: int
    results: list[NotificationResult] = field(default_factory=list)


def is_retryable_error(exc: BaseException) -> bool:
    """Transient (worth retrying) vs permanent delivery errors."""
    if isinstance(exc, (RetryAfter, TimedOut)):
        return True
    if isinstance(exc, (BadRequest, Forbidden, InvalidToken)):
        return False
    if isinstance(exc, NetworkError):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return is_retryable_message(str(exc))


def is_retryable_message(error: str) -> bool:
    lowered = (error or "").lower()
    return any(p in lowered for p in _RETRYABLE_PATTERNS)


class NotificationDispatcher:
    def __init__(
        self,
        *,
        messages_per_second: int = DEFAULT_MESSAGES_PER_SECOND,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client: MessagingClient | None = None
        self._messages_per_second = max(1, int(messages_per_second))
        self._max_retries = max(1, int(max_retries))
        self._base_delay_ms = max(0, int(base_delay_ms))
        self._sleep = sleep

    @property
    def batch_delay_ms(self) -> float:
        return 1000 / self._messages_per_second

    def initialize(self, client: MessagingClient) -> None:
        self._client = client
        logger.info("Notification dispatcher initialized")

    def is_ready(self) -> bool:
        return self._client is not None

    async def _delay(self, ms: float) -> None:
        await self._sleep(ms / 1000)

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        if self._client is None:
            return NotificationResult(
                telegram_user_id=payload.telegram_user_id,
                success=False,
                error="Notification service not initialized",
            )

        try:
            message_id = await self._client.send_message(
                payload.telegram_user_id,
                payload.message,
                parse_mode=payload.parse_mode or "HTML",
                silent=payload.silent,
                reply_markup=payload.reply_markup,
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error(
                "Failed to send notification",
                extra={"user_id": payload.telegram_user_id, "error": error},
            )
            return NotificationResult(
                telegram_user_id=payload.telegram_user_id,
                success=False,
                error=error,
                retryable=is_retryable_error(exc),
            )

        logger.info("Sent notification", extra={"user_id": payload.telegram_user_id, "message_id": message_id})
        return NotificationResult(telegram_user_id=payload.telegram_user_id, success=True, message_id=message_id)

    async def send_with_retry(
        self,
        payload: NotificationPayload,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        *,
        min_delay_ms: float = 0,
    ) -> NotificationResult:
        """
        Deliver one payload, retrying transient failures with exponential backoff.

        ``min_delay_ms`` floors every retry delay; batches pass their send window
        so a retry never lands inside it.
        """
        max_retries = self._max_retries if max_retries is None else max(1, int(max_retries))
        base_delay_ms = self._base_delay_ms if base_delay_ms is None else int(base_delay_ms)
        last_error = ""

        for attempt in range(1, max_retries + 1):
            result = await self.send(payload)
            if result.success:
                return result

            last_error = result.error or "Unknown error"
            if not result.retryable:
                return result

            if attempt < max_retries:
                delay = max(base_delay_ms * 2 ** (attempt - 1), min_delay_ms)
                logger.info(
                    "Retrying notification",
                    extra={"user_id": payload.telegram_user_id, "attempt": attempt, "delay_ms": delay},
                )
                await self._delay(delay)

        return NotificationResult(
            telegram_user_id=payload.telegram_user_id,
            success=False,
            error=f"Failed after {max_retries} attempts: {last_error}",
            retryable=True,
        )

    async def send_batch(
        self,
        payloads: list[NotificationPayload],
        max_retries: int | None = None,
    ) -> NotificationBatchResult:
        logger.info("Starting batch send", extra={"count": len(payloads)})

        if self._client is None:
            results = await self._send_spaced(payloads, max_retries)
        else:
            async with self._client.session():
                results = await self._send_spaced(payloads, max_retries)

        successful = sum(1 for r in results if r.success)
        failed = len(results) - successful
        logger.info("Batch send complete", extra={"total": len(payloads), "successful": successful, "failed": failed})
        return NotificationBatchResult(total=len(payloads), successful=successful, failed=failed, results=results)

    async def _send_spaced(self, payloads: list[NotificationPayload], max_retries: int | None) -> list[NotificationResult]:
        results: list[NotificationResult] = []
        successful = 0
        failed = 0

        for i, payload in enumerate(payloads):
            if i > 0:
                await self._delay(self.batch_delay_ms)

            result = await self.send_with_retry(payload, max_retries=max_retries, min_delay_ms=self.batch_delay_ms)
            results.append(result)
            if result.success:
                successful += 1
            else:
                failed += 1

            if (i + 1) % 10 == 0:
                logger.info(
                    "Batch progress",
                    extra={"sent": i + 1, "total": len(payloads), "successful": successful, "failed": failed},
                )
        return results

    async def deliver(self, notifications: list[JobNotification], context: JobContext) -> NotificationBatchResult:
        """Notification handler for the job queue."""
        if not self.is_ready():
            logger.warning(
                "Notification service not ready",
                extra={"job_name": context.job_name, "count": len(notifications)},
            )
        return await self.send_batch([NotificationPayload.from_notification(n) for n in notifications])


def _as_markup(reply_markup: dict[str, Any] | None) -> InlineKeyboardMarkup | None:
    if not reply_markup:
        return None
    return InlineKeyboardMarkup.de_json(reply_markup, None)


class TelegramMessenger:
    """
    MessagingClient backed by python-telegram-bot.

    Queue tasks each run in their own event loop, so a Bot never outlives the
    batch that opened it: ``session()`` shuts it down on exit. A send outside
    a session opens and closes a Bot for that one message.
    """

    def __init__(self, token: str) -> None:
        self._token = token
        self._bot: Bot | None = None
        self._in_session = False

    @asynccontextmanager
    async def session(self) -> AsyncIterator[TelegramMessenger]:
        self._in_session = True
        try:
            yield self
        finally:
            self._in_session = False
            bot, self._bot = self._bot, None
            if bot is not None:
                await bot.shutdown()

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        *,
        parse_mode: ParseMode | None = None,
        silent: bool = False,
        reply_markup: dict[str, Any] | None = None,
    ) -> int:
        if not self._in_session:
            async with self.session():
                return await self.send_message(
                    recipient_id, text, parse_mode=parse_mode, silent=silent, reply_markup=reply_markup
                )

        if self._bot is None:
            # Opened lazily so a failing getMe surfaces as a per-message error.
            bot = Bot(token=self._token)
            await bot.initialize()
            self._bot = bot

        try:
            message = await self._bot.send_message(
                chat_id=recipient_id,
                text=text,
                parse_mode=parse_mode,
                disable_notification=silent,
                reply_markup=_as_markup(reply_markup),
            )
        except RetryAfter as exc:
            logger.warning("Telegram rate limit hit", extra={"user_id": recipient_id, "retry_after": str(exc.retry_after)})
            raise
        return int(message.message_id)
