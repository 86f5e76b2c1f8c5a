"""Telegram Bot API notification channel.

Uses the Bot API for delivery so notifications can be routed via a bot chat.
Messages are spaced according to the configured rate limit.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.error
import urllib.request
from typing import Optional

from milesguard.adapters.notification_formatting import format_notification
from milesguard.core.models import CONFIG_ERROR, SERVICE_DISABLED, RelevantMessage, SendResult

LOGGER = logging.getLogger(__name__)

# Bot API answers that will not change on retry: bad request, bad token, bot
# blocked or chat not found.
_CONFIG_STATUS_CODES = frozenset({400, 401, 403, 404})


class TelegramBotChannel:
    """Channel adapter that sends messages via the Telegram Bot API."""

    name = "telegram_bot"

    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        snippet_chars: int = 1000,
        rate_limit_per_minute: int = 30,
        timeout: float = 10.0,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._snippet_chars = snippet_chars
        self._interval = 60.0 / rate_limit_per_minute
        self._timeout = timeout
        self._last_sent: Optional[float] = None
        self._lock = asyncio.Lock()

        if not bot_token:
            LOGGER.warning("Telegram bot token not provided, channel disabled")
        elif not chat_id:
            LOGGER.warning("Telegram bot chat id not provided, channel disabled")

    @property
    def enabled(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    async def send_notification(self, message: RelevantMessage) -> SendResult:
        """Send the formatted notification via the Bot API."""

        if not self.enabled:
            return SendResult.failed(reason=SERVICE_DISABLED)

        text = format_notification(message, self._snippet_chars, mode="html")
        async with self._lock:
            await self._wait_for_slot()
            try:
                result = await asyncio.to_thread(self._post, text)
            finally:
                self._last_sent = time.monotonic()
        return result

    async def _wait_for_slot(self) -> None:
        if self._last_sent is None:
            return
        wait = self._interval - (time.monotonic() - self._last_sent)
        if wait > 0:
            await asyncio.sleep(wait)

    def _post(self, text: str) -> SendResult:
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            error = f"Bot API error {e.code}: {body}"
            if e.code in _CONFIG_STATUS_CODES:
                LOGGER.error("Telegram bot rejected the request: %s", error)
                return SendResult.failed(error=error, reason=CONFIG_ERROR)
            return SendResult.failed(error=error)
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            return SendResult.failed(error=f"Bot API unreachable: {e}")
        return SendResult.ok()
