"""Telegram notification channel for Saved Messages.

Formats a human-readable Markdown message and sends it to Saved Messages of
the monitoring account itself.
"""

from __future__ import annotations

import logging

from milesguard.adapters.notification_formatting import format_notification
from milesguard.core.models import RelevantMessage, SendResult

LOGGER = logging.getLogger(__name__)


class SavedMessagesChannel:
    """Channel adapter that sends messages to the user's Saved Messages."""

    name = "saved_messages"

    def __init__(self, client, snippet_chars: int = 1000) -> None:
        self._client = client
        self._snippet_chars = snippet_chars

    async def send_notification(self, message: RelevantMessage) -> SendResult:
        """Send the formatted notification to Saved Messages."""

        if not self._client.is_connected():
            return SendResult.failed(error="Telegram client not connected")

        text = format_notification(message, self._snippet_chars, mode="markdown")
        try:
            await self._client.send_message("me", text, parse_mode="Markdown")
        except Exception as exc:
            LOGGER.warning("Saved Messages delivery failed for %s: %s", message.id, exc)
            return SendResult.failed(error=str(exc) or type(exc).__name__)
        return SendResult.ok()
