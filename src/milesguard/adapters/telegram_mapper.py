"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core pipeline.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from telethon.tl.custom import Message
from telethon.tl.types import MessageService

from milesguard.core.models import GroupInfo, RawMessage

LOGGER = logging.getLogger(__name__)


def message_id(message: Message) -> str:
    """Telegram message ids are only unique per chat, so qualify them."""

    return f"{message.chat_id}:{message.id}"


def display_name(entity: Any) -> Optional[str]:
    """Return a human-friendly name for a user, chat or channel entity."""

    if entity is None:
        return None
    title = getattr(entity, "title", None)
    if title:
        return str(title)
    first = getattr(entity, "first_name", None)
    last = getattr(entity, "last_name", None)
    if first or last:
        return " ".join(part for part in [first, last] if part)
    username = getattr(entity, "username", None)
    if username:
        return f"@{username}"
    return None


def is_system_message(message: Message) -> bool:
    # Joins, title changes and pins arrive as service messages with an action.
    return isinstance(message, MessageService) or getattr(message, "action", None) is not None


async def resolve_sender_name(message: Message) -> str:
    sender = getattr(message, "sender", None)
    if sender is None:
        try:
            sender = await message.get_sender()
        except Exception:
            LOGGER.debug("Could not resolve sender for %s", message_id(message), exc_info=True)
            sender = None
    name = display_name(sender)
    if name:
        return name
    post_author = getattr(message, "post_author", None)
    return str(post_author) if post_author else "unknown"


async def build_raw_message(message: Message) -> RawMessage:
    """Build a core RawMessage from a Telethon Message."""

    return RawMessage(
        id=message_id(message),
        conversation_id=str(message.chat_id),
        sender_name=await resolve_sender_name(message),
        text=message.raw_text or "",
        timestamp=message.date,
        is_group=bool(getattr(message, "is_group", False)),
        is_system=is_system_message(message),
    )


def group_info_from_dialog(dialog: Any) -> GroupInfo:
    """Map a Telethon Dialog for a group chat onto GroupInfo."""

    entity = getattr(dialog, "entity", None)
    name = getattr(dialog, "name", None) or display_name(entity) or str(dialog.id)
    return GroupInfo(
        id=str(dialog.id),
        name=name,
        participants_count=getattr(entity, "participants_count", None),
    )
