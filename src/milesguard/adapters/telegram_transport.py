"""Telethon transport adapter.

Translates Telethon's client lifecycle, incoming messages and chat actions
into the typed events the orchestrator consumes. Telethon's own
auto-reconnect is disabled (see ``client.build_client``) so reconnection
policy stays with the connection state machine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from telethon import TelegramClient, errors, events

from milesguard.adapters.telegram_mapper import build_raw_message, display_name, group_info_from_dialog
from milesguard.core.connection import CONFLICT_MARKER
from milesguard.core.errors import SessionConflictError, TransportTerminalError, TransportTransientError
from milesguard.core.events import (
    STATE_CLOSE,
    STATE_CONNECTING,
    STATE_OPEN,
    CloseReason,
    ConnectionUpdate,
    EventPublisher,
    GroupDelta,
    GroupDeltas,
    GroupUpserts,
    MessageBatch,
)
from milesguard.core.models import GroupInfo

LOGGER = logging.getLogger(__name__)

# The authorization is gone for good; only a new login can fix these.
LOGGED_OUT_ERRORS = (
    errors.AuthKeyUnregisteredError,
    errors.SessionRevokedError,
    errors.SessionExpiredError,
    errors.UserDeactivatedError,
    errors.UserDeactivatedBanError,
)


def close_reason_from_error(error: Optional[BaseException]) -> CloseReason:
    """Describe why the client disconnected in transport-neutral terms."""

    if error is None:
        return CloseReason(message="connection closed")
    code = getattr(error, "code", None)
    if isinstance(error, LOGGED_OUT_ERRORS):
        return CloseReason(status_code=code, message=str(error), logged_out=True)
    if isinstance(error, errors.AuthKeyDuplicatedError):
        # Same session used from two places at once.
        return CloseReason(status_code=code, message=f"{CONFLICT_MARKER}: {error}")
    return CloseReason(status_code=code, message=str(error) or type(error).__name__)


class TelegramTransport:
    """TransportPort implementation on top of a Telethon client."""

    def __init__(
        self,
        client: TelegramClient,
        publish: EventPublisher,
        password: Optional[str] = None,
        qr_timeout: float = 120.0,
    ) -> None:
        self._client = client
        self._publish = publish
        self._password = password
        self._qr_timeout = qr_timeout
        self._handlers_registered = False
        self._closing = False
        self._login_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Open the connection; lifecycle results arrive as queued events."""

        self._closing = False
        self._register_handlers()
        self._publish(ConnectionUpdate(state=STATE_CONNECTING))
        try:
            if self._client.is_connected():
                await self._client.disconnect()
            await self._client.connect()
            authorized = await self._client.is_user_authorized()
        except LOGGED_OUT_ERRORS as exc:
            raise TransportTerminalError(str(exc), getattr(exc, "code", None)) from exc
        except errors.AuthKeyDuplicatedError as exc:
            raise SessionConflictError(f"{CONFLICT_MARKER}: {exc}", getattr(exc, "code", None)) from exc
        except (OSError, ConnectionError, asyncio.TimeoutError, errors.RPCError) as exc:
            raise TransportTransientError(str(exc) or type(exc).__name__, getattr(exc, "code", None)) from exc

        if authorized:
            self._on_authorized()
        else:
            self._login_task = asyncio.create_task(self._qr_login())

    async def _qr_login(self) -> None:
        try:
            qr = await self._client.qr_login()
            while not self._closing:
                self._publish(ConnectionUpdate(credential=qr.url))
                try:
                    await qr.wait(timeout=self._qr_timeout)
                    break
                except asyncio.TimeoutError:
                    LOGGER.info("QR login expired, generating a new one")
                    await qr.recreate()
                except errors.SessionPasswordNeededError:
                    if not self._password:
                        self._publish_close(
                            CloseReason(
                                message="two-step verification password required, run `milesguard login`",
                                logged_out=True,
                            )
                        )
                        return
                    await self._client.sign_in(password=self._password)
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("QR login failed: %s", exc)
            self._publish_close(close_reason_from_error(exc))
            return

        if not self._closing:
            LOGGER.info("QR login confirmed")
            self._on_authorized()

    def _on_authorized(self) -> None:
        self._publish(ConnectionUpdate(state=STATE_OPEN))
        self._cancel_task(self._watch_task)
        self._watch_task = asyncio.create_task(self._watch_disconnect())

    async def _watch_disconnect(self) -> None:
        try:
            await self._client.disconnected
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = close_reason_from_error(exc)
        else:
            reason = close_reason_from_error(None)
        if not self._closing:
            self._publish_close(reason)

    def _publish_close(self, reason: CloseReason) -> None:
        self._publish(ConnectionUpdate(state=STATE_CLOSE, close_reason=reason))

    def _register_handlers(self) -> None:
        if self._handlers_registered:
            return
        self._client.add_event_handler(self._on_new_message, events.NewMessage(incoming=True))
        self._client.add_event_handler(self._on_chat_action, events.ChatAction())
        self._handlers_registered = True

    async def _on_new_message(self, event) -> None:
        try:
            raw = await build_raw_message(event.message)
        except Exception:
            LOGGER.exception("Error while mapping message")
            return
        self._publish(MessageBatch((raw,)))

    async def _on_chat_action(self, event) -> None:
        try:
            if event.new_title:
                self._publish(GroupDeltas((GroupDelta(id=str(event.chat_id), name=event.new_title),)))
                return
            if event.created or await self._self_joined(event):
                chat = await event.get_chat()
                group = GroupInfo(
                    id=str(event.chat_id),
                    name=display_name(chat) or str(event.chat_id),
                    participants_count=getattr(chat, "participants_count", None),
                )
                self._publish(GroupUpserts((group,)))
        except Exception:
            LOGGER.exception("Error while handling chat action")

    async def _self_joined(self, event) -> bool:
        if not (event.user_joined or event.user_added):
            return False
        user = await event.get_user()
        return bool(getattr(user, "is_self", False))

    async def fetch_all_groups(self) -> list[GroupInfo]:
        groups = []
        async for dialog in self._client.iter_dialogs():
            if dialog.is_group:
                groups.append(group_info_from_dialog(dialog))
        return groups

    async def logout(self) -> None:
        self._closing = True
        self._cancel_background()
        await self._client.log_out()

    async def close(self) -> None:
        self._closing = True
        self._cancel_background()
        await self._client.disconnect()

    async def clear_session(self) -> None:
        """Drop the local authorization so the next connect starts a fresh login."""

        self._closing = True
        self._cancel_background()
        await self._client.disconnect()
        session = self._client.session
        session.auth_key = None
        session.save()
        session.delete()
        LOGGER.warning("Local Telegram session cleared")

    def _cancel_background(self) -> None:
        self._cancel_task(self._login_task)
        self._cancel_task(self._watch_task)
        self._login_task = None
        self._watch_task = None

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done():
            task.cancel()
