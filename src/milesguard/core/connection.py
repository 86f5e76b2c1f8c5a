"""Connection lifecycle state machine.

Owns the transport connection: it classifies lifecycle signals, schedules
reconnection with capped exponential backoff and republishes the group
roster for the orchestrator. It never looks at message content.

Transitions::

    disconnected -> connecting -> [awaiting_credential] -> connected -> disconnected
    disconnected -> failed_permanently   (logout, or reconnect attempts exhausted)

``failed_permanently`` is terminal: no further automatic retry happens.
"""

from __future__ import annotations

import logging
from typing import Optional

from milesguard.core.backoff import exponential_backoff
from milesguard.core.config import ConnectionConfig
from milesguard.core.errors import (
    SessionConflictError,
    TransportError,
    TransportTerminalError,
    TransportTransientError,
)
from milesguard.core.events import (
    CONNECTION_CREDENTIAL_REQUIRED,
    CONNECTION_FAILED,
    CONNECTION_READY,
    STATE_CLOSE,
    STATE_CONNECTING,
    STATE_OPEN,
    CloseReason,
    ConnectionUpdate,
    DomainEvent,
    EventPublisher,
    EventSink,
    GroupsLoaded,
    null_sink,
)
from milesguard.core.models import ConnectionState
from milesguard.core.ports import TransportPort
from milesguard.core.scheduler import Scheduler, TimerHandle

LOGGER = logging.getLogger(__name__)

CONFLICT_MARKER = "conflict"


def classify_close(reason: Optional[CloseReason]) -> TransportError:
    """Map a close reason onto the transport error taxonomy.

    An explicit logout wins over everything else; a conflict marker in the
    error message means another client took over the session; anything else
    is treated as transient.
    """

    if reason is None:
        return TransportTransientError("connection closed")

    message = reason.message or "connection closed"
    if reason.logged_out:
        return TransportTerminalError(message, reason.status_code)
    if CONFLICT_MARKER in message.lower():
        return SessionConflictError(message, reason.status_code)
    return TransportTransientError(message, reason.status_code)


class ConnectionStateMachine:
    """Keeps a resource-bounded lifecycle over an unreliable transport."""

    def __init__(
        self,
        transport: TransportPort,
        scheduler: Scheduler,
        config: ConnectionConfig,
        publish: EventPublisher,
        emit: EventSink = null_sink,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._config = config
        self._publish = publish
        self._emit = emit
        self._backoff = exponential_backoff(
            config.base_delay_seconds,
            config.max_delay_seconds,
            config.max_attempts,
        )
        self._reconnect_handle: Optional[TimerHandle] = None
        self._roster_handle: Optional[TimerHandle] = None
        self._stopping = False
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_error: Optional[TransportError] = None

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def is_terminal(self) -> bool:
        return self.state is ConnectionState.FAILED_PERMANENTLY

    async def connect(self) -> None:
        """Start a handshake with the transport."""

        if self.is_terminal or self._stopping:
            LOGGER.debug("Connect skipped (state=%s, stopping=%s)", self.state.value, self._stopping)
            return

        self._cancel_reconnect()
        self._set_state(ConnectionState.CONNECTING)
        LOGGER.info("Connecting (attempt %s)", self.reconnect_attempts + 1)
        try:
            await self._transport.connect()
        except TransportError as exc:
            LOGGER.warning("Transport connect failed: %s", exc)
            self._set_state(ConnectionState.DISCONNECTED)
            await self._handle_error(exc)
        except Exception as exc:
            LOGGER.warning("Transport connect failed: %s", exc, exc_info=True)
            self._set_state(ConnectionState.DISCONNECTED)
            await self._handle_error(TransportTransientError(str(exc) or type(exc).__name__))

    async def handle_update(self, update: ConnectionUpdate) -> None:
        """Apply one lifecycle signal pushed by the transport adapter."""

        if self.is_terminal:
            LOGGER.debug("Ignoring connection update in terminal state: %s", update)
            return

        if update.credential:
            self._set_state(ConnectionState.AWAITING_CREDENTIAL)
            LOGGER.info("Login required, waiting for credential confirmation")
            self._emit(DomainEvent(CONNECTION_CREDENTIAL_REQUIRED, {"credential": update.credential}))

        if update.state == STATE_OPEN:
            self._on_open()
        elif update.state == STATE_CLOSE:
            await self._on_close(update.close_reason)
        elif update.state == STATE_CONNECTING:
            LOGGER.debug("Transport reports connecting (attempts=%s)", self.reconnect_attempts)

    async def shutdown(self, logout: bool = False) -> None:
        """Stop reconnecting and release the transport."""

        self._stopping = True
        self._cancel_reconnect()
        self._cancel_roster()
        try:
            if logout and self.is_ready:
                await self._transport.logout()
            else:
                await self._transport.close()
        except Exception:
            LOGGER.exception("Error while closing the transport")
        if not self.is_terminal:
            self._set_state(ConnectionState.DISCONNECTED)

    def stats(self) -> dict:
        return {
            "state": self.state.value,
            "reconnect_attempts": self.reconnect_attempts,
            "max_attempts": self._config.max_attempts,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    def _on_open(self) -> None:
        self._cancel_reconnect()
        self.reconnect_attempts = 0
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        LOGGER.info("Connection open")
        self._emit(DomainEvent(CONNECTION_READY, {}))

        # Roster fetch is deferred so connection completion never waits on it.
        self._cancel_roster()
        self._roster_handle = self._scheduler.call_later(self._config.roster_delay_seconds, self._fetch_roster)

    async def _on_close(self, reason: Optional[CloseReason]) -> None:
        self._cancel_roster()
        self._set_state(ConnectionState.DISCONNECTED)
        if self._stopping:
            return

        error = classify_close(reason)
        LOGGER.info(
            "Connection closed (status=%s, reason=%s, attempts=%s)",
            error.status_code,
            error,
            self.reconnect_attempts,
        )
        await self._handle_error(error)

    async def _handle_error(self, error: TransportError) -> None:
        self.last_error = error
        if isinstance(error, TransportTerminalError):
            self._fail("logged_out", error)
        elif isinstance(error, SessionConflictError):
            await self._heal_conflict(error)
        else:
            self._schedule_reconnect(error)

    async def _heal_conflict(self, error: SessionConflictError) -> None:
        LOGGER.warning("Session conflict detected, clearing session: %s", error)
        try:
            await self._transport.clear_session()
        except Exception:
            LOGGER.exception("Failed to clear session after conflict")
            self._schedule_reconnect(TransportTransientError(str(error), error.status_code))
            return

        self.reconnect_attempts = 0
        self._reconnect_handle = self._scheduler.call_later(self._config.conflict_delay_seconds, self.connect)

    def _schedule_reconnect(self, error: TransportError) -> None:
        delay = self._backoff(self.reconnect_attempts)
        if delay is None:
            self._fail("max_attempts", error)
            return

        self.reconnect_attempts += 1
        LOGGER.info(
            "Attempting reconnection in %.1f seconds (attempt %s/%s)",
            delay,
            self.reconnect_attempts,
            self._config.max_attempts,
        )
        self._reconnect_handle = self._scheduler.call_later(delay, self.connect)

    def _fail(self, reason: str, error: TransportError) -> None:
        self._cancel_reconnect()
        self._set_state(ConnectionState.FAILED_PERMANENTLY)
        LOGGER.error("Connection failed permanently (%s): %s", reason, error)
        self._emit(
            DomainEvent(
                CONNECTION_FAILED,
                {
                    "reason": reason,
                    "error": str(error),
                    "attempts": self.reconnect_attempts,
                    "max_attempts": self._config.max_attempts,
                },
            )
        )

    async def _fetch_roster(self) -> None:
        if not self.is_ready:
            return
        try:
            groups = await self._transport.fetch_all_groups()
        except Exception:
            LOGGER.warning("Failed to fetch groups", exc_info=True)
            return
        LOGGER.info("Groups fetched successfully (%s groups)", len(groups))
        self._publish(GroupsLoaded(tuple(groups)))

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is state:
            return
        if self.is_terminal:
            LOGGER.debug("Refusing transition out of terminal state to %s", state.value)
            return
        LOGGER.debug("Connection state %s -> %s", self.state.value, state.value)
        self.state = state

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _cancel_roster(self) -> None:
        if self._roster_handle is not None:
            self._roster_handle.cancel()
            self._roster_handle = None
