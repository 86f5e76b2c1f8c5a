"""Typed events flowing through the orchestrator.

Transport adapters push the inbound events below onto a queue; the
orchestrator pulls them one at a time. Domain events travel the other way,
from the core up to the host application through an injected sink.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from milesguard.core.models import GroupInfo, RawMessage

MESSAGE_RELEVANT = "message:relevant"
CONNECTION_READY = "connection:ready"
CONNECTION_FAILED = "connection:failed"
CONNECTION_CREDENTIAL_REQUIRED = "connection:credential_required"
DISPATCH_COMPLETED = "dispatch:completed"
RETRY_SUCCESS = "retry:success"
RETRY_FAILED = "retry:failed"

STATE_CONNECTING = "connecting"
STATE_OPEN = "open"
STATE_CLOSE = "close"


@dataclass(frozen=True)
class CloseReason:
    """Why the transport closed, as reported by the transport adapter."""

    status_code: Optional[int] = None
    message: Optional[str] = None
    logged_out: bool = False


@dataclass(frozen=True)
class ConnectionUpdate:
    """Lifecycle signal from the transport.

    ``credential`` carries a login challenge (a QR login URL for Telegram).
    """

    state: Optional[str] = None
    credential: Optional[str] = None
    close_reason: Optional[CloseReason] = None


@dataclass(frozen=True)
class MessageBatch:
    messages: Tuple[RawMessage, ...]


@dataclass(frozen=True)
class GroupDelta:
    """Partial update for a known group; ``None`` fields are unchanged."""

    id: str
    name: Optional[str] = None
    participants_count: Optional[int] = None


@dataclass(frozen=True)
class GroupDeltas:
    updates: Tuple[GroupDelta, ...]


@dataclass(frozen=True)
class GroupUpserts:
    groups: Tuple[GroupInfo, ...]


@dataclass(frozen=True)
class GroupsLoaded:
    """Full roster fetched after the connection opened."""

    groups: Tuple[GroupInfo, ...]


TransportEvent = Any
EventPublisher = Callable[[TransportEvent], None]


@dataclass(frozen=True)
class DomainEvent:
    """Event exposed to the host application."""

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[DomainEvent], None]


def null_sink(event: DomainEvent) -> None:
    return None


class EventRecorder:
    """Sink that keeps every event in memory, useful for inspection."""

    def __init__(self) -> None:
        self.events: List[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> List[DomainEvent]:
        return [event for event in self.events if event.name == name]
