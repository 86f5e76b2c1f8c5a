"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

SERVICE_DISABLED = "service_disabled"
CONFIG_ERROR = "config_error"

# Failure reasons a channel reports when retrying cannot help.
NON_RETRYABLE_REASONS = frozenset({SERVICE_DISABLED, CONFIG_ERROR})


class ConnectionState(str, Enum):
    """Lifecycle states of the transport connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_CREDENTIAL = "awaiting_credential"
    CONNECTED = "connected"
    FAILED_PERMANENTLY = "failed_permanently"


@dataclass(frozen=True)
class RawMessage:
    """Transport-neutral message as produced by a transport adapter."""

    id: str
    conversation_id: str
    sender_name: str
    text: Optional[str]
    timestamp: Optional[datetime]
    is_group: bool
    is_system: bool = False


@dataclass(frozen=True)
class NormalizedMessage:
    """Message accepted by stage 1 of the pipeline."""

    id: str
    conversation_id: str
    conversation_name: Optional[str]
    sender_name: str
    text: str
    received_at: datetime


@dataclass(frozen=True)
class RelevantMessage:
    """A message from a target conversation that matched at least one keyword."""

    id: str
    conversation_id: str
    conversation_name: str
    sender_name: str
    text: str
    received_at: datetime
    matched_keywords: Tuple[str, ...]
    is_relevant: bool = True

    @classmethod
    def from_message(cls, message: NormalizedMessage, matched_keywords: Tuple[str, ...]) -> "RelevantMessage":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            conversation_name=message.conversation_name or "",
            sender_name=message.sender_name,
            text=message.text,
            received_at=message.received_at,
            matched_keywords=tuple(matched_keywords),
        )


@dataclass(frozen=True)
class GroupInfo:
    """Metadata for a group conversation known to the transport."""

    id: str
    name: str
    participants_count: Optional[int] = None


@dataclass(frozen=True)
class SendResult:
    """Outcome of one notification channel call."""

    success: bool
    reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "SendResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: Optional[str] = None, reason: Optional[str] = None) -> "SendResult":
        return cls(success=False, reason=reason, error=error)

    @property
    def retryable(self) -> bool:
        return not self.success and self.reason not in NON_RETRYABLE_REASONS

    def describe(self) -> str:
        return self.error or self.reason or "unknown error"


@dataclass
class RetryItem:
    """One failed (message, channel) delivery waiting for its next attempt.

    Mutated in place by the retry loop; at most one exists per key.
    """

    message: RelevantMessage
    channel_name: str
    attempts: int
    max_attempts: int
    last_attempt_at: float
    next_retry_at: float
    last_result: Optional[SendResult] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.message.id, self.channel_name)

    @property
    def message_id(self) -> str:
        return self.message.id


@dataclass
class DispatchReport:
    """Per-channel results of a single dispatch call."""

    message_id: str
    results: Dict[str, SendResult] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def delivered_everywhere(self) -> bool:
        return all(result.success for result in self.results.values())
