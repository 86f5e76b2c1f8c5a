"""Error taxonomy shared by the core and adapters.

Transport and channel boundaries convert exceptions into these classes (or
into structured results) so callers can decide between retrying, surfacing
and dropping without inspecting integration-specific exception types.
"""

from __future__ import annotations


class MilesGuardError(Exception):
    """Base class for every error raised by milesguard."""


class ConfigError(MilesGuardError):
    """Invalid or missing configuration."""


class ValidationError(MilesGuardError):
    """Malformed inbound message. Dropped and logged, never retried."""


class TransportError(MilesGuardError):
    """Failure reported by the messaging transport."""

    def __init__(self, message: str, status_code: "int | None" = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportTransientError(TransportError):
    """Network blip or unexpected close. Retried through reconnection backoff."""


class TransportTerminalError(TransportError):
    """Explicit logout. Surfaced upward and never retried."""


class SessionConflictError(TransportError):
    """Another client took over the session. Healed by clearing local credentials."""


class ChannelError(MilesGuardError):
    """Failure raised inside a notification channel."""


class ChannelTransientError(ChannelError):
    """Temporary channel failure, retried through the dispatch retry queue."""


class ChannelConfigError(ChannelError):
    """Channel misconfiguration. Surfaced immediately, never retried."""
