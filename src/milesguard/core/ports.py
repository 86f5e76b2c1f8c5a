"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for the transport, configuration and
notification adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import List, Protocol

from milesguard.core.config import MonitorConfig
from milesguard.core.models import GroupInfo, RelevantMessage, SendResult


class TransportPort(Protocol):
    """Operations required from the messaging transport.

    Lifecycle, message and group events are not returned from these calls;
    the adapter pushes them onto the event queue it was built with.
    """

    async def connect(self) -> object:
        ...

    async def fetch_all_groups(self) -> List[GroupInfo]:
        ...

    async def logout(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def clear_session(self) -> None:
        ...


class ConfigPort(Protocol):
    """Read access to the monitoring configuration."""

    def get_config(self) -> MonitorConfig:
        ...

    def is_target_conversation(self, name: str) -> bool:
        ...

    def get_matched_keywords(self, text: str) -> List[str]:
        ...


class NotificationChannel(Protocol):
    """Uniform contract for every downstream delivery mechanism.

    Implementations report ``service_disabled`` or ``config_error`` in the
    result reason when retrying cannot help; every other failure is retried.
    """

    name: str

    async def send_notification(self, message: RelevantMessage) -> SendResult:
        ...
