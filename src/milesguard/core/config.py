"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from milesguard.core.filter_engine import is_target_conversation, match_keywords

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorConfig:
    """Which conversations to watch and which keywords make a message relevant."""

    target_conversations: Tuple[str, ...]
    keywords: Tuple[str, ...]
    case_sensitive: bool = False
    enabled_channels: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DedupConfig:
    """Deduplication settings for the inbound pipeline."""

    enabled: bool = True
    ttl_seconds: float = 3600.0
    cleanup_interval_seconds: float = 1800.0
    text_prefix_chars: int = 100
    bucket_seconds: int = 60


@dataclass(frozen=True)
class ConnectionConfig:
    """Reconnection policy for the transport connection."""

    max_attempts: int = 5
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 30.0
    conflict_delay_seconds: float = 2.0
    roster_delay_seconds: float = 2.0


@dataclass(frozen=True)
class DispatchConfig:
    """Retry policy for notification delivery."""

    max_attempts: int = 3
    retry_base_seconds: float = 5.0
    scan_interval_seconds: float = 10.0
    stale_after_seconds: float = 300.0
    shutdown_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class NotificationConfig:
    """Notification formatting settings consumed by channel adapters."""

    snippet_chars: int = 1000


class StaticConfigProvider:
    """In-memory ``ConfigPort`` over a ``MonitorConfig``.

    The monitor section can be swapped at runtime with ``reload``; readers
    always see either the old or the new config, never a mix.
    """

    def __init__(self, config: MonitorConfig) -> None:
        self._config = config

    def get_config(self) -> MonitorConfig:
        return self._config

    def reload(self, config: MonitorConfig) -> None:
        self._config = config
        LOGGER.info(
            "Monitor config reloaded: %s targets, %s keywords",
            len(config.target_conversations),
            len(config.keywords),
        )

    def is_target_conversation(self, name: str) -> bool:
        return is_target_conversation(name, self._config.target_conversations, self._config.case_sensitive)

    def get_matched_keywords(self, text: str) -> List[str]:
        return match_keywords(text, self._config.keywords, self._config.case_sensitive)
