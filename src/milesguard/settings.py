"""Configuration loading for milesguard.

All user-editable settings (target groups, keywords, channels, retry and
dedup tuning, logging) live in a single JSON file for quick edits without
touching Python. Secrets (Telegram API credentials, bot token) come from the
environment, optionally through a ``.env`` file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv

from milesguard.core.config import (
    ConnectionConfig,
    DedupConfig,
    DispatchConfig,
    MonitorConfig,
    NotificationConfig,
)
from milesguard.core.errors import ConfigError

KNOWN_CHANNELS = ("telegram_bot", "saved_messages", "archive")

DEFAULT_CONFIG_NAME = "config.json"
DEFAULT_ARCHIVE_PATH = "data/milesguard.db"


def default_config_path() -> str:
    """config.json in the working directory unless MILESGUARD_CONFIG says otherwise."""

    return os.getenv("MILESGUARD_CONFIG") or os.path.join(os.getcwd(), DEFAULT_CONFIG_NAME)


@dataclass(frozen=True)
class Secrets:
    api_id: Optional[int]
    api_hash: Optional[str]
    session_name: str = "milesguard"
    bot_token: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    login_method: Optional[str] = None


def load_secrets() -> Secrets:
    """Read secrets via python-dotenv to keep them out of config.json."""

    load_dotenv()
    raw_api_id = os.getenv("API_ID")
    try:
        api_id = int(raw_api_id) if raw_api_id else None
    except ValueError as exc:
        raise ConfigError("API_ID must be an integer") from exc
    return Secrets(
        api_id=api_id,
        api_hash=os.getenv("API_HASH") or None,
        session_name=os.getenv("SESSION_NAME") or "milesguard",
        bot_token=os.getenv("BOT_API") or None,
        phone=os.getenv("PHONE") or None,
        password=os.getenv("2FA") or None,
        login_method=(os.getenv("LOGIN_METHOD") or "").strip().lower() or None,
    )


@dataclass(frozen=True)
class ChannelSettings:
    """Per-channel options; which channels run is in ``MonitorConfig.enabled_channels``."""

    bot_chat_id: Optional[str] = None
    bot_rate_limit_per_minute: int = 30
    archive_path: str = DEFAULT_ARCHIVE_PATH


@dataclass(frozen=True)
class Settings:
    monitor: MonitorConfig
    channels: ChannelSettings = field(default_factory=ChannelSettings)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    logging: dict = field(default_factory=dict)
    path: Optional[str] = None

    @property
    def project_root(self) -> str:
        if self.path:
            return os.path.dirname(os.path.abspath(self.path))
        return os.getcwd()


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be an object")
    return value


def _string_list(section: dict, key: str, where: str, required: bool = True) -> tuple[str, ...]:
    value = section.get(key)
    if value is None and not required:
        return ()
    if not isinstance(value, list) or (required and not value):
        raise ConfigError(f"'{where}.{key}' must be a non-empty list")
    items = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"'{where}.{key}' entries must be non-empty strings")
        items.append(item.strip())
    return tuple(items)


def _number(
    section: dict,
    key: str,
    where: str,
    default: Any,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    kind: type = float,
):
    value = section.get(key, default)
    # bool is an int subclass; "true" is never a valid count.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{where}.{key}' must be a number")
    if kind is int and int(value) != value:
        raise ConfigError(f"'{where}.{key}' must be an integer")
    if minimum is not None and value < minimum:
        raise ConfigError(f"'{where}.{key}' must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"'{where}.{key}' must be <= {maximum}")
    return kind(value)


def _flag(section: dict, key: str, where: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{where}.{key}' must be true or false")
    return value


def _parse_monitor(raw: dict) -> MonitorConfig:
    monitor = _section(raw, "monitor")
    channels = _section(raw, "channels")
    enabled = _string_list(channels, "enabled", "channels", required=False)
    unknown = [name for name in enabled if name not in KNOWN_CHANNELS]
    if unknown:
        raise ConfigError(f"Unknown notification channels: {', '.join(unknown)}")
    return MonitorConfig(
        target_conversations=_string_list(monitor, "target_groups", "monitor"),
        keywords=_string_list(monitor, "keywords", "monitor"),
        case_sensitive=_flag(monitor, "case_sensitive", "monitor", False),
        enabled_channels=enabled,
    )


def _parse_channels(raw: dict) -> ChannelSettings:
    channels = _section(raw, "channels")
    bot = _section(channels, "telegram_bot")
    archive = _section(channels, "archive")
    chat_id = bot.get("chat_id")
    return ChannelSettings(
        bot_chat_id=str(chat_id) if chat_id not in (None, "") else None,
        bot_rate_limit_per_minute=_number(bot, "rate_limit_per_minute", "channels.telegram_bot", 30, 1, 60, int),
        archive_path=str(archive.get("path") or DEFAULT_ARCHIVE_PATH),
    )


def _parse_connection(raw: dict) -> ConnectionConfig:
    section = _section(raw, "connection")
    config = ConnectionConfig(
        max_attempts=_number(section, "max_reconnect_attempts", "connection", 5, 1, 10, int),
        base_delay_seconds=_number(section, "reconnect_base_seconds", "connection", 5, 1, 60),
        max_delay_seconds=_number(section, "reconnect_max_seconds", "connection", 30, 1),
        conflict_delay_seconds=_number(section, "conflict_delay_seconds", "connection", 2, 0),
        roster_delay_seconds=_number(section, "roster_delay_seconds", "connection", 2, 0),
    )
    if config.max_delay_seconds < config.base_delay_seconds:
        raise ConfigError("'connection.reconnect_max_seconds' must be >= 'connection.reconnect_base_seconds'")
    return config


def _parse_dedup(raw: dict) -> DedupConfig:
    section = _section(raw, "dedup")
    return DedupConfig(
        enabled=_flag(section, "enabled", "dedup", True),
        ttl_seconds=_number(section, "ttl_seconds", "dedup", 3600, 1),
        cleanup_interval_seconds=_number(section, "cleanup_interval_seconds", "dedup", 1800, 1),
        text_prefix_chars=_number(section, "text_prefix_chars", "dedup", 100, 1, kind=int),
        bucket_seconds=_number(section, "bucket_seconds", "dedup", 60, 1, kind=int),
    )


def _parse_dispatch(raw: dict) -> DispatchConfig:
    section = _section(raw, "dispatch")
    return DispatchConfig(
        max_attempts=_number(section, "max_attempts", "dispatch", 3, 1, 10, int),
        retry_base_seconds=_number(section, "retry_base_seconds", "dispatch", 5, 0.1),
        scan_interval_seconds=_number(section, "scan_interval_seconds", "dispatch", 10, 0.1),
        stale_after_seconds=_number(section, "stale_after_seconds", "dispatch", 300, 1),
        shutdown_timeout_seconds=_number(section, "shutdown_timeout_seconds", "dispatch", 10, 0),
    )


def parse_settings(raw: dict, path: Optional[str] = None) -> Settings:
    """Validate a decoded config.json and build Settings, raising ConfigError."""

    if not isinstance(raw, dict):
        raise ConfigError("Config root must be an object")
    notifications = _section(raw, "notifications")
    return Settings(
        monitor=_parse_monitor(raw),
        channels=_parse_channels(raw),
        connection=_parse_connection(raw),
        dedup=_parse_dedup(raw),
        dispatch=_parse_dispatch(raw),
        notifications=NotificationConfig(
            snippet_chars=_number(notifications, "snippet_chars", "notifications", 1000, 50, 4000, int),
        ),
        logging=_section(raw, "logging"),
        path=path,
    )


def load_settings(path: Optional[str] = None) -> Settings:
    """Load config.json with a flat, user-friendly schema."""

    path = path or default_config_path()
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}: {exc}") from exc
    return parse_settings(raw, path=path)
