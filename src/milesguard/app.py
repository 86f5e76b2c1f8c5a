"""Application entry point for the milesguard watcher."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint

from milesguard.adapters.saved_messages_channel import SavedMessagesChannel
from milesguard.adapters.sqlite_archive_channel import SQLiteArchiveChannel
from milesguard.adapters.telegram_bot_channel import TelegramBotChannel
from milesguard.adapters.telegram_mapper import group_info_from_dialog
from milesguard.adapters.telegram_transport import TelegramTransport
from milesguard.client import build_client
from milesguard.core.config import StaticConfigProvider
from milesguard.core.errors import ConfigError
from milesguard.core.events import (
    CONNECTION_CREDENTIAL_REQUIRED,
    CONNECTION_FAILED,
    CONNECTION_READY,
    DISPATCH_COMPLETED,
    MESSAGE_RELEVANT,
    RETRY_FAILED,
    RETRY_SUCCESS,
    DomainEvent,
)
from milesguard.core.orchestrator import Orchestrator
from milesguard.core.ports import NotificationChannel
from milesguard.core.scheduler import AsyncioScheduler
from milesguard.login import authorize, login, print_qr
from milesguard.settings import Secrets, Settings, load_secrets, load_settings

NAME = "MILESGUARD"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(settings: Settings) -> None:
    config = settings.logging or {}
    if not config.get("enabled", True):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/milesguard.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.project_root, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # Telethon logs every reconnect step at INFO; the state machine already reports them.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))


def build_channels(settings: Settings, secrets: Secrets, client) -> list[NotificationChannel]:
    """Instantiate the enabled notification channels."""

    enabled = settings.monitor.enabled_channels
    channels: list[NotificationChannel] = []
    if "telegram_bot" in enabled:
        channels.append(
            TelegramBotChannel(
                bot_token=secrets.bot_token,
                chat_id=settings.channels.bot_chat_id,
                snippet_chars=settings.notifications.snippet_chars,
                rate_limit_per_minute=settings.channels.bot_rate_limit_per_minute,
            )
        )
    if "saved_messages" in enabled:
        channels.append(SavedMessagesChannel(client, snippet_chars=settings.notifications.snippet_chars))
    if "archive" in enabled:
        path = settings.channels.archive_path
        if not os.path.isabs(path):
            path = os.path.join(settings.project_root, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        archive = SQLiteArchiveChannel(path)
        archive.init_db()
        channels.append(archive)
    return channels


class LifecycleReporter:
    """Domain event sink: logs events and asks the watcher to stop on terminal failure."""

    def __init__(self, stop_requested: asyncio.Event) -> None:
        self._stop_requested = stop_requested
        self.connection_failed = False

    def __call__(self, event: DomainEvent) -> None:
        payload = event.payload
        if event.name == CONNECTION_CREDENTIAL_REQUIRED:
            print("Scan this QR code in Telegram (Settings > Devices > Link Desktop Device):")
            print_qr(payload["credential"])
        elif event.name == CONNECTION_READY:
            LOGGER.info("Client connected. Listening for incoming messages...")
        elif event.name == CONNECTION_FAILED:
            LOGGER.error(
                "Connection failed permanently (%s) after %s/%s attempts: %s",
                payload.get("reason"),
                payload.get("attempts"),
                payload.get("max_attempts"),
                payload.get("error"),
            )
            self.connection_failed = True
            self._stop_requested.set()
        elif event.name == MESSAGE_RELEVANT:
            LOGGER.info(
                "Offer in %s from %s: %s",
                payload["conversation"],
                payload["sender"],
                ", ".join(payload["matched_keywords"]),
            )
        elif event.name == RETRY_FAILED:
            LOGGER.warning(
                "Notification for %s via %s dropped (%s)",
                payload["message_id"],
                payload["channel"],
                payload["reason"],
            )
        elif event.name in {DISPATCH_COMPLETED, RETRY_SUCCESS}:
            LOGGER.debug("%s %s", event.name, payload)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_requested: asyncio.Event, reload) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_requested.set))
    if hasattr(signal, "SIGHUP"):
        try:
            loop.add_signal_handler(signal.SIGHUP, reload)
        except (NotImplementedError, RuntimeError):
            pass


async def _watch(settings: Settings, secrets: Secrets) -> int:
    loop = asyncio.get_running_loop()
    scheduler = AsyncioScheduler()
    queue: asyncio.Queue = asyncio.Queue()
    stop_requested = asyncio.Event()
    reporter = LifecycleReporter(stop_requested)

    client = build_client(secrets)
    config_provider = StaticConfigProvider(settings.monitor)
    transport = TelegramTransport(client, queue.put_nowait, password=secrets.password)
    channels = build_channels(settings, secrets, client)
    LOGGER.info("Enabled notification channels: %s", ", ".join(channel.name for channel in channels) or "none")

    orchestrator = Orchestrator(
        transport,
        queue,
        config_provider,
        channels,
        scheduler,
        connection_config=settings.connection,
        dedup_config=settings.dedup,
        dispatch_config=settings.dispatch,
        emit=reporter,
    )

    def reload() -> None:
        try:
            config_provider.reload(load_settings(settings.path).monitor)
        except ConfigError as exc:
            LOGGER.error("Config reload failed, keeping the previous config: %s", exc)

    _install_signal_handlers(loop, stop_requested, reload)

    runner = asyncio.create_task(orchestrator.run(), name="orchestrator")
    stopper = asyncio.create_task(stop_requested.wait(), name="stop-requested")
    await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)

    LOGGER.info("Shutting down")
    try:
        await orchestrator.stop()
        await runner
    finally:
        stopper.cancel()
        await scheduler.close()
        LOGGER.info("Final status: %s", orchestrator.status())

    return 1 if reporter.connection_failed else 0


def _run(config_path: Optional[str]) -> int:
    _print_banner()
    settings = load_settings(config_path)
    _configure_logging(settings)
    LOGGER.info("Starting milesguard")
    LOGGER.info(
        "Monitoring %s target groups for %s keywords",
        len(settings.monitor.target_conversations),
        len(settings.monitor.keywords),
    )
    return asyncio.run(_watch(settings, load_secrets()))


def _login() -> int:
    _print_banner()
    secrets = load_secrets()
    client = build_client(secrets, auto_reconnect=True)
    asyncio.run(login(client, secrets))
    return 0


async def _list_groups(client, config_provider: Optional[StaticConfigProvider]) -> None:
    groups = []
    async for dialog in client.iter_dialogs():
        if dialog.is_group:
            groups.append(group_info_from_dialog(dialog))

    if not groups:
        print("No group chats found for this account.")
        return

    for index, group in enumerate(sorted(groups, key=lambda item: item.name.lower()), start=1):
        target = config_provider is not None and config_provider.is_target_conversation(group.name)
        marker = "*" if target else " "
        print(f"{index}. {marker} {group.name} | {group.participants_count or '?'} members | {group.id}")
    if config_provider is not None:
        print("\n* matches a configured target group")


def _discover(config_path: Optional[str]) -> int:
    _print_banner()
    secrets = load_secrets()
    try:
        config_provider: Optional[StaticConfigProvider] = StaticConfigProvider(load_settings(config_path).monitor)
    except ConfigError as exc:
        print(f"Config not loaded ({exc}); targets will not be marked.")
        config_provider = None
    client = build_client(secrets, auto_reconnect=True)

    async def _run_discover() -> None:
        await client.connect()
        try:
            if not await client.is_user_authorized():
                print("Authorization required. Starting login...")
                await authorize(client, secrets)
            await _list_groups(client, config_provider)
        finally:
            await client.disconnect()

    asyncio.run(_run_discover())
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="milesguard")
    parser.add_argument("--config", help="Path to config.json (default: ./config.json or $MILESGUARD_CONFIG)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the watcher")
    subparsers.add_parser("login", help="Authorize the Telegram account interactively")
    subparsers.add_parser("discover", help="List group chats and mark the configured targets")

    args = parser.parse_args(argv)
    try:
        if args.command == "login":
            code = _login()
        elif args.command == "discover":
            code = _discover(args.config)
        else:
            code = _run(args.config)
    except ConfigError as exc:
        parser.exit(2, f"milesguard: configuration error: {exc}\n")
    raise SystemExit(code)


if __name__ == "__main__":
    main()
