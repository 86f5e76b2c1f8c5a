"""Telegram client factory for milesguard.

The connection state machine owns reconnection, so Telethon's built-in
auto-reconnect is turned off for the long-running watcher. The ``login`` and
``discover`` commands build the same client with auto-reconnect left on.
"""

from __future__ import annotations

import logging

from telethon import TelegramClient

from milesguard.core.errors import ConfigError
from milesguard.settings import Secrets


def build_client(secrets: Secrets, auto_reconnect: bool = False) -> TelegramClient:
    """Create a Telethon client from the environment secrets.

    The session name defaults to "milesguard" to create a local .session file.
    """

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not secrets.api_id or not secrets.api_hash:
        raise ConfigError("Missing API_ID or API_HASH in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(
        secrets.session_name,
        secrets.api_id,
        secrets.api_hash,
        auto_reconnect=auto_reconnect,
    )
