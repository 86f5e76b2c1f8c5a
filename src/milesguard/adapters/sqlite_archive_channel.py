"""SQLite archive channel.

Appends every relevant message to a local SQLite database so offers can be
analyzed later. Implements the NotificationChannel contract like any other
delivery target.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from milesguard.core.models import RelevantMessage, SendResult


class SQLiteArchiveChannel:
    """Thin SQLite wrapper that satisfies the NotificationChannel contract."""

    name = "archive"

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - relevant_messages: append-only log of delivered offers
        """

        with self._connect() as conn:
            # Fields:
            # - message_id: transport message id, "<chat_id>:<message id>" (UNIQUE)
            # - conversation_id / conversation_name: source group
            # - sender_name: display name of the author
            # - received_at: original message timestamp (ISO 8601, UTC)
            # - matched_keywords: JSON list in configured order
            # - text: full message text
            # - archived_at: when the row was written
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS relevant_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT,
                    conversation_name TEXT,
                    sender_name TEXT,
                    received_at TIMESTAMP,
                    matched_keywords TEXT,
                    text TEXT,
                    archived_at TIMESTAMP NOT NULL
                )
                """
            )

    def save_message(self, message: RelevantMessage) -> None:
        """Persist a relevant message; re-archiving the same id is a no-op."""

        archived_at = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO relevant_messages (
                    message_id,
                    conversation_id,
                    conversation_name,
                    sender_name,
                    received_at,
                    matched_keywords,
                    text,
                    archived_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.conversation_name,
                    message.sender_name,
                    message.received_at.astimezone(timezone.utc).isoformat(),
                    json.dumps(list(message.matched_keywords), ensure_ascii=False),
                    message.text,
                    archived_at.isoformat(),
                ),
            )

    def count_messages(self, conversation_name: Optional[str] = None) -> int:
        """Return how many messages are archived, optionally for one group."""

        with self._connect() as conn:
            if conversation_name is None:
                row = conn.execute("SELECT COUNT(*) AS total FROM relevant_messages").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM relevant_messages WHERE conversation_name = ?",
                    (conversation_name,),
                ).fetchone()
        return int(row["total"])

    def list_messages(self, limit: int = 50) -> list[dict]:
        """Return the newest archived messages first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM relevant_messages ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "message_id": row["message_id"],
                "conversation_name": row["conversation_name"],
                "sender_name": row["sender_name"],
                "received_at": row["received_at"],
                "matched_keywords": json.loads(row["matched_keywords"] or "[]"),
                "text": row["text"],
            }
            for row in rows
        ]

    async def send_notification(self, message: RelevantMessage) -> SendResult:
        try:
            await asyncio.to_thread(self.save_message, message)
        except sqlite3.Error as exc:
            return SendResult.failed(error=f"archive write failed: {exc}")
        return SendResult.ok()
