from __future__ import annotations

import asyncio

from fakes import make_relevant

from milesguard.adapters.saved_messages_channel import SavedMessagesChannel
from milesguard.adapters.sqlite_archive_channel import SQLiteArchiveChannel


class FakeClient:
    def __init__(self, connected: bool = True, error: "Exception | None" = None) -> None:
        self._connected = connected
        self._error = error
        self.sent: list[tuple[str, str, str]] = []

    def is_connected(self) -> bool:
        return self._connected

    async def send_message(self, entity: str, text: str, parse_mode: str) -> None:
        if self._error is not None:
            raise self._error
        self.sent.append((entity, text, parse_mode))


def test_saved_messages_sends_markdown_to_self() -> None:
    client = FakeClient()
    result = asyncio.run(SavedMessagesChannel(client).send_notification(make_relevant()))

    assert result.success
    entity, text, parse_mode = client.sent[0]
    assert entity == "me"
    assert parse_mode == "Markdown"
    assert "Southern Flights" in text


def test_saved_messages_failures_are_retryable() -> None:
    offline = asyncio.run(SavedMessagesChannel(FakeClient(connected=False)).send_notification(make_relevant()))
    flood = asyncio.run(
        SavedMessagesChannel(FakeClient(error=RuntimeError("flood wait"))).send_notification(make_relevant())
    )

    assert offline.retryable
    assert flood.retryable
    assert flood.error == "flood wait"


def test_archive_stores_each_message_once(tmp_path) -> None:
    archive = SQLiteArchiveChannel(str(tmp_path / "archive.db"))
    archive.init_db()

    async def scenario() -> None:
        await archive.send_notification(make_relevant(message_id="-100:1"))
        await archive.send_notification(make_relevant(message_id="-100:1"))
        await archive.send_notification(make_relevant(message_id="-100:2", conversation_name="Miles Club"))

    asyncio.run(scenario())

    assert archive.count_messages() == 2
    assert archive.count_messages("Miles Club") == 1
    newest = archive.list_messages(limit=1)[0]
    assert newest["message_id"] == "-100:2"
    assert newest["matched_keywords"] == ["100%", "bonus"]


def test_archive_write_failure_is_retryable(tmp_path) -> None:
    archive = SQLiteArchiveChannel(str(tmp_path / "missing" / "archive.db"))

    result = asyncio.run(archive.send_notification(make_relevant()))

    assert not result.success
    assert result.retryable
