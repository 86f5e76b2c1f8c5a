from __future__ import annotations

import asyncio

import pytest
from telethon import errors

from milesguard.adapters.telegram_transport import TelegramTransport, close_reason_from_error
from milesguard.core.connection import classify_close
from milesguard.core.errors import SessionConflictError, TransportTerminalError, TransportTransientError
from milesguard.core.events import STATE_CLOSE, STATE_CONNECTING, STATE_OPEN, ConnectionUpdate, MessageBatch


class FakeClient:
    def __init__(self, authorized: bool = True, error: "Exception | None" = None) -> None:
        self._authorized = authorized
        self._error = error
        self.handlers: list = []
        self.connected = False
        self.disconnect_calls = 0
        self.disconnected = asyncio.get_running_loop().create_future()

    def add_event_handler(self, callback, event) -> None:
        self.handlers.append((callback, event))

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnect_calls += 1

    async def is_user_authorized(self) -> bool:
        if self._error is not None:
            raise self._error
        return self._authorized


class DummyMessage:
    def __init__(self) -> None:
        self.chat_id = -100
        self.id = 5
        self.raw_text = "bonus"
        self.sender = None
        self.post_author = "Channel Admin"
        self.is_group = True
        self.action = None
        self.date = None

    async def get_sender(self):
        return None


class DummyEvent:
    def __init__(self, message) -> None:
        self.message = message


def test_telethon_errors_map_to_close_reasons() -> None:
    duplicated = close_reason_from_error(errors.AuthKeyDuplicatedError(request=None))
    revoked = close_reason_from_error(errors.SessionRevokedError(request=None))
    dropped = close_reason_from_error(ConnectionError("reset by peer"))

    assert isinstance(classify_close(duplicated), SessionConflictError)
    assert revoked.logged_out
    assert isinstance(classify_close(revoked), TransportTerminalError)
    assert isinstance(classify_close(dropped), TransportTransientError)
    assert dropped.message == "reset by peer"


def test_connect_publishes_open_and_watches_disconnect() -> None:
    published: list = []

    async def scenario() -> None:
        client = FakeClient()
        transport = TelegramTransport(client, published.append)
        await transport.connect()
        assert len(client.handlers) == 2
        client.disconnected.set_exception(ConnectionError("reset"))
        for _ in range(5):
            await asyncio.sleep(0)

    asyncio.run(scenario())

    assert [update.state for update in published] == [STATE_CONNECTING, STATE_OPEN, STATE_CLOSE]
    assert published[-1].close_reason.message == "reset"
    assert not published[-1].close_reason.logged_out


def test_close_does_not_report_a_disconnect() -> None:
    published: list = []

    async def scenario() -> None:
        client = FakeClient()
        transport = TelegramTransport(client, published.append)
        await transport.connect()
        await transport.close()
        client.disconnected.set_result(None)
        for _ in range(5):
            await asyncio.sleep(0)
        assert client.disconnect_calls == 1

    asyncio.run(scenario())

    assert published[-1] == ConnectionUpdate(state=STATE_OPEN)


def test_duplicated_auth_key_on_connect_is_a_conflict() -> None:
    async def scenario() -> None:
        client = FakeClient(error=errors.AuthKeyDuplicatedError(request=None))
        transport = TelegramTransport(client, lambda event: None)
        with pytest.raises(SessionConflictError):
            await transport.connect()

    asyncio.run(scenario())


def test_new_messages_are_published_as_batches() -> None:
    published: list = []

    async def scenario() -> None:
        client = FakeClient()
        transport = TelegramTransport(client, published.append)
        await transport._on_new_message(DummyEvent(DummyMessage()))

    asyncio.run(scenario())

    batch = published[0]
    assert isinstance(batch, MessageBatch)
    assert batch.messages[0].id == "-100:5"
    assert batch.messages[0].sender_name == "Channel Admin"
