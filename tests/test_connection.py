from __future__ import annotations

import asyncio

from fakes import FakeTransport, ManualScheduler

from milesguard.core.config import ConnectionConfig
from milesguard.core.connection import ConnectionStateMachine, classify_close
from milesguard.core.errors import (
    SessionConflictError,
    TransportTerminalError,
    TransportTransientError,
)
from milesguard.core.events import (
    CONNECTION_CREDENTIAL_REQUIRED,
    CONNECTION_FAILED,
    CONNECTION_READY,
    STATE_CLOSE,
    STATE_OPEN,
    CloseReason,
    ConnectionUpdate,
    EventRecorder,
    GroupsLoaded,
)
from milesguard.core.models import ConnectionState, GroupInfo

OPEN = ConnectionUpdate(state=STATE_OPEN)


def _close(message: str = "stream reset", logged_out: bool = False, status: "int | None" = 500) -> ConnectionUpdate:
    return ConnectionUpdate(state=STATE_CLOSE, close_reason=CloseReason(status, message, logged_out))


def _machine(transport: FakeTransport, scheduler: ManualScheduler, recorder: EventRecorder, published: list):
    return ConnectionStateMachine(transport, scheduler, ConnectionConfig(), publish=published.append, emit=recorder)


def test_classify_close_precedence() -> None:
    assert isinstance(classify_close(None), TransportTransientError)
    assert isinstance(classify_close(CloseReason(401, "Conflict: replaced", logged_out=True)), TransportTerminalError)
    assert isinstance(classify_close(CloseReason(440, "Stream Errored (conflict)")), SessionConflictError)
    assert isinstance(classify_close(CloseReason(503, "timed out")), TransportTransientError)


def test_open_resets_attempts_and_fetches_roster() -> None:
    transport = FakeTransport(groups=[GroupInfo("-100", "Southern Flights", 42)])
    scheduler = ManualScheduler()
    recorder = EventRecorder()
    published: list = []
    machine = _machine(transport, scheduler, recorder, published)

    async def scenario() -> None:
        await machine.connect()
        assert machine.state is ConnectionState.CONNECTING
        await machine.handle_update(_close())
        assert machine.reconnect_attempts == 1
        await scheduler.advance(5)
        await machine.handle_update(OPEN)

        assert machine.state is ConnectionState.CONNECTED
        assert machine.reconnect_attempts == 0
        assert len(recorder.named(CONNECTION_READY)) == 1
        assert published == []

        await scheduler.advance(2)
        assert transport.fetch_calls == 1
        assert published == [GroupsLoaded((GroupInfo("-100", "Southern Flights", 42),))]

    asyncio.run(scenario())


def test_transient_closes_back_off_until_failed_permanently() -> None:
    transport = FakeTransport()
    scheduler = ManualScheduler()
    recorder = EventRecorder()
    machine = _machine(transport, scheduler, recorder, [])

    async def scenario() -> None:
        await machine.connect()
        for attempt, delay in enumerate([5, 10, 20, 30, 30], start=1):
            await machine.handle_update(_close())
            assert machine.state is ConnectionState.DISCONNECTED
            assert machine.reconnect_attempts == attempt
            await scheduler.advance(delay - 0.5)
            assert transport.connect_calls == attempt
            await scheduler.advance(0.5)
            assert transport.connect_calls == attempt + 1

        await machine.handle_update(_close())

    asyncio.run(scenario())

    assert machine.state is ConnectionState.FAILED_PERMANENTLY
    assert machine.reconnect_attempts == 5
    failed = recorder.named(CONNECTION_FAILED)
    assert len(failed) == 1
    assert failed[0].payload["reason"] == "max_attempts"
    assert scheduler.pending() == []


def test_logout_is_terminal() -> None:
    transport = FakeTransport()
    scheduler = ManualScheduler()
    recorder = EventRecorder()
    machine = _machine(transport, scheduler, recorder, [])

    async def scenario() -> None:
        await machine.connect()
        await machine.handle_update(OPEN)
        await machine.handle_update(_close("logged out", logged_out=True, status=401))
        assert machine.state is ConnectionState.FAILED_PERMANENTLY

        # Terminal: later signals and connect calls change nothing.
        await machine.handle_update(OPEN)
        await machine.connect()
        await scheduler.advance(120)

    asyncio.run(scenario())

    assert machine.state is ConnectionState.FAILED_PERMANENTLY
    assert transport.connect_calls == 1
    assert recorder.named(CONNECTION_FAILED)[0].payload["reason"] == "logged_out"
    assert len(recorder.named(CONNECTION_READY)) == 1


def test_conflict_clears_session_and_reconnects_after_fixed_delay() -> None:
    transport = FakeTransport()
    scheduler = ManualScheduler()
    machine = _machine(transport, scheduler, EventRecorder(), [])

    async def scenario() -> None:
        await machine.connect()
        await machine.handle_update(_close())
        await scheduler.advance(5)
        assert machine.reconnect_attempts == 1

        await machine.handle_update(_close("conflict: session replaced", status=440))
        assert transport.cleared == 1
        assert machine.reconnect_attempts == 0
        await scheduler.advance(1.9)
        assert transport.connect_calls == 2
        await scheduler.advance(0.1)
        assert transport.connect_calls == 3

    asyncio.run(scenario())


def test_connect_exception_is_handled_as_transient() -> None:
    transport = FakeTransport()
    transport.connect_error = OSError("network unreachable")
    scheduler = ManualScheduler()
    machine = _machine(transport, scheduler, EventRecorder(), [])

    async def scenario() -> None:
        await machine.connect()
        assert machine.state is ConnectionState.DISCONNECTED
        assert machine.reconnect_attempts == 1
        assert isinstance(machine.last_error, TransportTransientError)
        assert len(scheduler.pending()) == 1

    asyncio.run(scenario())


def test_credential_challenge_waits_for_confirmation() -> None:
    transport = FakeTransport()
    scheduler = ManualScheduler()
    recorder = EventRecorder()
    machine = _machine(transport, scheduler, recorder, [])

    async def scenario() -> None:
        await machine.connect()
        await machine.handle_update(ConnectionUpdate(credential="tg://login?token=abc"))
        assert machine.state is ConnectionState.AWAITING_CREDENTIAL
        await machine.handle_update(OPEN)
        assert machine.is_ready

    asyncio.run(scenario())

    events = recorder.named(CONNECTION_CREDENTIAL_REQUIRED)
    assert [event.payload["credential"] for event in events] == ["tg://login?token=abc"]


def test_failed_roster_fetch_keeps_connection() -> None:
    transport = FakeTransport()
    transport.fetch_error = RuntimeError("flood wait")
    scheduler = ManualScheduler()
    published: list = []
    machine = _machine(transport, scheduler, EventRecorder(), published)

    async def scenario() -> None:
        await machine.connect()
        await machine.handle_update(OPEN)
        await scheduler.advance(2)

    asyncio.run(scenario())

    assert machine.state is ConnectionState.CONNECTED
    assert published == []


def test_shutdown_cancels_pending_reconnect() -> None:
    transport = FakeTransport()
    scheduler = ManualScheduler()
    machine = _machine(transport, scheduler, EventRecorder(), [])

    async def scenario() -> None:
        await machine.connect()
        await machine.handle_update(_close())
        await machine.shutdown()
        await scheduler.advance(60)

    asyncio.run(scenario())

    assert transport.connect_calls == 1
    assert transport.closed == 1
    assert machine.state is ConnectionState.DISCONNECTED


def test_shutdown_with_logout_when_connected() -> None:
    transport = FakeTransport()
    machine = _machine(transport, ManualScheduler(), EventRecorder(), [])

    async def scenario() -> None:
        await machine.connect()
        await machine.handle_update(OPEN)
        await machine.shutdown(logout=True)

    asyncio.run(scenario())

    assert transport.logged_out == 1
    assert transport.closed == 0
