from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from milesguard.core.models import GroupInfo, RelevantMessage, SendResult


class ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[[], Any], interval: Optional[float]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Virtual-time scheduler: nothing fires until ``advance`` is awaited."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._seq = 0
        self._timers: list[ManualTimer] = []
        self.spawned: list[asyncio.Future] = []

    def now(self) -> float:
        return self._now

    def _add(self, delay: float, callback: Callable[[], Any], interval: Optional[float]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(self._now + delay, self._seq, callback, interval)
        self._timers.append(timer)
        return timer

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ManualTimer:
        return self._add(delay, callback, None)

    def call_every(self, interval: float, callback: Callable[[], Any]) -> ManualTimer:
        return self._add(interval, callback, interval)

    def spawn(self, coro, name: Optional[str] = None) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self.spawned.append(task)
        return task

    def pending(self) -> list[ManualTimer]:
        return [timer for timer in self._timers if not timer.cancelled]

    async def drain(self) -> None:
        for _ in range(20):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [timer for timer in self._timers if not timer.cancelled and timer.when <= target]
            if not due:
                break
            timer = min(due, key=lambda item: (item.when, item.seq))
            self._timers.remove(timer)
            self._now = timer.when
            if timer.interval is not None:
                self._seq += 1
                timer.when += timer.interval
                timer.seq = self._seq
                self._timers.append(timer)
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
            await self.drain()
        self._now = target
        await self.drain()


class FakeTransport:
    def __init__(self, groups: Optional[list[GroupInfo]] = None) -> None:
        self.groups = list(groups or [])
        self.connect_calls = 0
        self.connect_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.fetch_calls = 0
        self.cleared = 0
        self.closed = 0
        self.logged_out = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def fetch_all_groups(self) -> list[GroupInfo]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.groups)

    async def logout(self) -> None:
        self.logged_out += 1

    async def close(self) -> None:
        self.closed += 1

    async def clear_session(self) -> None:
        self.cleared += 1


class FakeChannel:
    """Returns queued results (or raises queued exceptions), then succeeds."""

    def __init__(self, name: str, results: Optional[list] = None) -> None:
        self.name = name
        self._results = list(results or [])
        self.sent: list[RelevantMessage] = []

    async def send_notification(self, message: RelevantMessage) -> SendResult:
        self.sent.append(message)
        result = self._results.pop(0) if self._results else SendResult.ok()
        if isinstance(result, Exception):
            raise result
        return result


class FailingChannel(FakeChannel):
    def __init__(self, name: str, error: str = "boom") -> None:
        super().__init__(name)
        self._error = error

    async def send_notification(self, message: RelevantMessage) -> SendResult:
        self.sent.append(message)
        return SendResult.failed(error=self._error)


def make_relevant(
    message_id: str = "-100:1",
    text: str = "100% bonus on points transfer",
    conversation_name: str = "Southern Flights",
    sender_name: str = "Ana",
    keywords: tuple[str, ...] = ("100%", "bonus"),
) -> RelevantMessage:
    return RelevantMessage(
        id=message_id,
        conversation_id="-100",
        conversation_name=conversation_name,
        sender_name=sender_name,
        text=text,
        received_at=datetime(2024, 5, 1, 12, 30, 15, tzinfo=timezone.utc),
        matched_keywords=keywords,
    )
