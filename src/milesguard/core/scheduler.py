"""Scheduling abstraction for timers and background tasks.

Components never call ``asyncio.sleep`` or ``loop.call_later`` directly; they
receive a scheduler so reconnection backoff and periodic sweeps can be driven
by virtual time in tests.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

LOGGER = logging.getLogger(__name__)

TimerCallback = Callable[[], Any]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...

    @property
    def cancelled(self) -> bool:
        ...


class Scheduler(Protocol):
    """Clock plus cancelable one-shot and periodic timers."""

    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        ...

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        ...

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> "asyncio.Future[Any]":
        ...


class _OneShotHandle:
    def __init__(self) -> None:
        self._timer: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
        # A callback that already started keeps running: no mid-flight cancellation.

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class _PeriodicHandle:
    def __init__(self, task: "asyncio.Task[None]") -> None:
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: Set[asyncio.Future] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: TimerCallback) -> _OneShotHandle:
        handle = _OneShotHandle()

        def fire() -> None:
            if handle.cancelled:
                return
            try:
                result = _invoke(callback)
            except Exception:
                LOGGER.exception("Timer callback %r failed", callback)
                return
            if result is not None:
                self.spawn(result)

        handle._timer = self.loop.call_later(max(delay, 0.0), fire)
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> _PeriodicHandle:
        async def loop_forever() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    result = _invoke(callback)
                    if result is not None:
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOGGER.exception("Periodic task %r failed", callback)

        task = self.loop.create_task(loop_forever())
        self._track(task)
        return _PeriodicHandle(task)

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> "asyncio.Future[Any]":
        if inspect.iscoroutine(coro):
            task = self.loop.create_task(coro, name=name)
        else:
            task = asyncio.ensure_future(coro)
        self._track(task)
        return task

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Background task failed", exc_info=exc)

    async def close(self) -> None:
        """Cancel every background task still owned by the scheduler."""

        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _invoke(callback: TimerCallback) -> Optional[Awaitable[Any]]:
    result = callback()
    if inspect.isawaitable(result):
        return result
    return None
