"""Multi-channel dispatch with a bounded retry queue.

Every relevant message is offered to all enabled channels concurrently. A
retryable failure creates one ``RetryItem`` per (message id, channel name);
a periodic scan retries due items with exponential backoff until they
succeed, exhaust ``max_attempts`` or go stale. Each item ends with exactly
one ``retry:success`` or ``retry:failed`` event, so nothing is dropped
silently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from milesguard.core.backoff import exponential_delay
from milesguard.core.config import DispatchConfig
from milesguard.core.errors import ChannelConfigError
from milesguard.core.events import (
    DISPATCH_COMPLETED,
    RETRY_FAILED,
    RETRY_SUCCESS,
    DomainEvent,
    EventSink,
    null_sink,
)
from milesguard.core.models import (
    CONFIG_ERROR,
    DispatchReport,
    RelevantMessage,
    RetryItem,
    SendResult,
)
from milesguard.core.ports import NotificationChannel
from milesguard.core.scheduler import Scheduler, TimerHandle

LOGGER = logging.getLogger(__name__)

RetryKey = Tuple[str, str]


@dataclass
class ChannelCounters:
    success: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> Optional[float]:
        total = self.success + self.failed
        if not total:
            return None
        return round(self.success / total * 100, 2)


async def send_safely(channel: NotificationChannel, message: RelevantMessage) -> SendResult:
    """Call a channel and turn any exception into a structured failure."""

    try:
        result = await channel.send_notification(message)
    except ChannelConfigError as exc:
        return SendResult.failed(error=str(exc), reason=CONFIG_ERROR)
    except Exception as exc:
        LOGGER.warning("Channel %s raised while sending %s", channel.name, message.id, exc_info=True)
        return SendResult.failed(error=str(exc) or type(exc).__name__)
    if not isinstance(result, SendResult):
        return SendResult.failed(error=f"invalid result from channel {channel.name}: {result!r}")
    return result


class DispatchRetryManager:
    """Delivers relevant messages to every enabled channel, retrying failures."""

    def __init__(
        self,
        channels: Iterable[NotificationChannel],
        config: DispatchConfig,
        scheduler: Scheduler,
        enabled_channels: Optional[Sequence[str]] = None,
        emit: EventSink = null_sink,
    ) -> None:
        self._channels: Dict[str, NotificationChannel] = {channel.name: channel for channel in channels}
        self._config = config
        self._scheduler = scheduler
        self._enabled = list(enabled_channels) if enabled_channels is not None else list(self._channels)
        self._emit = emit
        self._retry_queue: Dict[RetryKey, RetryItem] = {}
        self._scan_handle: Optional[TimerHandle] = None
        self._scan_task: Optional[asyncio.Future] = None
        self._stopping = False
        self._in_flight: Set[RetryKey] = set()
        self._counters: Dict[str, ChannelCounters] = {}
        self.total_dispatched = 0
        self.retries_processed = 0

        unknown = [name for name in self._enabled if name not in self._channels]
        if unknown:
            LOGGER.warning("Enabled channels without an implementation: %s", ", ".join(unknown))

    @property
    def retry_queue(self) -> Mapping[RetryKey, RetryItem]:
        return self._retry_queue

    def enabled_channels(self) -> List[NotificationChannel]:
        return [self._channels[name] for name in self._enabled if name in self._channels]

    def set_enabled_channels(self, names: Sequence[str]) -> None:
        self._enabled = list(names)

    async def dispatch(self, message: RelevantMessage) -> DispatchReport:
        """Send one message to every enabled channel concurrently."""

        self.total_dispatched += 1
        report = DispatchReport(message_id=message.id)
        channels = self.enabled_channels()

        if not channels:
            preview = message.text[:100] + ("..." if len(message.text) > 100 else "")
            LOGGER.warning("No notification channels enabled, message %s will only be logged", message.id)
            LOGGER.info("Relevant message from %s (%s): %s", message.conversation_name, message.sender_name, preview)
            self._emit(DomainEvent(DISPATCH_COMPLETED, {"message_id": message.id, "results": {}, "errors": []}))
            return report

        results = await asyncio.gather(*(send_safely(channel, message) for channel in channels))

        for channel, result in zip(channels, results):
            report.results[channel.name] = result
            counters = self._counters.setdefault(channel.name, ChannelCounters())
            if result.success:
                counters.success += 1
                LOGGER.info("Notification sent via %s for %s", channel.name, message.id)
                continue

            counters.failed += 1
            report.errors.append(f"{channel.name}: {result.describe()}")
            if result.retryable:
                self._enqueue_retry(message, channel.name, result)
            else:
                LOGGER.warning(
                    "Channel %s rejected %s without retry (%s)",
                    channel.name,
                    message.id,
                    result.describe(),
                )

        self._log_report(report)
        self._emit(
            DomainEvent(
                DISPATCH_COMPLETED,
                {
                    "message_id": message.id,
                    "results": {name: result.success for name, result in report.results.items()},
                    "errors": list(report.errors),
                },
            )
        )
        return report

    def _enqueue_retry(self, message: RelevantMessage, channel_name: str, result: SendResult) -> None:
        key = (message.id, channel_name)
        now = self._scheduler.now()
        existing = self._retry_queue.get(key)
        if existing is not None:
            if existing.attempts >= existing.max_attempts:
                return
            existing.attempts += 1
            existing.last_attempt_at = now
            existing.next_retry_at = now + exponential_delay(self._config.retry_base_seconds, existing.attempts - 1)
            existing.last_result = result
            item = existing
        else:
            item = RetryItem(
                message=message,
                channel_name=channel_name,
                attempts=1,
                max_attempts=self._config.max_attempts,
                last_attempt_at=now,
                next_retry_at=now + self._config.retry_base_seconds,
                last_result=result,
            )
            self._retry_queue[key] = item

        LOGGER.info(
            "Added to retry queue: %s via %s (attempt %s/%s)",
            message.id,
            channel_name,
            item.attempts,
            item.max_attempts,
        )
        if item.attempts >= item.max_attempts:
            self._finish_failed(item, "max_attempts")

    def start(self) -> None:
        if self._scan_handle is not None:
            return
        self._stopping = False
        self._scan_handle = self._scheduler.call_every(self._config.scan_interval_seconds, self.process_due)

    async def process_due(self) -> None:
        """Retry every due item once and purge stale ones."""

        if self._stopping:
            return
        if self._scan_task is not None and not self._scan_task.done():
            LOGGER.debug("Previous retry scan still running, skipping this tick")
            return
        self._scan_task = self._scheduler.spawn(self._scan(), name="retry-scan")
        # Cancelling the periodic timer must not cancel sends already in progress.
        await asyncio.shield(self._scan_task)

    async def _scan(self) -> None:
        now = self._scheduler.now()
        due = [
            item
            for item in list(self._retry_queue.values())
            if item.next_retry_at <= now and item.attempts < item.max_attempts
        ]
        if due:
            await asyncio.gather(*(self._retry(item) for item in due))
        self._purge_stale()

    async def _retry(self, item: RetryItem) -> None:
        channel = self._channels.get(item.channel_name)
        if channel is None:
            self._finish_failed(item, "channel_missing")
            return
        if item.key in self._in_flight:
            return

        self.retries_processed += 1
        LOGGER.info(
            "Processing retry for %s via %s (attempt %s/%s)",
            item.message_id,
            item.channel_name,
            item.attempts + 1,
            item.max_attempts,
        )
        self._in_flight.add(item.key)
        try:
            result = await send_safely(channel, item.message)
        finally:
            self._in_flight.discard(item.key)
        if self._retry_queue.get(item.key) is not item:
            # Removed meanwhile (queue cleared or shutdown drain).
            return

        counters = self._counters.setdefault(item.channel_name, ChannelCounters())
        now = self._scheduler.now()
        item.attempts += 1
        item.last_attempt_at = now
        item.last_result = result

        if result.success:
            counters.success += 1
            self._retry_queue.pop(item.key, None)
            LOGGER.info("Retry successful for %s via %s", item.message_id, item.channel_name)
            self._emit(
                DomainEvent(
                    RETRY_SUCCESS,
                    {"message_id": item.message_id, "channel": item.channel_name, "attempts": item.attempts},
                )
            )
            return

        counters.failed += 1
        if not result.retryable:
            self._finish_failed(item, result.reason or "non_retryable")
            return
        if item.attempts >= item.max_attempts:
            self._finish_failed(item, "max_attempts")
            return
        item.next_retry_at = now + exponential_delay(self._config.retry_base_seconds, item.attempts - 1)

    def _finish_failed(self, item: RetryItem, reason: str) -> None:
        if self._retry_queue.pop(item.key, None) is None:
            return
        LOGGER.warning(
            "Giving up on %s via %s after %s attempts (%s)",
            item.message_id,
            item.channel_name,
            item.attempts,
            reason,
        )
        self._emit(
            DomainEvent(
                RETRY_FAILED,
                {
                    "message_id": item.message_id,
                    "channel": item.channel_name,
                    "attempts": item.attempts,
                    "max_attempts": item.max_attempts,
                    "reason": reason,
                    "error": item.last_result.describe() if item.last_result else None,
                },
            )
        )

    def _purge_stale(self) -> None:
        now = self._scheduler.now()
        for item in list(self._retry_queue.values()):
            if now - item.last_attempt_at > self._config.stale_after_seconds:
                self._finish_failed(item, "stale")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the retry loop and give every pending item one last try.

        A scan that is already running finishes first, so no send is cancelled
        or repeated. The whole shutdown is bounded by ``timeout``
        (``shutdown_timeout_seconds`` when omitted); whatever is still pending
        afterwards is logged and dropped.
        """

        self._stopping = True
        if self._scan_handle is not None:
            self._scan_handle.cancel()
            self._scan_handle = None

        if timeout is None:
            timeout = self._config.shutdown_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        if self._scan_task is not None and not self._scan_task.done():
            LOGGER.info("Waiting for the running retry scan before shutdown")
            _, still_running = await asyncio.wait({self._scan_task}, timeout=timeout)
            if still_running:
                LOGGER.warning("Retry scan still running at shutdown")

        pending = [item for item in self._retry_queue.values() if item.key not in self._in_flight]
        remaining = deadline - loop.time()
        if pending and remaining > 0:
            LOGGER.info("Flushing %s pending retries before shutdown", len(pending))
            tasks = [self._scheduler.spawn(self._retry(item)) for item in pending]
            _, still_running = await asyncio.wait(tasks, timeout=remaining)
            if still_running:
                LOGGER.warning("%s retries still in flight at shutdown", len(still_running))

        leftover = list(self._retry_queue.values())
        for item in leftover:
            self._finish_failed(item, "shutdown")

    def clear_retry_queue(self) -> int:
        cleared = len(self._retry_queue)
        self._retry_queue.clear()
        LOGGER.info("Retry queue cleared (%s items)", cleared)
        return cleared

    def retry_queue_status(self) -> dict:
        items = list(self._retry_queue.values())
        by_channel: Dict[str, int] = {}
        for item in items:
            by_channel[item.channel_name] = by_channel.get(item.channel_name, 0) + 1
        return {
            "total_items": len(items),
            "by_channel": by_channel,
            "oldest_attempt_at": min((item.last_attempt_at for item in items), default=None),
            "average_attempts": round(sum(item.attempts for item in items) / len(items), 1) if items else 0,
        }

    def reset_stats(self) -> None:
        self._counters.clear()
        self.total_dispatched = 0
        self.retries_processed = 0
        LOGGER.info("Dispatcher statistics reset")

    def stats(self) -> dict:
        return {
            "total_dispatched": self.total_dispatched,
            "retries_processed": self.retries_processed,
            "retry_queue_size": len(self._retry_queue),
            "channels": {
                name: {
                    "success": counters.success,
                    "failed": counters.failed,
                    "success_rate": counters.success_rate,
                }
                for name, counters in self._counters.items()
            },
        }

    def _log_report(self, report: DispatchReport) -> None:
        status = ", ".join(
            f"{name}: {'ok' if result.success else 'failed'}" for name, result in report.results.items()
        )
        if report.errors:
            LOGGER.warning("Dispatch completed for %s (%s) errors=%s", report.message_id, status, report.errors)
        else:
            LOGGER.info("Dispatch completed for %s (%s)", report.message_id, status)
