"""Orchestrator wiring connection, dedup, filtering and dispatch together.

The transport adapter pushes typed events onto a queue; ``run`` pulls them
one at a time and handles each to completion before taking the next, so the
inbound path never overlaps. Dispatch runs in separate tasks so a slow
channel never delays intake of the following events.
"""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Set

from milesguard.core.config import ConnectionConfig, DedupConfig, DispatchConfig
from milesguard.core.connection import ConnectionStateMachine
from milesguard.core.dedup import DedupCache
from milesguard.core.dispatcher import DispatchRetryManager
from milesguard.core.events import (
    MESSAGE_RELEVANT,
    ConnectionUpdate,
    DomainEvent,
    EventSink,
    GroupDeltas,
    GroupsLoaded,
    GroupUpserts,
    MessageBatch,
    TransportEvent,
    null_sink,
)
from milesguard.core.filter_engine import FilterEngine
from milesguard.core.models import GroupInfo, RelevantMessage
from milesguard.core.ports import ConfigPort, NotificationChannel, TransportPort
from milesguard.core.processor import MessageProcessor
from milesguard.core.scheduler import Scheduler

LOGGER = logging.getLogger(__name__)

_STOP = object()


class Orchestrator:
    """Owns the inbound queue, the group map and every core component."""

    def __init__(
        self,
        transport: TransportPort,
        queue: "asyncio.Queue[TransportEvent]",
        config: ConfigPort,
        channels: Iterable[NotificationChannel],
        scheduler: Scheduler,
        connection_config: Optional[ConnectionConfig] = None,
        dedup_config: Optional[DedupConfig] = None,
        dispatch_config: Optional[DispatchConfig] = None,
        emit: EventSink = null_sink,
    ) -> None:
        self._queue = queue
        self._config = config
        self._scheduler = scheduler
        self._emit = emit
        self._groups: Dict[str, GroupInfo] = {}
        self._inflight: Set[asyncio.Future] = set()
        self._stopping = False

        self.dedup = DedupCache(dedup_config or DedupConfig(), scheduler)
        self.filter_engine = FilterEngine(config)
        self.processor = MessageProcessor(self.dedup, self.filter_engine)
        self.connection = ConnectionStateMachine(
            transport,
            scheduler,
            connection_config or ConnectionConfig(),
            publish=self.publish,
            emit=emit,
        )
        self.dispatcher = DispatchRetryManager(
            channels,
            dispatch_config or DispatchConfig(),
            scheduler,
            enabled_channels=config.get_config().enabled_channels or None,
            emit=emit,
        )

    @property
    def groups(self) -> Mapping[str, GroupInfo]:
        return MappingProxyType(self._groups)

    def target_groups(self) -> List[GroupInfo]:
        return [group for group in self._groups.values() if self._config.is_target_conversation(group.name)]

    def publish(self, event: TransportEvent) -> None:
        """Queue an inbound event for ``run`` to process."""

        self._queue.put_nowait(event)

    async def start(self) -> None:
        self.dedup.start()
        self.dispatcher.start()
        await self.connection.connect()

    async def run(self) -> None:
        """Start every component and process inbound events until stopped."""

        await self.start()
        while True:
            event = await self._queue.get()
            if event is _STOP:
                break
            try:
                await self.process_event(event)
            except Exception:
                LOGGER.exception("Error while processing %s", type(event).__name__)

    async def process_event(self, event: TransportEvent) -> None:
        if isinstance(event, ConnectionUpdate):
            await self.connection.handle_update(event)
        elif isinstance(event, MessageBatch):
            self._handle_batch(event)
        elif isinstance(event, GroupDeltas):
            self._apply_deltas(event)
        elif isinstance(event, GroupUpserts):
            self._apply_upserts(event)
        elif isinstance(event, GroupsLoaded):
            self._load_groups(event)
        else:
            LOGGER.warning("Unknown transport event ignored: %r", event)

    def _handle_batch(self, batch: MessageBatch) -> None:
        groups = self.groups
        for raw in batch.messages:
            try:
                message = self.processor.accept(raw)
                if message is None:
                    continue
                relevant = self.processor.evaluate(message, groups)
            except Exception:
                LOGGER.exception("Error while processing message %s", raw.id)
                continue
            if relevant is not None:
                self._on_relevant(relevant)

    def _on_relevant(self, message: RelevantMessage) -> None:
        self._emit(
            DomainEvent(
                MESSAGE_RELEVANT,
                {
                    "message_id": message.id,
                    "conversation": message.conversation_name,
                    "sender": message.sender_name,
                    "matched_keywords": list(message.matched_keywords),
                    "message": message,
                },
            )
        )
        task = self._scheduler.spawn(self._dispatch(message), name=f"dispatch-{message.id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, message: RelevantMessage) -> None:
        try:
            await self.dispatcher.dispatch(message)
        except Exception:
            LOGGER.exception("Dispatch failed for %s", message.id)

    def _apply_deltas(self, event: GroupDeltas) -> None:
        for delta in event.updates:
            group = self._groups.get(delta.id)
            if group is None:
                continue
            updated = GroupInfo(
                id=group.id,
                name=delta.name if delta.name is not None else group.name,
                participants_count=(
                    delta.participants_count if delta.participants_count is not None else group.participants_count
                ),
            )
            self._groups[delta.id] = updated
            LOGGER.info("Group updated: %s", updated.name)

    def _apply_upserts(self, event: GroupUpserts) -> None:
        for group in event.groups:
            self._groups[group.id] = group
            LOGGER.info("New group added: %s (%s participants)", group.name, group.participants_count or 0)

    def _load_groups(self, event: GroupsLoaded) -> None:
        self._groups = {group.id: group for group in event.groups}
        targets = self.target_groups()
        LOGGER.info("Group roster loaded: %s groups, %s targets", len(self._groups), len(targets))
        for group in targets:
            LOGGER.info("Monitoring target group: %s (%s participants)", group.name, group.participants_count or 0)
        if not targets:
            LOGGER.warning("None of the configured target conversations were found")

    async def flush(self) -> None:
        """Wait for every in-flight dispatch to finish."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def stop(self, logout: bool = False) -> None:
        """Shut components down in reverse order of start."""

        if self._stopping:
            return
        self._stopping = True
        LOGGER.info("Stopping orchestrator")
        self._queue.put_nowait(_STOP)
        await self.connection.shutdown(logout=logout)
        await self.flush()
        await self.dispatcher.shutdown()
        self.dedup.stop()

    def status(self) -> dict:
        """Health snapshot across all components."""

        return {
            "connection": self.connection.stats(),
            "groups": len(self._groups),
            "target_groups": len(self.target_groups()),
            "pipeline": self.processor.stats(),
            "dedup": self.dedup.stats(),
            "filter": self.filter_engine.stats(),
            "dispatch": self.dispatcher.stats(),
            "retry_queue": self.dispatcher.retry_queue_status(),
        }
