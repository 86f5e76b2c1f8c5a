"""Core message processing pipeline.

This module is integration-agnostic. The pipeline enforces a strict order:

Stage 1 (``accept``), always runs:
1) Normalize the raw transport message (malformed input is dropped)
2) Fast-exit for system events or empty text
3) Content-level dedup by fingerprint
4) Fast-exit for non-group conversations

Stage 2 (``evaluate``), needs group metadata:
5) Resolve the conversation name from the group map (unknown groups are dropped)
6) Apply the filter engine
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Mapping, Optional

from milesguard.core.dedup import DedupCache
from milesguard.core.errors import ValidationError
from milesguard.core.filter_engine import FilterEngine
from milesguard.core.models import GroupInfo, NormalizedMessage, RawMessage, RelevantMessage

LOGGER = logging.getLogger(__name__)


def normalize_message(raw: RawMessage) -> NormalizedMessage:
    """Build a NormalizedMessage, raising ValidationError on malformed input."""

    if not raw.id:
        raise ValidationError("message without id")
    if not raw.conversation_id:
        raise ValidationError(f"message {raw.id} without conversation id")

    received_at = raw.timestamp or datetime.now(timezone.utc)
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return NormalizedMessage(
        id=raw.id,
        conversation_id=raw.conversation_id,
        conversation_name=None,
        sender_name=raw.sender_name or "unknown",
        text=raw.text or "",
        received_at=received_at,
    )


class MessageProcessor:
    """Runs inbound messages through dedup, group resolution and filtering."""

    def __init__(self, dedup: DedupCache, filter_engine: FilterEngine) -> None:
        self._dedup = dedup
        self._filter = filter_engine
        self.received = 0
        self.duplicates = 0

    def accept(self, raw: RawMessage) -> Optional[NormalizedMessage]:
        """Stage 1: return the normalized message, or None when it is dropped."""

        try:
            message = normalize_message(raw)
        except ValidationError as exc:
            LOGGER.warning("Dropping malformed message: %s", exc)
            return None

        # Service messages (joins, title changes, pins) carry no offer text.
        if raw.is_system or not message.text.strip():
            return None

        if self._dedup.enabled:
            fingerprint = self._dedup.fingerprint(message)
            if not self._dedup.check_and_insert(fingerprint):
                self.duplicates += 1
                LOGGER.debug("Duplicate message %s skipped", message.id)
                return None

        if not raw.is_group:
            return None

        self.received += 1
        LOGGER.debug(
            "Message received in %s from %s (%s chars)",
            message.conversation_id,
            message.sender_name,
            len(message.text),
        )
        return message

    def evaluate(
        self,
        message: NormalizedMessage,
        groups: Mapping[str, GroupInfo],
    ) -> Optional[RelevantMessage]:
        """Stage 2: attach the conversation name and apply the filter engine."""

        group = groups.get(message.conversation_id)
        if group is None:
            # Group metadata not resolved yet: dropped rather than buffered.
            LOGGER.debug("Message %s from unknown group %s dropped", message.id, message.conversation_id)
            return None

        named = replace(message, conversation_name=group.name)
        decision = self._filter.evaluate(named.conversation_name, named.text)
        if not decision.should_process:
            LOGGER.debug("Message %s in %s rejected (%s)", named.id, group.name, decision.reason.value)
            return None

        LOGGER.info(
            "Relevant message in %s matched %s",
            group.name,
            ", ".join(decision.matched_keywords),
        )
        return RelevantMessage.from_message(named, decision.matched_keywords)

    def stats(self) -> dict:
        return {"received": self.received, "duplicates": self.duplicates}
