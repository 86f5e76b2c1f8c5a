"""Deduplication helpers (core domain).

Retransmissions of the same logical message collapse to one fingerprint when
they share sender, text prefix and time bucket. Bucketing is approximate: a
retransmission straddling a bucket boundary gets a new fingerprint, and two
distinct messages with identical sender and prefix inside one bucket collapse.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from typing import Dict, Optional

from milesguard.core.config import DedupConfig
from milesguard.core.models import NormalizedMessage
from milesguard.core.scheduler import Scheduler, TimerHandle

LOGGER = logging.getLogger(__name__)


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_fingerprint(text: str) -> str:
    """Normalize text for deterministic fingerprinting."""

    return _collapse_whitespace(text).lower()


def time_bucket(moment: datetime, bucket_seconds: int) -> int:
    """Floor a timestamp to a coarse bucket index."""

    return int(moment.timestamp()) // bucket_seconds


def compute_fingerprint(
    sender_name: str,
    text: str,
    received_at: datetime,
    prefix_chars: int = 100,
    bucket_seconds: int = 60,
) -> str:
    """Return a fingerprint hash for sender + text prefix + time bucket."""

    prefix = normalize_for_fingerprint(text)[:prefix_chars]
    bucket = time_bucket(received_at, bucket_seconds)
    payload = f"{sender_name}\n{prefix}\n{bucket}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DedupCache:
    """In-memory fingerprint store with time-based eviction.

    Entries record the scheduler time of insertion; ``sweep`` drops entries
    older than ``ttl_seconds`` independently of cache size. All operations run
    on the event loop thread, so ``check_and_insert`` is atomic.
    """

    def __init__(self, config: DedupConfig, scheduler: Scheduler) -> None:
        self._config = config
        self._scheduler = scheduler
        self._entries: Dict[str, float] = {}
        self._sweep_handle: Optional[TimerHandle] = None

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def fingerprint(self, message: NormalizedMessage) -> str:
        return compute_fingerprint(
            message.sender_name,
            message.text,
            message.received_at,
            prefix_chars=self._config.text_prefix_chars,
            bucket_seconds=self._config.bucket_seconds,
        )

    def has(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def insert(self, fingerprint: str) -> None:
        self._entries[fingerprint] = self._scheduler.now()

    def check_and_insert(self, fingerprint: str) -> bool:
        """Insert the fingerprint and return True if it was not already present."""

        if fingerprint in self._entries:
            return False
        self._entries[fingerprint] = self._scheduler.now()
        return True

    def sweep(self) -> int:
        """Remove entries older than the TTL and return how many were removed."""

        now = self._scheduler.now()
        max_age = self._config.ttl_seconds
        expired = [fp for fp, inserted_at in list(self._entries.items()) if now - inserted_at > max_age]
        for fp in expired:
            self._entries.pop(fp, None)
        if expired:
            LOGGER.debug("Dedup sweep removed %s fingerprints, %s remaining", len(expired), len(self._entries))
        return len(expired)

    def start(self) -> None:
        if self._sweep_handle is not None:
            return
        self._sweep_handle = self._scheduler.call_every(self._config.cleanup_interval_seconds, self.sweep)

    def stop(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "enabled": self._config.enabled,
            "size": len(self._entries),
            "ttl_seconds": self._config.ttl_seconds,
            "cleanup_interval_seconds": self._config.cleanup_interval_seconds,
        }
