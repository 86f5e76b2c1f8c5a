from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from fakes import ManualScheduler

from milesguard.core.config import DedupConfig
from milesguard.core.dedup import DedupCache, compute_fingerprint, normalize_for_fingerprint
from milesguard.core.models import NormalizedMessage

BASE = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)


def _message(text: str = "100% bonus on points transfer", sender: str = "Ana", at: datetime = BASE) -> NormalizedMessage:
    return NormalizedMessage(
        id="-100:1",
        conversation_id="-100",
        conversation_name=None,
        sender_name=sender,
        text=text,
        received_at=at,
    )


def test_fingerprint_same_sender_text_and_minute() -> None:
    first = compute_fingerprint("Ana", "100% bonus", BASE)
    second = compute_fingerprint("Ana", "100%   BONUS ", BASE + timedelta(seconds=40))
    assert first == second


def test_fingerprint_differs_across_minutes_and_senders() -> None:
    first = compute_fingerprint("Ana", "100% bonus", BASE)
    assert first != compute_fingerprint("Ana", "100% bonus", BASE + timedelta(minutes=1))
    assert first != compute_fingerprint("Bruno", "100% bonus", BASE)


def test_fingerprint_only_uses_text_prefix() -> None:
    prefix = "x" * 100
    assert compute_fingerprint("Ana", prefix + "tail one", BASE) == compute_fingerprint("Ana", prefix + "other", BASE)


def test_normalize_for_fingerprint_collapses_whitespace() -> None:
    assert normalize_for_fingerprint("  Hello \n\t World ") == "hello world"


def test_check_and_insert_reports_new_once() -> None:
    cache = DedupCache(DedupConfig(), ManualScheduler())
    fingerprint = cache.fingerprint(_message())

    assert cache.check_and_insert(fingerprint) is True
    assert cache.check_and_insert(fingerprint) is False
    assert cache.has(fingerprint)
    assert len(cache) == 1


def test_sweep_removes_entries_older_than_ttl() -> None:
    scheduler = ManualScheduler()
    cache = DedupCache(DedupConfig(ttl_seconds=3600), scheduler)

    async def scenario() -> None:
        cache.insert("old")
        await scheduler.advance(3000)
        cache.insert("recent")
        await scheduler.advance(601)
        assert cache.sweep() == 1
        assert not cache.has("old")
        assert cache.has("recent")

    asyncio.run(scenario())


def test_periodic_sweep_runs_on_scheduler() -> None:
    scheduler = ManualScheduler()
    cache = DedupCache(DedupConfig(ttl_seconds=3600, cleanup_interval_seconds=1800), scheduler)

    async def scenario() -> None:
        cache.start()
        cache.insert("fp")
        await scheduler.advance(3600)
        # Age is exactly the TTL at the second sweep: kept.
        assert cache.has("fp")
        await scheduler.advance(1800)
        assert not cache.has("fp")
        cache.stop()
        assert scheduler.pending() == []

    asyncio.run(scenario())


def test_stats_and_clear() -> None:
    cache = DedupCache(DedupConfig(enabled=False), ManualScheduler())
    cache.insert("a")
    cache.insert("b")
    assert cache.stats()["size"] == 2
    assert cache.enabled is False
    cache.clear()
    assert len(cache) == 0
