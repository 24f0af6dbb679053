"""Tests for signalcheck.cache — stores, TTL envelopes, cadence and merging."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from signalcheck.cache.incremental import (
    CACHE_PREFIX,
    CacheEntry,
    IncrementalCache,
    has_new_candle,
    interval_seconds,
    latest_expected_candle_time,
    make_cache_key,
    merge_records,
    since_from,
)
from signalcheck.cache.store import MemoryCacheStore, SqliteCacheStore
from signalcheck.errors import CacheQuotaExceeded

T0 = datetime(2025, 11, 3, 14, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for cache tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class BrokenStore(MemoryCacheStore):
    def get(self, key):
        raise OSError("disk unavailable")


# ── Cadence helpers ──────────────────────────────────────────────────────


class TestCadence:
    def test_latest_expected_floors_to_interval(self):
        now = datetime(2025, 11, 3, 14, 47, 12, tzinfo=timezone.utc)
        assert latest_expected_candle_time("1h", now) == T0
        assert latest_expected_candle_time("5m", now) == datetime(
            2025, 11, 3, 14, 45, tzinfo=timezone.utc
        )

    def test_hourly_cadence(self):
        assert has_new_candle(T0, "1h", T0 + timedelta(minutes=45)) is False
        assert has_new_candle(T0, "1h", T0 + timedelta(minutes=61)) is True

    def test_five_minute_cadence(self):
        assert has_new_candle(T0, "5m", T0 + timedelta(minutes=4)) is False
        assert has_new_candle(T0, "5m", T0 + timedelta(minutes=5)) is True

    def test_nothing_cached_needs_fetch(self):
        assert has_new_candle(None, "1h", T0) is True

    def test_unknown_interval(self):
        with pytest.raises(ValueError, match="3h"):
            interval_seconds("3h")

    def test_since_overlaps_one_minute(self):
        assert since_from(T0) == T0 - timedelta(minutes=1)

    def test_cache_key(self):
        assert make_cache_key("rsi", ["BTC/USDT", "ETH/USDT"], 14, 14) == "rsi_BTC/USDT_ETH/USDT_14_14"


# ── Merging ──────────────────────────────────────────────────────────────


class TestMergeRecords:
    @staticmethod
    def _merge(cached, incoming):
        return merge_records(cached, incoming, key=lambda r: (r[0], r[1]), sort_key=lambda r: r[1])

    def test_dedup_and_newest_first(self):
        cached = [("BTC", 1, "old"), ("BTC", 2, "old")]
        incoming = [("BTC", 2, "new"), ("BTC", 3, "new"), ("ETH", 2, "new")]
        merged = self._merge(cached, incoming)
        assert len(merged) == 4
        assert merged[0] == ("BTC", 3, "new")
        assert ("BTC", 2, "new") in merged
        assert ("BTC", 2, "old") not in merged

    def test_idempotent(self):
        cached = [("BTC", 1, "a"), ("ETH", 1, "a")]
        incoming = [("BTC", 1, "b"), ("BTC", 5, "b")]
        once = self._merge(cached, incoming)
        twice = self._merge(once, incoming)
        assert once == twice

    def test_empty_inputs(self):
        assert self._merge([], []) == []


# ── Entries and TTL ──────────────────────────────────────────────────────


class TestIncrementalCache:
    def test_envelope_format(self):
        store = MemoryCacheStore()
        cache = IncrementalCache(store, clock=FakeClock(T0))
        cache.set("rsi_x", [{"rsi": 42.0}], timedelta(hours=2))

        raw = store.get(CACHE_PREFIX + "rsi_x")
        entry = CacheEntry.from_json(raw)
        assert entry.data == [{"rsi": 42.0}]
        assert entry.stored_at == T0
        assert entry.ttl == timedelta(hours=2)
        assert '"storedAt"' in raw and '"ttlMs": 7200000' in raw

    def test_get_honours_ttl_peek_does_not(self):
        clock = FakeClock(T0)
        cache = IncrementalCache(MemoryCacheStore(), clock=clock)
        cache.set("k", {"v": 1}, timedelta(hours=1))

        clock.advance(minutes=30)
        assert cache.get("k").data == {"v": 1}

        clock.advance(hours=1)
        assert cache.get("k") is None
        assert cache.peek("k").data == {"v": 1}

    def test_no_ttl_never_expires(self):
        clock = FakeClock(T0)
        cache = IncrementalCache(MemoryCacheStore(), clock=clock)
        cache.set("k", 1)
        clock.advance(days=30)
        assert cache.get("k").data == 1

    def test_cadence_keeps_entry_current_past_ttl(self):
        """Latest record 14:00: current at 14:45, stale at 15:01."""
        clock = FakeClock(T0 + timedelta(minutes=45))
        cache = IncrementalCache(MemoryCacheStore(), clock=clock)
        cache.set("rsi", [], timedelta(minutes=10))
        entry = cache.peek("rsi")

        clock.advance(minutes=14)  # 14:59, past the 10 minute TTL
        assert cache.get("rsi") is None
        assert cache.is_current(entry, T0, "1h") is True

        clock.advance(minutes=2)  # 15:01
        assert cache.is_current(entry, T0, "1h") is False

    def test_empty_entry_follows_cadence_from_write(self):
        """Written 14:02 with no records: current until the next boundary."""
        clock = FakeClock(T0 + timedelta(minutes=2))
        cache = IncrementalCache(MemoryCacheStore(), clock=clock)
        cache.set("k", [])
        entry = cache.peek("k")

        clock.advance(minutes=2)  # 14:04
        assert cache.is_current(entry, None, "5m") is True
        clock.advance(minutes=1)  # 14:05
        assert cache.is_current(entry, None, "5m") is False

        clock.now = T0 + timedelta(minutes=20)
        assert cache.is_current(entry, None, "1h") is True
        clock.now = T0 + timedelta(minutes=59)
        assert cache.is_current(entry, None, "1h") is True
        clock.now = T0 + timedelta(minutes=60)
        assert cache.is_current(entry, None, "1h") is False

    def test_missing_key(self):
        cache = IncrementalCache(MemoryCacheStore(), clock=FakeClock(T0))
        assert cache.get("nope") is None
        assert cache.peek("nope") is None

    def test_unreadable_entry_removed(self, caplog):
        store = MemoryCacheStore()
        store.set(CACHE_PREFIX + "bad", "not json {")
        cache = IncrementalCache(store, clock=FakeClock(T0))
        with caplog.at_level(logging.WARNING, logger="signalcheck.cache"):
            assert cache.get("bad") is None
        assert store.get(CACHE_PREFIX + "bad") is None
        assert "unreadable" in caplog.text

    def test_backend_read_failure_is_a_miss(self):
        cache = IncrementalCache(BrokenStore(), clock=FakeClock(T0))
        assert cache.get("k") is None

    def test_remove_and_clear_only_touch_namespace(self):
        store = MemoryCacheStore()
        store.set("unrelated", "keep")
        cache = IncrementalCache(store, clock=FakeClock(T0))
        cache.set("a", 1)
        cache.set("b", 2)

        cache.remove("a")
        assert cache.peek("a") is None
        cache.clear()
        assert cache.peek("b") is None
        assert store.get("unrelated") == "keep"

    def test_prune_old(self):
        clock = FakeClock(T0)
        cache = IncrementalCache(MemoryCacheStore(), clock=clock)
        cache.set("old", 1)
        clock.advance(hours=20)
        cache.set("recent", 2)
        clock.advance(hours=5)

        assert cache.prune_old() == 1
        assert cache.peek("old") is None
        assert cache.peek("recent").data == 2


class TestQuota:
    def test_memory_store_enforces_quota(self):
        store = MemoryCacheStore(quota_bytes=10)
        with pytest.raises(CacheQuotaExceeded):
            store.set("key", "x" * 20)

    def test_prunes_then_retries_once(self):
        # Old entry ~175 bytes, new entry ~375 bytes: only one fits
        clock = FakeClock(T0)
        store = MemoryCacheStore(quota_bytes=450)
        cache = IncrementalCache(store, clock=clock)
        assert cache.set("old", "a" * 100) is True

        clock.advance(hours=25)
        assert cache.set("new", "b" * 300) is True
        assert cache.peek("old") is None
        assert cache.peek("new").data == "b" * 300

    def test_write_dropped_when_still_full(self, caplog):
        cache = IncrementalCache(MemoryCacheStore(quota_bytes=100), clock=FakeClock(T0))
        with caplog.at_level(logging.WARNING, logger="signalcheck.cache"):
            assert cache.set("big", "c" * 1000) is False
        assert cache.peek("big") is None
        assert "dropped" in caplog.text

    def test_recent_entries_survive_pruning(self):
        clock = FakeClock(T0)
        cache = IncrementalCache(MemoryCacheStore(quota_bytes=450), clock=clock)
        cache.set("recent", "a" * 100)
        clock.advance(hours=1)
        assert cache.set("new", "b" * 300) is False
        assert cache.peek("recent").data == "a" * 100


class TestSqliteStore:
    def test_round_trip_and_upsert(self, tmp_path):
        store = SqliteCacheStore(str(tmp_path / "nested" / "cache.db"))
        assert store.get("k") is None
        store.set("k", "v1")
        store.set("k", "v2")
        store.set("a", "x")
        assert store.get("k") == "v2"
        assert store.keys() == ["a", "k"]
        store.remove("k")
        assert store.get("k") is None

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "cache.db")
        IncrementalCache(SqliteCacheStore(path), clock=FakeClock(T0)).set("rsi", [1, 2], None)
        reopened = IncrementalCache(SqliteCacheStore(path), clock=FakeClock(T0))
        assert reopened.get("rsi").data == [1, 2]


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        cache = IncrementalCache(MemoryCacheStore(), clock=FakeClock(T0))
        calls = []

        async def factory():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "result"

        first, second = await asyncio.gather(
            cache.single_flight("k", factory), cache.single_flight("k", factory)
        )
        assert first == second == "result"
        assert len(calls) == 1

        # Finished flights are not reused
        assert await cache.single_flight("k", factory) == "result"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_exception_shared(self):
        cache = IncrementalCache(MemoryCacheStore(), clock=FakeClock(T0))

        async def factory():
            await asyncio.sleep(0.01)
            raise RuntimeError("boom")

        results = await asyncio.gather(
            cache.single_flight("k", factory),
            cache.single_flight("k", factory),
            return_exceptions=True,
        )
        assert all(isinstance(r, RuntimeError) for r in results)

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        cache = IncrementalCache(MemoryCacheStore(), clock=FakeClock(T0))
        calls = []

        async def factory():
            calls.append(1)
            return len(calls)

        await asyncio.gather(cache.single_flight("a", factory), cache.single_flight("b", factory))
        assert len(calls) == 2
