"""Incremental cache — TTL envelopes, candle-cadence checks and record merging.

Entries are stored as JSON envelopes ``{"data", "storedAt", "ttlMs"}``
under keys namespaced with ``signalcheck_cache_``.  The cache is
best-effort: read and write failures are logged and never propagate.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Hashable, Iterable, Optional, TypeVar

from signalcheck.cache.store import CacheStore
from signalcheck.errors import CacheQuotaExceeded, CacheWriteFailure
from signalcheck.exchange.models import from_millis, to_millis

logger = logging.getLogger("signalcheck.cache")

T = TypeVar("T")

CACHE_PREFIX = "signalcheck_cache_"

RSI_TTL = timedelta(hours=2)
OVERSOLD_TTL = timedelta(hours=1)
BREAKOUT_TTL = timedelta(hours=1)
PENDING_RETENTION = timedelta(hours=24)

PRUNE_AGE = timedelta(hours=24)
SINCE_OVERLAP = timedelta(minutes=1)

INTERVAL_SECONDS: dict[str, int] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "30m": 30 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload with its write time and time-to-live."""

    data: Any
    stored_at: datetime
    ttl: Optional[timedelta] = None

    def age(self, now: datetime) -> timedelta:
        return now - self.stored_at

    def is_expired(self, now: datetime) -> bool:
        return self.ttl is not None and now > self.stored_at + self.ttl

    def to_json(self) -> str:
        return json.dumps(
            {
                "data": self.data,
                "storedAt": to_millis(self.stored_at),
                "ttlMs": int(self.ttl.total_seconds() * 1000) if self.ttl is not None else None,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        envelope = json.loads(raw)
        ttl_ms = envelope.get("ttlMs")
        return cls(
            data=envelope["data"],
            stored_at=from_millis(envelope["storedAt"]),
            ttl=timedelta(milliseconds=ttl_ms) if ttl_ms is not None else None,
        )


# ── Key and cadence helpers ──────────────────────────────────────────────


def make_cache_key(operation: str, symbols: Iterable[str], *params: Any) -> str:
    """``<operation>_<symbols-joined>_<params>``, e.g. ``rsi_BTC/USDT_ETH/USDT_14_14``."""
    parts = [operation, "_".join(symbols)]
    parts.extend(str(p) for p in params)
    return "_".join(parts)


def interval_seconds(interval: str) -> int:
    try:
        return INTERVAL_SECONDS[interval]
    except KeyError:
        raise ValueError(f"Unsupported candle interval '{interval}'") from None


def latest_expected_candle_time(interval: str, now: datetime) -> datetime:
    """*now* floored to the candle interval (UTC epoch aligned)."""
    step = interval_seconds(interval)
    floored = int(now.timestamp()) // step * step
    return datetime.fromtimestamp(floored, tz=timezone.utc)


def has_new_candle(last: Optional[datetime], interval: str, now: datetime) -> bool:
    """True when a candle boundary has passed since *last*."""
    if last is None:
        return True
    return latest_expected_candle_time(interval, now) > last


def since_from(latest: datetime) -> datetime:
    """Incremental fetch start: one minute before the newest cached record."""
    return latest - SINCE_OVERLAP


def merge_records(
    cached: Iterable[T],
    incoming: Iterable[T],
    key: Callable[[T], Hashable],
    sort_key: Callable[[T], Any],
) -> list[T]:
    """Union of *cached* and *incoming*, deduplicated by *key*, newest first.

    An incoming record replaces a cached one with the same key, so merging
    the same increment twice yields the same list.
    """
    merged: dict[Hashable, T] = {}
    for record in cached:
        merged[key(record)] = record
    for record in incoming:
        merged[key(record)] = record
    return sorted(merged.values(), key=sort_key, reverse=True)


# ── Cache ────────────────────────────────────────────────────────────────


class IncrementalCache:
    """TTL cache over an injected ``CacheStore``.

    Args:
        store: Backing key/value store.
        clock: Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: CacheStore,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._clock = clock
        self._inflight: dict[str, asyncio.Future] = {}

    def now(self) -> datetime:
        return self._clock()

    # ── Reads ────────────────────────────────────────────────────────────

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for *key* regardless of its TTL."""
        try:
            raw = self._store.get(CACHE_PREFIX + key)
        except Exception as exc:  # backend failures must not reach callers
            logger.warning("Cache get error for key %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", key, exc)
            self.remove(key)
            return None

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for *key* if present and within its TTL."""
        entry = self.peek(key)
        if entry is None or entry.is_expired(self.now()):
            return None
        return entry

    def is_current(
        self, entry: CacheEntry, latest: Optional[datetime], interval: str
    ) -> bool:
        """Whether *entry* can be served without fetching.

        With a known newest-record time, current until the first *interval*
        candle boundary after that record or after the write, whichever is
        later, even past TTL.  Without one (an empty result), current until
        the first boundary after the write.
        """
        now = self.now()
        if latest is None:
            return not has_new_candle(entry.stored_at, interval, now)
        return not has_new_candle(max(latest, entry.stored_at), interval, now)

    # ── Writes ───────────────────────────────────────────────────────────

    def set(self, key: str, data: Any, ttl: Optional[timedelta] = None) -> bool:
        """Persist *data* under *key*.

        On quota exhaustion, entries older than 24 h are pruned and the
        write retried once.  Returns ``False`` when the write was dropped.
        """
        raw = CacheEntry(data=data, stored_at=self.now(), ttl=ttl).to_json()
        try:
            self._store.set(CACHE_PREFIX + key, raw)
            return True
        except CacheQuotaExceeded as exc:
            logger.warning("Cache quota exceeded for key %s (%s), pruning old entries", key, exc)
            self.prune_old()
        except CacheWriteFailure as exc:
            logger.warning("Cache set error for key %s: %s", key, exc)
            return False

        try:
            self._store.set(CACHE_PREFIX + key, raw)
            return True
        except CacheWriteFailure as exc:
            logger.warning("Cache write for key %s dropped after pruning: %s", key, exc)
            return False

    def remove(self, key: str) -> None:
        try:
            self._store.remove(CACHE_PREFIX + key)
        except Exception as exc:  # backend failures must not reach callers
            logger.warning("Cache remove error for key %s: %s", key, exc)

    def _namespaced_keys(self) -> list[str]:
        try:
            return [k for k in self._store.keys() if k.startswith(CACHE_PREFIX)]
        except Exception as exc:  # backend failures must not reach callers
            logger.warning("Cache key listing failed: %s", exc)
            return []

    def clear(self) -> None:
        """Remove every namespaced entry."""
        for full_key in self._namespaced_keys():
            self.remove(full_key[len(CACHE_PREFIX):])

    def prune_old(self, max_age: timedelta = PRUNE_AGE) -> int:
        """Remove entries written more than *max_age* ago, and unreadable ones.

        Returns the number of entries removed.
        """
        now = self.now()
        removed = 0
        for full_key in self._namespaced_keys():
            key = full_key[len(CACHE_PREFIX):]
            entry = self.peek(key)
            if entry is None:
                removed += 1
                continue
            if entry.age(now) > max_age:
                self.remove(key)
                removed += 1
        if removed:
            logger.info("Pruned %d old cache entries", removed)
        return removed

    # ── Concurrency ──────────────────────────────────────────────────────

    async def single_flight(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run *factory* once per *key* at a time.

        Concurrent callers for the same key await the same task and share
        its result or exception.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            logger.debug("Joining in-flight refresh for %s", key)
        return await asyncio.shield(task)
