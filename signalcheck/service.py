"""signalcheck — multi-symbol analytics service.

Wraps every analytics operation with the incremental cache and runs
symbols sequentially with a fixed delay between requests.  A failure on
one symbol is logged and skipped; an IP ban aborts the batch.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from signalcheck.analytics.breakout import current_price, detect_breakouts, resolve_pending
from signalcheck.analytics.models import (
    BreakoutResult,
    BreakoutSignal,
    OversoldEvent,
    PendingBreakout,
    RSIReading,
)
from signalcheck.analytics.oversold import OVERSOLD_INTERVAL, fetch_oversold
from signalcheck.analytics.rsi import RSI_INTERVAL, fetch_rsi
from signalcheck.cache.incremental import (
    BREAKOUT_TTL,
    OVERSOLD_TTL,
    PENDING_RETENTION,
    RSI_TTL,
    IncrementalCache,
    make_cache_key,
    merge_records,
    since_from,
)
from signalcheck.config import Config
from signalcheck.errors import FatalAccessError
from signalcheck.exchange.binance_client import BinanceClient

logger = logging.getLogger("signalcheck.service")

T = TypeVar("T")

BREAKOUT_INTERVAL = "5m"


def signal_key(signal: BreakoutSignal) -> tuple:
    return (signal.symbol, signal.reentry_time, signal.breakout_time)


def pending_key(pending: PendingBreakout) -> tuple:
    return (pending.symbol, pending.breakout_time, pending.session_range.date)


def event_key(event: OversoldEvent) -> tuple:
    return (event.symbol, event.timestamp)


class AnalyticsService:
    """Cached, rate-limited access to RSI, oversold and breakout analytics.

    Args:
        config: Application configuration.
        client: Market data source.
        cache: Incremental cache; its clock is the service's clock.
        sleep: Awaitable sleep used for the inter-request delay.
    """

    def __init__(
        self,
        config: Config,
        client: BinanceClient,
        cache: IncrementalCache,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._client = client
        self._cache = cache
        self._sleep = sleep
        self.last_refresh: dict[str, datetime] = {}

    @property
    def symbols(self) -> tuple[str, ...]:
        return self._config.symbols

    # ── Batch helper ─────────────────────────────────────────────────────

    async def _run_batch(
        self,
        label: str,
        symbols: Sequence[str],
        fetch: Callable[[str], Awaitable[T]],
    ) -> list[T]:
        """Call *fetch* for each symbol in order, isolating failures.

        Waits ``request_delay_seconds`` between symbols, including after a
        failure.  ``FatalAccessError`` stops the batch and propagates.
        """
        results: list[T] = []
        for i, symbol in enumerate(symbols):
            try:
                results.append(await fetch(symbol))
            except FatalAccessError:
                logger.error("%s batch aborted at %s: access revoked by exchange", label, symbol)
                raise
            except Exception as exc:
                logger.error("Error fetching %s for %s: %s", label, symbol, exc)
            if i < len(symbols) - 1:
                await self._sleep(self._config.request_delay_seconds)
        return results

    # ── RSI ──────────────────────────────────────────────────────────────

    async def fetch_multiple_rsi(
        self,
        symbols: Optional[Sequence[str]] = None,
        refresh: bool = False,
    ) -> list[RSIReading]:
        """Latest RSI reading per symbol; failed symbols are left out.

        Cached readings are served until a new hourly candle is due.
        """
        symbols = list(symbols or self.symbols)
        cfg = self._config
        key = make_cache_key("rsi", symbols, cfg.rsi_period, cfg.rsi_ma_period)

        if not refresh:
            entry = self._cache.peek(key)
            if entry is not None and entry.data:
                readings = [RSIReading.from_dict(d) for d in entry.data]
                latest = max(r.timestamp for r in readings)
                if self._cache.is_current(entry, latest, RSI_INTERVAL):
                    logger.info(
                        "[Cache] Using cached RSI data - latest candle %s, new candle not yet available",
                        latest.isoformat(),
                    )
                    return readings

        async def _refresh() -> list[RSIReading]:
            now = self._cache.now()
            readings = await self._run_batch(
                "RSI",
                symbols,
                lambda s: fetch_rsi(self._client, s, cfg.rsi_period, cfg.rsi_ma_period, now),
            )
            self._cache.set(key, [r.to_dict() for r in readings], RSI_TTL)
            self.last_refresh["rsi"] = now
            return readings

        return await self._cache.single_flight(key, _refresh)

    # ── Oversold history ─────────────────────────────────────────────────

    async def fetch_oversold_history(
        self,
        symbols: Optional[Sequence[str]] = None,
        days: Optional[int] = None,
        threshold: Optional[float] = None,
        refresh: bool = False,
    ) -> list[OversoldEvent]:
        """Oversold events across *symbols*, newest first.

        Cached events are extended incrementally from one minute before
        the newest cached event; events older than the lookback drop out.
        """
        symbols = list(symbols or self.symbols)
        cfg = self._config
        days = days or cfg.oversold_days
        threshold = cfg.oversold_threshold if threshold is None else threshold
        key = make_cache_key("oversold", symbols, days, threshold)

        entry = self._cache.peek(key)
        cached = [OversoldEvent.from_dict(d) for d in entry.data] if entry else []
        latest = max((e.timestamp for e in cached), default=None)

        if entry is not None and not refresh and self._cache.is_current(entry, latest, OVERSOLD_INTERVAL):
            logger.info("[Cache] Using cached oversold history (%d events)", len(cached))
            return self._within_days(cached, days)

        since = since_from(latest) if latest is not None else None

        async def _refresh() -> list[OversoldEvent]:
            now = self._cache.now()
            batches = await self._run_batch(
                "oversold history",
                symbols,
                lambda s: fetch_oversold(
                    self._client, s, days, cfg.rsi_period, threshold, since, now
                ),
            )
            incoming = [event for batch in batches for event in batch]
            merged = self._within_days(
                merge_records(cached, incoming, event_key, lambda e: e.timestamp), days
            )
            if cached:
                logger.info(
                    "[Cache] Merged %d new events with %d cached = %d total",
                    len(incoming), len(cached), len(merged),
                )
            self._cache.set(key, [e.to_dict() for e in merged], OVERSOLD_TTL)
            self.last_refresh["oversold"] = now
            return merged

        return await self._cache.single_flight(key, _refresh)

    def _within_days(self, events: list[OversoldEvent], days: int) -> list[OversoldEvent]:
        cutoff = self._cache.now() - timedelta(days=days)
        return [e for e in events if e.timestamp >= cutoff]

    # ── Breakouts ────────────────────────────────────────────────────────

    async def fetch_breakouts(
        self,
        symbols: Optional[Sequence[str]] = None,
        days: Optional[int] = None,
        refresh: bool = False,
    ) -> BreakoutResult:
        """Breakout signals (newest re-entry first) and recent pending breakouts.

        Pending breakouts are limited to the last 24 hours and dropped once
        a signal shares their breakout time.  Cached signals still pending
        are re-resolved and pending breakouts re-priced on every refresh.
        """
        symbols = list(symbols or self.symbols)
        days = days or self._config.breakout_days
        key = make_cache_key("breakouts", symbols, days)

        entry = self._cache.peek(key)
        cached = BreakoutResult.from_dict(entry.data) if entry else BreakoutResult()
        stamps = [s.reentry_time for s in cached.signals] + [
            p.breakout_time for p in cached.pending
        ]
        latest = max(stamps, default=None)

        if entry is not None and not refresh and self._cache.is_current(entry, latest, BREAKOUT_INTERVAL):
            logger.info("[Cache] Using cached breakout signals (%d)", len(cached.signals))
            return self._finalize(cached.signals, cached.pending)

        since = since_from(latest) if latest is not None else None

        async def _refresh() -> BreakoutResult:
            now = self._cache.now()
            results = await self._run_batch(
                "breakout signals",
                symbols,
                lambda s: detect_breakouts(self._client, s, self._config, since, now),
            )
            incoming = BreakoutResult()
            for result in results:
                incoming.extend(result)

            seen = {signal_key(s) for s in incoming.signals}
            stale = [s for s in cached.signals if s.is_pending and signal_key(s) not in seen]
            if stale:
                incoming.signals.extend(await self._resolve_cached(stale))

            signals = merge_records(
                cached.signals, incoming.signals, signal_key, lambda s: s.reentry_time
            )
            pending = merge_records(
                cached.pending, incoming.pending, pending_key, lambda p: p.breakout_time
            )
            result = self._finalize(signals, pending)
            result.pending = await self._reprice(result.pending, incoming.pending)
            self._cache.set(key, result.to_dict(), BREAKOUT_TTL)
            self.last_refresh["breakouts"] = now
            return result

        return await self._cache.single_flight(key, _refresh)

    async def _resolve_cached(self, signals: list[BreakoutSignal]) -> list[BreakoutSignal]:
        by_symbol: dict[str, list[BreakoutSignal]] = {}
        for signal in signals:
            by_symbol.setdefault(signal.symbol, []).append(signal)

        batches = await self._run_batch(
            "pending resolution",
            list(by_symbol),
            lambda s: resolve_pending(self._client, by_symbol[s], self._config.lookahead_days),
        )
        return [signal for batch in batches for signal in batch]

    async def _reprice(
        self, pending: list[PendingBreakout], fresh: list[PendingBreakout]
    ) -> list[PendingBreakout]:
        """Give every pending breakout its symbol's live price.

        Prices from this scan are reused; other symbols get one ticker
        request each.  A failed request leaves the price unset.
        """
        prices = {p.symbol: p.current_price for p in fresh if p.current_price is not None}
        missing = sorted({p.symbol for p in pending} - set(prices))

        async def _fetch(symbol: str) -> tuple[str, Optional[float]]:
            return symbol, await current_price(self._client, symbol)

        for symbol, price in await self._run_batch("current prices", missing, _fetch):
            prices[symbol] = price
        return [replace(p, current_price=prices.get(p.symbol)) for p in pending]

    def _finalize(
        self, signals: list[BreakoutSignal], pending: list[PendingBreakout]
    ) -> BreakoutResult:
        cutoff = self._cache.now() - PENDING_RETENTION
        with_reentry = {(s.symbol, s.breakout_time) for s in signals}
        recent = [
            p for p in pending
            if p.breakout_time >= cutoff and (p.symbol, p.breakout_time) not in with_reentry
        ]
        recent.sort(key=lambda p: p.breakout_time, reverse=True)
        ordered = sorted(signals, key=lambda s: s.reentry_time, reverse=True)
        return BreakoutResult(signals=ordered, pending=recent)

    # ── All ──────────────────────────────────────────────────────────────

    async def refresh_all(self, refresh: bool = False) -> dict:
        """Run every analytics operation once; returns JSON-ready output."""
        rsi = await self.fetch_multiple_rsi(refresh=refresh)
        oversold = await self.fetch_oversold_history(refresh=refresh)
        breakouts = await self.fetch_breakouts(refresh=refresh)
        return {
            "rsi": [r.to_dict() for r in rsi],
            "oversold": [e.to_dict() for e in oversold],
            "breakouts": breakouts.to_dict(),
        }
