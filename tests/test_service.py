"""Tests for signalcheck.service — batching, failure isolation and cache use."""

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

import signalcheck.service as service_module
from signalcheck.analytics.models import (
    LOSS,
    BreakoutResult,
    BreakoutSignal,
    OversoldEvent,
    PendingBreakout,
    SessionRange,
)
from signalcheck.cache.incremental import IncrementalCache
from signalcheck.cache.store import MemoryCacheStore
from signalcheck.config import Config
from signalcheck.errors import FatalAccessError, MarketDataError
from signalcheck.exchange.models import Candle
from signalcheck.service import AnalyticsService

MS = timedelta(milliseconds=1)
# The in-progress hourly candle opened at 14:00 and closes at 14:59:59.999
CURRENT_OPEN = datetime(2025, 11, 3, 14, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _hourly(count: int = 40, last_open: datetime = CURRENT_OPEN) -> list[Candle]:
    first = last_open - timedelta(hours=count - 1)
    candles = []
    for i in range(count):
        open_time = first + timedelta(hours=i)
        close = 100 + ((i * 7) % 11) - 5
        candles.append(
            Candle(open_time, open_time + timedelta(hours=1) - MS, close, close + 1, close - 1, close, 1.0)
        )
    return candles


def _make_service(clock: FakeClock, client=None, symbols=("BTC/USDT", "ETH/USDT", "SOL/USDT")):
    sleeps = []

    async def _sleep(seconds):
        sleeps.append(seconds)

    if client is None:
        client = MagicMock()
        client.get_candles = AsyncMock(return_value=_hourly())
    cache = IncrementalCache(MemoryCacheStore(), clock=clock)
    service = AnalyticsService(Config(symbols=symbols), client, cache, sleep=_sleep)
    return service, client, sleeps


# ── Batching ─────────────────────────────────────────────────────────────


class TestBatch:
    @pytest.mark.asyncio
    async def test_failed_symbol_skipped(self):
        candles = _hourly()

        async def _get_candles(symbol, interval, limit):
            if symbol == "ETH/USDT":
                raise MarketDataError("server error", 500)
            return candles

        client = MagicMock()
        client.get_candles = AsyncMock(side_effect=_get_candles)
        service, _, sleeps = _make_service(FakeClock(CURRENT_OPEN + timedelta(minutes=20)), client)

        readings = await service.fetch_multiple_rsi()

        assert [r.symbol for r in readings] == ["BTC/USDT", "SOL/USDT"]
        # Delay between every pair of symbols, including after the failure
        assert sleeps == [0.25, 0.25]

    @pytest.mark.asyncio
    async def test_ip_ban_aborts_batch(self):
        async def _get_candles(symbol, interval, limit):
            if symbol == "ETH/USDT":
                raise FatalAccessError("banned", 418)
            return _hourly()

        client = MagicMock()
        client.get_candles = AsyncMock(side_effect=_get_candles)
        service, _, _ = _make_service(FakeClock(CURRENT_OPEN + timedelta(minutes=20)), client)

        with pytest.raises(FatalAccessError):
            await service.fetch_multiple_rsi()
        assert client.get_candles.await_count == 2

    @pytest.mark.asyncio
    async def test_symbols_default_to_config(self):
        service, _, _ = _make_service(FakeClock(CURRENT_OPEN))
        assert service.symbols == ("BTC/USDT", "ETH/USDT", "SOL/USDT")


# ── RSI cache cadence ────────────────────────────────────────────────────


class TestRSICache:
    @pytest.mark.asyncio
    async def test_served_from_cache_until_next_hour(self):
        clock = FakeClock(CURRENT_OPEN + timedelta(minutes=20))
        service, client, _ = _make_service(clock, symbols=("BTC/USDT",))

        first = await service.fetch_multiple_rsi()
        assert client.get_candles.await_count == 1
        assert service.last_refresh["rsi"] == clock.now

        clock.now = CURRENT_OPEN + timedelta(minutes=45)
        second = await service.fetch_multiple_rsi()
        assert client.get_candles.await_count == 1
        assert second == first

        clock.now = CURRENT_OPEN + timedelta(hours=1, minutes=1)
        await service.fetch_multiple_rsi()
        assert client.get_candles.await_count == 2

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self):
        clock = FakeClock(CURRENT_OPEN + timedelta(minutes=20))
        service, client, _ = _make_service(clock, symbols=("BTC/USDT",))
        await service.fetch_multiple_rsi()
        await service.fetch_multiple_rsi(refresh=True)
        assert client.get_candles.await_count == 2

    @pytest.mark.asyncio
    async def test_symbol_sets_cached_separately(self):
        clock = FakeClock(CURRENT_OPEN + timedelta(minutes=20))
        service, client, _ = _make_service(clock)
        await service.fetch_multiple_rsi(["BTC/USDT"])
        await service.fetch_multiple_rsi(["ETH/USDT"])
        assert client.get_candles.await_count == 2


# ── Oversold incremental merge ───────────────────────────────────────────


def _event(symbol: str, hours_ago: float, now: datetime, rsi: float = 25.0) -> OversoldEvent:
    return OversoldEvent(symbol, now - timedelta(hours=hours_ago), rsi, 100.0)


class TestOversoldHistory:
    @pytest.mark.asyncio
    async def test_incremental_since_and_merge(self, monkeypatch):
        now = datetime(2025, 11, 3, 14, 30, tzinfo=timezone.utc)
        clock = FakeClock(now)
        first_batch = [_event("BTC/USDT", 1.5, now), _event("BTC/USDT", 3.5, now)]
        fetch = AsyncMock(return_value=first_batch)
        monkeypatch.setattr(service_module, "fetch_oversold", fetch)
        service, client, _ = _make_service(clock, symbols=("BTC/USDT",))

        events = await service.fetch_oversold_history()
        assert events == first_batch
        assert fetch.await_args.args[5] is None  # since

        clock.now = now + timedelta(hours=1)
        newer = _event("BTC/USDT", 0.5, clock.now, rsi=22.0)
        fetch.return_value = [newer, first_batch[0]]

        merged = await service.fetch_oversold_history()

        assert fetch.await_args.args[5] == first_batch[0].timestamp - timedelta(minutes=1)
        assert merged == [newer] + first_batch
        assert service.last_refresh["oversold"] == clock.now

    @pytest.mark.asyncio
    async def test_cached_until_next_hour(self, monkeypatch):
        now = datetime(2025, 11, 3, 14, 30, tzinfo=timezone.utc)
        clock = FakeClock(now)
        fetch = AsyncMock(return_value=[_event("BTC/USDT", 0.6, now)])
        monkeypatch.setattr(service_module, "fetch_oversold", fetch)
        service, _, _ = _make_service(clock, symbols=("BTC/USDT",))

        await service.fetch_oversold_history()
        clock.now = now + timedelta(minutes=20)
        await service.fetch_oversold_history()
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_result_cached_until_next_hour(self, monkeypatch):
        clock = FakeClock(CURRENT_OPEN + timedelta(minutes=2))
        fetch = AsyncMock(return_value=[])
        monkeypatch.setattr(service_module, "fetch_oversold", fetch)
        service, _, _ = _make_service(clock, symbols=("BTC/USDT",))

        assert await service.fetch_oversold_history() == []
        for minutes in (8, 20, 59):
            clock.now = CURRENT_OPEN + timedelta(minutes=minutes)
            assert await service.fetch_oversold_history() == []
        assert fetch.await_count == 1

        clock.now = CURRENT_OPEN + timedelta(hours=1, minutes=1)
        await service.fetch_oversold_history()
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_events_outside_lookback_dropped(self, monkeypatch):
        now = datetime(2025, 11, 3, 14, 30, tzinfo=timezone.utc)
        clock = FakeClock(now)
        old = _event("BTC/USDT", 70, now)
        fetch = AsyncMock(return_value=[old, _event("BTC/USDT", 2, now)])
        monkeypatch.setattr(service_module, "fetch_oversold", fetch)
        service, _, _ = _make_service(clock, symbols=("BTC/USDT",))

        await service.fetch_oversold_history()
        clock.now = now + timedelta(hours=3)
        fetch.return_value = []
        events = await service.fetch_oversold_history(refresh=True)
        assert old not in events
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_days_and_threshold_passed_through(self, monkeypatch):
        fetch = AsyncMock(return_value=[])
        monkeypatch.setattr(service_module, "fetch_oversold", fetch)
        service, _, _ = _make_service(FakeClock(CURRENT_OPEN), symbols=("BTC/USDT",))
        await service.fetch_oversold_history(days=5, threshold=25.0)
        _, symbol, days, period, threshold, since, _ = fetch.await_args.args
        assert (symbol, days, period, threshold, since) == ("BTC/USDT", 5, 14, 25.0, None)


# ── Breakouts ────────────────────────────────────────────────────────────


NOW = datetime(2025, 11, 5, 10, 0, tzinfo=timezone.utc)


def _range(day: date) -> SessionRange:
    open_time = datetime(day.year, day.month, day.day, 4, tzinfo=timezone.utc)
    return SessionRange(day, 100.0, 95.0, open_time, open_time + timedelta(hours=4) - MS)


def _signal(hours_ago: float, symbol: str = "BTC/USDT") -> BreakoutSignal:
    reentry = NOW - timedelta(hours=hours_ago)
    return BreakoutSignal(
        symbol=symbol,
        session_range=_range(date(2025, 11, 4)),
        breakout_time=reentry - timedelta(minutes=30),
        breakout_price=102.0,
        breakout_direction="long",
        reentry_time=reentry,
        reentry_price=98.0,
        entry_price=98.0,
        stop_loss=97.02,
        take_profit=99.96,
    )


def _pending(hours_ago: float, symbol: str = "BTC/USDT") -> PendingBreakout:
    return PendingBreakout(
        symbol=symbol,
        session_range=_range(date(2025, 11, 4)),
        breakout_time=NOW - timedelta(hours=hours_ago),
        breakout_price=101.0,
        direction="above",
        current_price=102.0,
    )


class TestBreakouts:
    @pytest.mark.asyncio
    async def test_pending_filtered_and_ordered(self, monkeypatch):
        sig = _signal(2)
        shadowed = PendingBreakout(
            "BTC/USDT", sig.session_range, sig.breakout_time, 102.0, "above"
        )
        detect = AsyncMock(
            return_value=BreakoutResult(
                signals=[_signal(5), sig],
                pending=[_pending(30), _pending(3), shadowed, _pending(1)],
            )
        )
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        service, _, _ = _make_service(FakeClock(NOW), symbols=("BTC/USDT",))

        result = await service.fetch_breakouts()

        assert [s.reentry_time for s in result.signals] == [
            NOW - timedelta(hours=2), NOW - timedelta(hours=5)
        ]
        assert [p.breakout_time for p in result.pending] == [
            NOW - timedelta(hours=1), NOW - timedelta(hours=3)
        ]
        assert service.last_refresh["breakouts"] == NOW

    @pytest.mark.asyncio
    async def test_cached_within_five_minutes(self, monkeypatch):
        detect = AsyncMock(return_value=BreakoutResult(signals=[_signal(0.05)]))
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        clock = FakeClock(NOW + timedelta(minutes=1))
        service, _, _ = _make_service(clock, symbols=("BTC/USDT",))

        await service.fetch_breakouts()
        clock.now = NOW + timedelta(minutes=4)
        await service.fetch_breakouts()
        assert detect.await_count == 1

        clock.now = NOW + timedelta(minutes=6)
        await service.fetch_breakouts()
        assert detect.await_count == 2
        assert detect.await_args.args[3] == _signal(0.05).reentry_time - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_cached_pending_signal_resolved(self, monkeypatch):
        open_signal = _signal(3)
        detect = AsyncMock(return_value=BreakoutResult(signals=[open_signal]))
        resolve = AsyncMock(side_effect=lambda client, signals, days: [
            s.resolved(LOSS, NOW) for s in signals
        ])
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        monkeypatch.setattr(service_module, "resolve_pending", resolve)
        clock = FakeClock(NOW)
        service, _, _ = _make_service(clock, symbols=("BTC/USDT",))

        first = await service.fetch_breakouts()
        assert first.signals[0].is_pending

        # Next scan no longer reports the signal; the cached copy gets resolved
        detect.return_value = BreakoutResult()
        clock.now = NOW + timedelta(hours=1)
        second = await service.fetch_breakouts()

        assert len(second.signals) == 1
        assert second.signals[0].result == LOSS
        resolve.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_incoming_replaces_cached_signal(self, monkeypatch):
        open_signal = _signal(3)
        detect = AsyncMock(return_value=BreakoutResult(signals=[open_signal]))
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        clock = FakeClock(NOW)
        service, _, _ = _make_service(clock, symbols=("BTC/USDT",))
        await service.fetch_breakouts()

        detect.return_value = BreakoutResult(signals=[open_signal.resolved(LOSS, NOW)])
        clock.now = NOW + timedelta(hours=1)
        result = await service.fetch_breakouts()
        assert [s.result for s in result.signals] == [LOSS]

    @pytest.mark.asyncio
    async def test_cached_pending_gets_live_price(self, monkeypatch):
        older = _pending(20, symbol="ETH/USDT")
        detect = AsyncMock(return_value=BreakoutResult(pending=[older]))
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        clock = FakeClock(NOW)
        service, client, _ = _make_service(clock, symbols=("ETH/USDT",))
        client.get_price = AsyncMock(return_value=150.0)

        first = await service.fetch_breakouts()
        assert first.pending[0].current_price == 102.0
        client.get_price.assert_not_awaited()

        # The next scan starts after the cached breakout and reports nothing for it
        detect.return_value = BreakoutResult()
        clock.now = NOW + timedelta(hours=1)
        second = await service.fetch_breakouts()

        assert [p.breakout_time for p in second.pending] == [older.breakout_time]
        assert second.pending[0].current_price == 150.0
        assert second.pending[0].distance_pct == pytest.approx(50.0)
        client.get_price.assert_awaited_once_with("ETH/USDT")

    @pytest.mark.asyncio
    async def test_price_from_scan_reused_per_symbol(self, monkeypatch):
        detect = AsyncMock(return_value=BreakoutResult(pending=[_pending(20)]))
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        clock = FakeClock(NOW)
        service, client, _ = _make_service(clock, symbols=("BTC/USDT",))
        client.get_price = AsyncMock(return_value=150.0)
        await service.fetch_breakouts()

        fresh = replace(_pending(1), current_price=110.0)
        detect.return_value = BreakoutResult(pending=[fresh])
        clock.now = NOW + timedelta(hours=1)
        result = await service.fetch_breakouts()

        assert [p.current_price for p in result.pending] == [110.0, 110.0]
        client.get_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_price_request_clears_stale_price(self, monkeypatch):
        detect = AsyncMock(return_value=BreakoutResult(pending=[_pending(20)]))
        monkeypatch.setattr(service_module, "detect_breakouts", detect)
        clock = FakeClock(NOW)
        service, client, _ = _make_service(clock, symbols=("BTC/USDT",))
        client.get_price = AsyncMock(side_effect=MarketDataError("server error", 500))
        await service.fetch_breakouts()

        detect.return_value = BreakoutResult()
        clock.now = NOW + timedelta(hours=1)
        result = await service.fetch_breakouts()

        assert result.pending[0].current_price is None
        assert result.pending[0].distance_pct is None


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_json_ready_output(self, monkeypatch):
        monkeypatch.setattr(service_module, "fetch_oversold", AsyncMock(return_value=[]))
        monkeypatch.setattr(
            service_module, "detect_breakouts", AsyncMock(return_value=BreakoutResult())
        )
        service, _, _ = _make_service(
            FakeClock(CURRENT_OPEN + timedelta(minutes=20)), symbols=("BTC/USDT",)
        )
        out = await service.refresh_all()
        assert set(out) == {"rsi", "oversold", "breakouts"}
        assert out["rsi"][0]["symbol"] == "BTC/USDT"
        assert out["breakouts"] == {"signals": [], "pending": []}
