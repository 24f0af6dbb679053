"""Oversold-event extraction from a historical hourly RSI series."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from signalcheck.analytics.indicators import calculate_rsi
from signalcheck.analytics.models import OversoldEvent
from signalcheck.exchange.binance_client import BinanceClient
from signalcheck.exchange.models import Candle

logger = logging.getLogger("signalcheck.oversold")

OVERSOLD_INTERVAL = "1h"
_WARMUP_PADDING = 50  # extra candles so Wilder smoothing has settled


def history_limit(days: int, period: int) -> int:
    """Number of hourly candles needed to cover *days* plus RSI warm-up."""
    return min(days * 24 + period + _WARMUP_PADDING, 1000)


def extract_oversold(
    symbol: str,
    candles: Sequence[Candle],
    period: int = 14,
    threshold: float = 30.0,
    days: int = 3,
    since: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> list[OversoldEvent]:
    """Emit one event per candle whose RSI is at or below *threshold*.

    Only candles closing within the last *days* (relative to *now*) are
    considered, and when *since* is given only those closing strictly after
    it.  RSI values are rounded to two decimals before the comparison.
    Events are returned newest first.
    """
    if not candles:
        return []

    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    rsi_values = calculate_rsi([c.close for c in candles], period)

    events: list[OversoldEvent] = []
    for candle, rsi in zip(candles[period:], rsi_values[period:]):
        if rsi is None or not 0.0 <= rsi <= 100.0:
            continue
        if candle.close_time < cutoff:
            continue
        if since is not None and candle.close_time <= since:
            continue
        rounded = round(rsi, 2)
        if rounded <= threshold:
            events.append(
                OversoldEvent(
                    symbol=symbol,
                    timestamp=candle.close_time,
                    rsi=rounded,
                    price=candle.close,
                )
            )

    return sort_events(events)


def sort_events(events: Iterable[OversoldEvent]) -> list[OversoldEvent]:
    """Deduplicate by ``(symbol, timestamp)`` and sort newest first.

    Later occurrences in *events* replace earlier ones.
    """
    unique: dict[tuple[str, datetime], OversoldEvent] = {}
    for event in events:
        unique[(event.symbol, event.timestamp)] = event
    return sorted(unique.values(), key=lambda e: e.timestamp, reverse=True)


async def fetch_oversold(
    client: BinanceClient,
    symbol: str,
    days: int = 3,
    period: int = 14,
    threshold: float = 30.0,
    since: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> list[OversoldEvent]:
    """Fetch enough hourly history for *symbol* and extract its events."""
    candles = await client.get_candles(
        symbol, OVERSOLD_INTERVAL, history_limit(days, period)
    )
    if not candles:
        logger.info("[%s] no hourly candles returned", symbol)
        return []
    events = extract_oversold(symbol, candles, period, threshold, days, since, now)
    logger.debug("[%s] %d oversold events", symbol, len(events))
    return events
