"""RSI readings — latest/previous oscillator snapshot per symbol."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from signalcheck.analytics.indicators import calculate_rsi, calculate_rsi_ma
from signalcheck.analytics.models import RSIReading
from signalcheck.errors import InsufficientDataError
from signalcheck.exchange.binance_client import BinanceClient
from signalcheck.exchange.models import Candle

logger = logging.getLogger("signalcheck.rsi")

RSI_INTERVAL = "1h"
RSI_CANDLE_LIMIT = 168  # one week of hourly candles
STALE_AFTER = timedelta(hours=2)


def build_rsi_reading(
    symbol: str,
    candles: Sequence[Candle],
    period: int = 14,
    ma_period: int = 14,
    now: Optional[datetime] = None,
) -> RSIReading:
    """Build the latest/previous RSI snapshot from a candle series.

    The latest and previous candles are located by position.  Should the
    previous candle close strictly after the latest one, the two slots are
    swapped so ``timestamp`` always holds the most recent close; this is
    logged, never raised.

    Raises ``InsufficientDataError`` when the series is too short for
    RSI(*period*).
    """
    if not candles:
        raise InsufficientDataError(f"No candles returned for {symbol}")

    closes = [c.close for c in candles]
    rsi_values = calculate_rsi(closes, period)
    rsi_ma = calculate_rsi_ma(rsi_values, ma_period)

    latest = candles[-1]
    previous = candles[-2]
    latest_rsi, previous_rsi = rsi_values[-1], rsi_values[-2]
    latest_ma, previous_ma = rsi_ma[-1], rsi_ma[-2]

    if previous.close_time > latest.close_time:
        logger.warning(
            "%s: timestamp order issue detected. Previous (%s) > Latest (%s). Swapping...",
            symbol, previous.close_time.isoformat(), latest.close_time.isoformat(),
        )
        latest, previous = previous, latest
        latest_rsi, previous_rsi = (
            previous_rsi if previous_rsi is not None else latest_rsi,
            latest_rsi,
        )
        latest_ma, previous_ma = (
            previous_ma if previous_ma is not None else latest_ma,
            latest_ma,
        )

    now = now or datetime.now(timezone.utc)
    age = now - latest.close_time
    stale = age > STALE_AFTER
    if stale:
        logger.warning(
            "%s: latest candle is %.1f hours old (close %s, now %s)",
            symbol, age.total_seconds() / 3600, latest.close_time.isoformat(),
            now.isoformat(),
        )

    return RSIReading(
        symbol=symbol,
        timestamp=latest.close_time,
        price=latest.close,
        rsi=latest_rsi,
        rsi_ma=latest_ma,
        previous_timestamp=previous.close_time,
        previous_price=previous.close,
        previous_rsi=previous_rsi,
        previous_rsi_ma=previous_ma,
        data_points=len(candles),
        stale=stale,
    )


async def fetch_rsi(
    client: BinanceClient,
    symbol: str,
    period: int = 14,
    ma_period: int = 14,
    now: Optional[datetime] = None,
) -> RSIReading:
    """Fetch a week of hourly candles for *symbol* and build its reading."""
    candles = await client.get_candles(symbol, RSI_INTERVAL, RSI_CANDLE_LIMIT)
    reading = build_rsi_reading(symbol, candles, period, ma_period, now)
    logger.debug(
        "[%s] RSI %.2f at %s", symbol, reading.rsi or 0.0, reading.timestamp.isoformat()
    )
    return reading
