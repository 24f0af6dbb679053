"""Exchange data models — typed representations of Binance kline payloads."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def from_millis(ms: int | float | str) -> datetime:
    """Convert a Binance epoch-milliseconds value to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=int(ms))


def to_millis(dt: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def parse_time(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 string (as written by ``to_dict``) into a datetime."""
    if value is None or isinstance(value, datetime):
        return value
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    open_time: datetime
    close_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: float = 0.0
    trades: int = 0

    def __post_init__(self) -> None:
        if self.open_time >= self.close_time:
            raise ValueError(
                f"open_time must precede close_time, got {self.open_time} >= {self.close_time}"
            )

    @classmethod
    def from_kline(cls, kline: list) -> "Candle":
        """Build a candle from the fixed-width kline array.

        Layout: ``[openTime, open, high, low, close, volume, closeTime,
        quoteVolume, tradesCount, takerBuyBase, takerBuyQuote, ...]``.
        """
        return cls(
            open_time=from_millis(kline[0]),
            close_time=from_millis(kline[6]),
            open=float(kline[1]),
            high=float(kline[2]),
            low=float(kline[3]),
            close=float(kline[4]),
            volume=float(kline[5]),
            quote_volume=float(kline[7]) if len(kline) > 7 else 0.0,
            trades=int(kline[8]) if len(kline) > 8 else 0,
        )
