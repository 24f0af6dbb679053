"""Analytics data models — typed representations of derived outputs.

Every model round-trips through ``to_dict`` / ``from_dict`` so it can be
persisted in the JSON cache and served to the UI.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional

from signalcheck.exchange.models import format_time, parse_time

LONG = "long"
SHORT = "short"

PENDING = "pending"
WIN = "win"
LOSS = "loss"


def _diff(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None or b is None:
        return None
    return a - b


@dataclass(frozen=True)
class RSIReading:
    """Latest and previous RSI snapshot for one symbol."""

    symbol: str
    timestamp: datetime
    price: float
    rsi: Optional[float]
    rsi_ma: Optional[float]
    previous_timestamp: Optional[datetime] = None
    previous_price: Optional[float] = None
    previous_rsi: Optional[float] = None
    previous_rsi_ma: Optional[float] = None
    data_points: int = 0
    stale: bool = False

    @property
    def change(self) -> Optional[float]:
        return _diff(self.rsi, self.previous_rsi)

    @property
    def change_ma(self) -> Optional[float]:
        return _diff(self.rsi_ma, self.previous_rsi_ma)

    @property
    def price_change(self) -> Optional[float]:
        return _diff(self.price, self.previous_price)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timestamp": format_time(self.timestamp),
            "price": self.price,
            "rsi": self.rsi,
            "rsi_ma": self.rsi_ma,
            "previous_timestamp": format_time(self.previous_timestamp),
            "previous_price": self.previous_price,
            "previous_rsi": self.previous_rsi,
            "previous_rsi_ma": self.previous_rsi_ma,
            "change": self.change,
            "change_ma": self.change_ma,
            "price_change": self.price_change,
            "data_points": self.data_points,
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RSIReading":
        return cls(
            symbol=d["symbol"],
            timestamp=parse_time(d["timestamp"]),
            price=d["price"],
            rsi=d.get("rsi"),
            rsi_ma=d.get("rsi_ma"),
            previous_timestamp=parse_time(d.get("previous_timestamp")),
            previous_price=d.get("previous_price"),
            previous_rsi=d.get("previous_rsi"),
            previous_rsi_ma=d.get("previous_rsi_ma"),
            data_points=d.get("data_points", 0),
            stale=d.get("stale", False),
        )


@dataclass(frozen=True)
class OversoldEvent:
    """A historical sample where RSI fell to or below the threshold."""

    symbol: str
    timestamp: datetime
    rsi: float
    price: float

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timestamp": format_time(self.timestamp),
            "rsi": self.rsi,
            "price": self.price,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "OversoldEvent":
        return cls(
            symbol=d["symbol"],
            timestamp=parse_time(d["timestamp"]),
            rsi=d["rsi"],
            price=d["price"],
        )


@dataclass(frozen=True)
class SessionRange:
    """High/low of the daily detection window for one symbol."""

    date: date  # session-local calendar day
    high: float
    low: float
    open_time: datetime
    close_time: datetime

    @property
    def width(self) -> float:
        return self.high - self.low

    def contains(self, price: float) -> bool:
        return self.low <= price <= self.high

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "high": self.high,
            "low": self.low,
            "open_time": format_time(self.open_time),
            "close_time": format_time(self.close_time),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SessionRange":
        return cls(
            date=date.fromisoformat(d["date"]),
            high=d["high"],
            low=d["low"],
            open_time=parse_time(d["open_time"]),
            close_time=parse_time(d["close_time"]),
        )


@dataclass(frozen=True)
class BreakoutSignal:
    """A breakout followed by a re-entry, with its risk levels.

    ``result`` moves from ``pending`` to ``win`` or ``loss`` exactly once;
    use :meth:`resolved` to obtain the terminal copy.
    """

    symbol: str
    session_range: SessionRange
    breakout_time: datetime
    breakout_price: float
    breakout_direction: str  # trade direction: "long" or "short"
    reentry_time: datetime
    reentry_price: float
    entry_price: float
    stop_loss: float
    take_profit: float
    result: str = PENDING
    resolved_time: Optional[datetime] = None

    @property
    def risk(self) -> float:
        return abs(self.entry_price - self.stop_loss)

    @property
    def is_pending(self) -> bool:
        return self.result == PENDING

    def resolved(self, result: str, at: Optional[datetime] = None) -> "BreakoutSignal":
        """Return a copy transitioned to a terminal *result*.

        Raises ``ValueError`` if the signal is already terminal or *result*
        is not ``win``/``loss``.
        """
        if result not in (WIN, LOSS):
            raise ValueError(f"result must be 'win' or 'loss', got '{result}'")
        if not self.is_pending:
            raise ValueError(
                f"{self.symbol} signal at {self.reentry_time} already resolved as {self.result}"
            )
        return replace(self, result=result, resolved_time=at)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "session_range": self.session_range.to_dict(),
            "breakout_time": format_time(self.breakout_time),
            "breakout_price": self.breakout_price,
            "breakout_direction": self.breakout_direction,
            "reentry_time": format_time(self.reentry_time),
            "reentry_price": self.reentry_price,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "result": self.result,
            "resolved_time": format_time(self.resolved_time),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "BreakoutSignal":
        return cls(
            symbol=d["symbol"],
            session_range=SessionRange.from_dict(d["session_range"]),
            breakout_time=parse_time(d["breakout_time"]),
            breakout_price=d["breakout_price"],
            breakout_direction=d["breakout_direction"],
            reentry_time=parse_time(d["reentry_time"]),
            reentry_price=d["reentry_price"],
            entry_price=d["entry_price"],
            stop_loss=d["stop_loss"],
            take_profit=d["take_profit"],
            result=d.get("result", PENDING),
            resolved_time=parse_time(d.get("resolved_time")),
        )


@dataclass(frozen=True)
class PendingBreakout:
    """A breakout still waiting for re-entry when the window ended."""

    symbol: str
    session_range: SessionRange
    breakout_time: datetime
    breakout_price: float
    direction: str  # side of the breakout: "above" or "below"
    current_price: Optional[float] = None

    @property
    def is_above(self) -> bool:
        return self.breakout_price > self.session_range.high

    @property
    def is_below(self) -> bool:
        return self.breakout_price < self.session_range.low

    @property
    def implied_direction(self) -> str:
        """Trade direction a re-entry would produce."""
        return SHORT if self.direction == "above" else LONG

    @property
    def distance_from_range(self) -> Optional[float]:
        """Distance of the live price outside the range (0 when inside)."""
        if self.current_price is None:
            return None
        if self.current_price > self.session_range.high:
            return self.current_price - self.session_range.high
        if self.current_price < self.session_range.low:
            return self.session_range.low - self.current_price
        return 0.0

    @property
    def distance_pct(self) -> Optional[float]:
        """Percent beyond the broken boundary, negative once back inside."""
        if not self.current_price:
            return None
        if self.direction == "above":
            high = self.session_range.high
            return (self.current_price - high) / high * 100.0
        low = self.session_range.low
        return (low - self.current_price) / low * 100.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "session_range": self.session_range.to_dict(),
            "breakout_time": format_time(self.breakout_time),
            "breakout_price": self.breakout_price,
            "direction": self.direction,
            "is_above": self.is_above,
            "is_below": self.is_below,
            "current_price": self.current_price,
            "distance_from_range": self.distance_from_range,
            "distance_pct": self.distance_pct,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PendingBreakout":
        return cls(
            symbol=d["symbol"],
            session_range=SessionRange.from_dict(d["session_range"]),
            breakout_time=parse_time(d["breakout_time"]),
            breakout_price=d["breakout_price"],
            direction=d["direction"],
            current_price=d.get("current_price"),
        )


@dataclass
class BreakoutResult:
    """Signals with re-entry plus breakouts still awaiting one."""

    signals: list[BreakoutSignal] = field(default_factory=list)
    pending: list[PendingBreakout] = field(default_factory=list)

    def extend(self, other: "BreakoutResult") -> None:
        self.signals.extend(other.signals)
        self.pending.extend(other.pending)

    def to_dict(self) -> dict:
        return {
            "signals": [s.to_dict() for s in self.signals],
            "pending": [p.to_dict() for p in self.pending],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "BreakoutResult":
        return cls(
            signals=[BreakoutSignal.from_dict(s) for s in d.get("signals", [])],
            pending=[PendingBreakout.from_dict(p) for p in d.get("pending", [])],
        )
