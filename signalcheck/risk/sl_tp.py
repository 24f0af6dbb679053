"""Stop-loss and take-profit calculation — pure math, no I/O.

Breakout re-entry approach:
    SL sits at the most adverse price seen between the breakout and the
    re-entry, unless that is further than ``max_risk_pct`` of entry, in
    which case the risk is capped at that percentage.
    TP is ``rr_ratio`` × risk from entry in the profit direction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from signalcheck.analytics.models import LONG, LOSS, SHORT, WIN, BreakoutSignal
from signalcheck.exchange.models import Candle

logger = logging.getLogger("signalcheck.risk")


@dataclass
class RiskLevels:
    """Computed stop-loss and take-profit for a trade."""
    sl: float
    tp: float
    risk: float
    capped: bool  # True when the extreme was further than the risk cap


def calculate_breakout_risk(
    entry_price: float,
    direction: str,
    extreme_price: float,
    max_risk_pct: float = 1.0,
    rr_ratio: float = 2.0,
) -> RiskLevels:
    """Calculate SL and TP for a re-entry trade.

    Args:
        entry_price: Re-entry close, used as the entry.
        direction: ``"long"`` or ``"short"``.
        extreme_price: Lowest low (long) or highest high (short) from the
            breakout candle through the re-entry candle inclusive.
        max_risk_pct: Risk cap as a percentage of entry (default 1.0).
        rr_ratio: Reward-to-risk ratio for the TP (default 2.0).

    Returns:
        ``RiskLevels`` with sl, tp, the risk distance, and whether the cap
        applied.

    Raises:
        ValueError: If *direction* is not ``"long"`` or ``"short"``.
    """
    if direction not in (LONG, SHORT):
        raise ValueError(f"direction must be 'long' or 'short', got '{direction}'")

    max_risk = entry_price * max_risk_pct / 100.0
    if direction == LONG:
        extreme_distance = entry_price - extreme_price
    else:
        extreme_distance = extreme_price - entry_price

    capped = extreme_distance > max_risk
    if capped:
        risk = max_risk
        sl = entry_price - risk if direction == LONG else entry_price + risk
    else:
        risk = extreme_distance
        sl = extreme_price

    if direction == LONG:
        tp = entry_price + rr_ratio * risk
    else:
        tp = entry_price - rr_ratio * risk

    return RiskLevels(sl=sl, tp=tp, risk=risk, capped=capped)


def check_exit(
    direction: str, stop_loss: float, take_profit: float, candle: Candle
) -> Optional[str]:
    """Return ``"loss"``, ``"win"`` or ``None`` for one candle.

    The stop is checked first, so a candle touching both levels is a loss.
    """
    if direction == LONG:
        if candle.low <= stop_loss:
            return LOSS
        if candle.high >= take_profit:
            return WIN
    elif direction == SHORT:
        if candle.high >= stop_loss:
            return LOSS
        if candle.low <= take_profit:
            return WIN
    else:
        raise ValueError(f"direction must be 'long' or 'short', got '{direction}'")
    return None


def resolve_outcome(
    signal: BreakoutSignal,
    candles: Iterable[Candle],
    until: Optional[datetime] = None,
) -> BreakoutSignal:
    """Walk *candles* after the re-entry and close *signal* on the first hit.

    Candles closing at or before the re-entry, or after *until*, are
    ignored.  Terminal signals are returned unchanged, as are signals no
    candle resolves.
    """
    if not signal.is_pending:
        return signal

    for candle in candles:
        if candle.close_time <= signal.reentry_time:
            continue
        if until is not None and candle.close_time > until:
            break
        outcome = check_exit(
            signal.breakout_direction, signal.stop_loss, signal.take_profit, candle
        )
        if outcome is not None:
            logger.info(
                "[%s] position closed (%s) at %s",
                signal.symbol, outcome.upper(), candle.close_time.isoformat(),
            )
            return signal.resolved(outcome, candle.close_time)
    return signal
