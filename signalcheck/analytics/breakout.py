"""Session-range breakout / re-entry detection.

Each session day is scanned independently on 5-minute candles, from the
close of its range candle until the next day's range opens:

    SCANNING_FOR_BREAKOUT ──close outside──▶ AWAITING_REENTRY
    AWAITING_REENTRY ──close inside──▶ POSITION_OPEN  (signal emitted)
    POSITION_OPEN ──SL / TP hit──▶ SCANNING_FOR_BREAKOUT  (signal closed)
    AWAITING_REENTRY ──window ends──▶ PENDING_WITHOUT_REENTRY

The state machine itself (:func:`step`) is pure; :func:`detect_breakouts`
does the fetching around it.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, NamedTuple, Optional

from signalcheck.analytics.models import (
    LONG,
    SHORT,
    BreakoutResult,
    BreakoutSignal,
    PendingBreakout,
    SessionRange,
)
from signalcheck.analytics.session import (
    detection_window_end,
    find_session_ranges,
    format_session_time,
    in_detection_window,
    lookback_start,
    range_candle_limit,
)
from signalcheck.config import Config
from signalcheck.errors import FatalAccessError, MarketDataError
from signalcheck.exchange.binance_client import BinanceClient
from signalcheck.exchange.models import Candle
from signalcheck.risk.sl_tp import calculate_breakout_risk, check_exit, resolve_outcome

logger = logging.getLogger("signalcheck.breakout")

ABOVE = "above"
BELOW = "below"

SCAN_INTERVAL = "5m"
CANDLES_PER_DAY = 288  # 5-minute candles
_DAY_SCAN_CANDLES = 300  # range close to next range open, plus slack


class BreakoutPhase(str, Enum):
    SCANNING_FOR_BREAKOUT = "scanning_for_breakout"
    AWAITING_REENTRY = "awaiting_reentry"
    POSITION_OPEN = "position_open"
    PENDING_WITHOUT_REENTRY = "pending_without_reentry"


@dataclass(frozen=True)
class ScanState:
    """Immutable snapshot of one session day's scan."""

    symbol: str
    session_range: SessionRange
    phase: BreakoutPhase = BreakoutPhase.SCANNING_FOR_BREAKOUT
    breakout: Optional[Candle] = None
    breakout_side: Optional[str] = None  # "above" / "below"
    extreme_low: Optional[float] = None  # since the breakout candle
    extreme_high: Optional[float] = None
    position: Optional[BreakoutSignal] = None
    previous: Optional[Candle] = None
    max_risk_pct: float = 1.0
    rr_ratio: float = 2.0


class StepResult(NamedTuple):
    state: ScanState
    opened: Optional[BreakoutSignal] = None
    closed: Optional[BreakoutSignal] = None


def initial_state(
    symbol: str,
    session_range: SessionRange,
    max_risk_pct: float = 1.0,
    rr_ratio: float = 2.0,
) -> ScanState:
    return ScanState(
        symbol=symbol,
        session_range=session_range,
        max_risk_pct=max_risk_pct,
        rr_ratio=rr_ratio,
    )


def reentry_direction(
    candle: Candle,
    previous: Optional[Candle],
    session_range: SessionRange,
    breakout_price: float,
) -> str:
    """Trade direction of a re-entry, judged by the side it came from.

    Entering from below is long and entering from above is short.  The
    re-entry candle's own wick is checked first, then the previous candle,
    then the side of the original breakout.
    """
    high, low = session_range.high, session_range.low
    if candle.low < low:
        return LONG
    if candle.high > high:
        return SHORT
    if previous is not None:
        if previous.close < low or previous.low < low:
            return LONG
        if previous.close > high or previous.high > high:
            return SHORT
    return SHORT if breakout_price > high else LONG


def step(state: ScanState, candle: Candle) -> StepResult:
    """Advance the state machine by one candle.

    Callers feed candles in ascending close-time order.  Breakouts and
    re-entries only register inside the detection window; an open position
    keeps resolving after it.  The candle that closes a position is not
    re-examined for a new breakout.
    """
    rng = state.session_range

    if state.phase is BreakoutPhase.POSITION_OPEN:
        position = state.position
        outcome = check_exit(
            position.breakout_direction, position.stop_loss, position.take_profit, candle
        )
        if outcome is None:
            return StepResult(replace(state, previous=candle))
        closed = position.resolved(outcome, candle.close_time)
        logger.info(
            "[%s] position CLOSED (%s) at %s, now looking for next breakout",
            state.symbol, outcome.upper(), format_session_time(candle.close_time),
        )
        return StepResult(
            replace(
                state,
                phase=BreakoutPhase.SCANNING_FOR_BREAKOUT,
                position=None,
                previous=candle,
            ),
            closed=closed,
        )

    if state.phase is BreakoutPhase.PENDING_WITHOUT_REENTRY:
        return StepResult(state)

    if not in_detection_window(candle, rng):
        if (
            state.phase is BreakoutPhase.AWAITING_REENTRY
            and candle.close_time >= detection_window_end(rng)
        ):
            return StepResult(replace(state, phase=BreakoutPhase.PENDING_WITHOUT_REENTRY))
        return StepResult(replace(state, previous=candle))

    if state.phase is BreakoutPhase.SCANNING_FOR_BREAKOUT:
        if candle.close > rng.high or candle.close < rng.low:
            side = ABOVE if candle.close > rng.high else BELOW
            logger.debug(
                "[%s] first breakout %s range at %s: close=%.4f",
                state.symbol, side, format_session_time(candle.close_time), candle.close,
            )
            return StepResult(
                replace(
                    state,
                    phase=BreakoutPhase.AWAITING_REENTRY,
                    breakout=candle,
                    breakout_side=side,
                    extreme_low=candle.low,
                    extreme_high=candle.high,
                    previous=candle,
                )
            )
        return StepResult(replace(state, previous=candle))

    # AWAITING_REENTRY
    extreme_low = min(state.extreme_low, candle.low)
    extreme_high = max(state.extreme_high, candle.high)

    if not rng.contains(candle.close):
        # Further outside closes never move the original breakout.
        return StepResult(
            replace(state, extreme_low=extreme_low, extreme_high=extreme_high, previous=candle)
        )

    breakout = state.breakout
    direction = reentry_direction(candle, state.previous, rng, breakout.close)
    entry = candle.close
    extreme = extreme_low if direction == LONG else extreme_high
    levels = calculate_breakout_risk(
        entry, direction, extreme, state.max_risk_pct, state.rr_ratio
    )
    signal = BreakoutSignal(
        symbol=state.symbol,
        session_range=rng,
        breakout_time=breakout.close_time,
        breakout_price=breakout.close,
        breakout_direction=direction,
        reentry_time=candle.close_time,
        reentry_price=candle.close,
        entry_price=entry,
        stop_loss=levels.sl,
        take_profit=levels.tp,
    )
    logger.info(
        "[%s] re-entry %s at %s: entry=%.4f SL=%.4f TP=%.4f%s",
        state.symbol, direction.upper(), format_session_time(candle.close_time),
        entry, levels.sl, levels.tp, " (risk capped)" if levels.capped else "",
    )
    return StepResult(
        replace(
            state,
            phase=BreakoutPhase.POSITION_OPEN,
            breakout=None,
            breakout_side=None,
            extreme_low=None,
            extreme_high=None,
            position=signal,
            previous=candle,
        ),
        opened=signal,
    )


def pending_from_state(
    state: ScanState, current_price: Optional[float] = None
) -> Optional[PendingBreakout]:
    """A ``PendingBreakout`` when *state* still awaits re-entry, else ``None``."""
    if state.phase not in (
        BreakoutPhase.AWAITING_REENTRY,
        BreakoutPhase.PENDING_WITHOUT_REENTRY,
    ):
        return None
    return PendingBreakout(
        symbol=state.symbol,
        session_range=state.session_range,
        breakout_time=state.breakout.close_time,
        breakout_price=state.breakout.close,
        direction=state.breakout_side,
        current_price=current_price,
    )


def scan_session(
    symbol: str,
    session_range: SessionRange,
    candles: Iterable[Candle],
    max_risk_pct: float = 1.0,
    rr_ratio: float = 2.0,
    lookahead: timedelta = timedelta(days=7),
) -> tuple[list[BreakoutSignal], ScanState]:
    """Run one session day through the state machine.

    Candles past the detection window are consumed only while a position
    is open, and no further than *lookahead* after its re-entry.

    Returns the day's signals in emission order and the final state.
    """
    state = initial_state(symbol, session_range, max_risk_pct, rr_ratio)
    window_end = detection_window_end(session_range)
    signals: list[BreakoutSignal] = []

    for candle in sorted(candles, key=lambda c: c.close_time):
        if candle.close_time <= session_range.close_time:
            continue
        if candle.close_time >= window_end:
            if state.phase is BreakoutPhase.AWAITING_REENTRY:
                state = step(state, candle).state
                break
            if state.phase is not BreakoutPhase.POSITION_OPEN:
                break
            if candle.close_time > state.position.reentry_time + lookahead:
                break

        result = step(state, candle)
        state = result.state
        if result.opened is not None:
            signals.append(result.opened)
        if result.closed is not None:
            signals[-1] = result.closed

    return signals, state


async def current_price(client: BinanceClient, symbol: str) -> Optional[float]:
    """Latest price for *symbol*, or None when the ticker request fails."""
    try:
        return await client.get_price(symbol)
    except FatalAccessError:
        raise
    except MarketDataError as exc:
        logger.warning("[%s] could not fetch current price: %s", symbol, exc)
        return None


async def resolve_pending(
    client: BinanceClient,
    signals: list[BreakoutSignal],
    lookahead_days: int = 7,
) -> list[BreakoutSignal]:
    """Resolve still-pending signals against candles after their re-entry.

    Fetches up to *lookahead_days* of 5-minute candles starting at each
    pending signal's re-entry.  Terminal signals pass through untouched.
    """
    resolved: list[BreakoutSignal] = []
    for signal in signals:
        if not signal.is_pending:
            resolved.append(signal)
            continue
        candles = await client.get_candles_since(
            signal.symbol,
            SCAN_INTERVAL,
            signal.reentry_time,
            max_candles=lookahead_days * CANDLES_PER_DAY,
        )
        until = signal.reentry_time + timedelta(days=lookahead_days)
        resolved.append(resolve_outcome(signal, candles, until))
    return resolved


async def detect_breakouts(
    client: BinanceClient,
    symbol: str,
    config: Config,
    since: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> BreakoutResult:
    """Detect breakout/re-entry signals for *symbol* over recent session days.

    Args:
        client: Market data source.
        symbol: e.g. ``"BTC/USDT"``.
        config: Supplies the session clock, lookback and risk settings.
        since: Incremental start; ranges whose detection window ended
            before it are skipped.
        now: Current time (defaults to the wall clock).

    Returns:
        ``BreakoutResult`` with signals sorted by breakout time and the
        breakouts still awaiting re-entry.
    """
    now = now or datetime.now(timezone.utc)
    offset = config.session_utc_offset_hours
    start = lookback_start(now, config.breakout_days, offset, config.session_start_hour)

    range_candles = await client.get_candles(
        symbol,
        f"{config.session_range_hours}h",
        range_candle_limit(config.breakout_days, config.session_range_hours),
    )
    ranges = find_session_ranges(
        range_candles,
        start,
        now,
        offset,
        config.session_start_hour,
        config.session_range_hours,
    )
    if since is not None:
        ranges = [r for r in ranges if detection_window_end(r) > since]
    logger.info("[%s] found %d daily ranges since %s", symbol, len(ranges), start.isoformat())

    result = BreakoutResult()
    lookahead = timedelta(days=config.lookahead_days)

    for rng in ranges:
        candles = await client.get_candles_since(
            symbol, SCAN_INTERVAL, rng.close_time, max_candles=_DAY_SCAN_CANDLES
        )
        if not candles:
            logger.info("[%s] no 5m candles after range %s", symbol, rng.date.isoformat())
            continue

        signals, state = scan_session(
            symbol, rng, candles, config.max_risk_pct, config.rr_ratio, lookahead
        )
        result.signals.extend(signals)

        if pending_from_state(state) is not None:
            price = await current_price(client, symbol)
            pending = pending_from_state(state, price)
            logger.info(
                "[%s] breakout without re-entry at %s (%.4f)",
                symbol, format_session_time(pending.breakout_time, offset),
                pending.breakout_price,
            )
            result.pending.append(pending)

    if any(s.is_pending for s in result.signals):
        result.signals = await resolve_pending(
            client, result.signals, config.lookahead_days
        )

    result.signals.sort(key=lambda s: s.breakout_time)
    still_pending = sum(1 for s in result.signals if s.is_pending)
    logger.info(
        "[%s] %d signals (%d still pending), %d breakouts without re-entry",
        symbol, len(result.signals), still_pending, len(result.pending),
    )
    return result
