"""Technical indicators — RSI and its moving average. Pure functions, no I/O."""

from typing import Optional, Sequence

from signalcheck.errors import InsufficientDataError


# ── RSI ──────────────────────────────────────────────────────────────────


def _rsi_from_avgs(avg_gain: float, avg_loss: float) -> float:
    # A flat loss side yields RS = 0, matching the reference charting tool.
    rs = avg_gain / avg_loss if avg_loss != 0 else 0.0
    return 100.0 - 100.0 / (1.0 + rs)


def calculate_rsi(closes: Sequence[float], period: int = 14) -> list[Optional[float]]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = SMA of first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RS = avg_gain / avg_loss  (0 when avg_loss is 0)
        6. RSI = 100 - 100 / (1 + RS)

    Requires at least ``period + 1`` closes.

    Returns a list the same length as *closes*.  The first *period*
    entries are ``None``.

    Raises ``InsufficientDataError`` if insufficient data.
    """
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")
    if len(closes) < period + 1:
        raise InsufficientDataError(
            f"Need at least {period + 1} prices for RSI({period}), "
            f"got {len(closes)}"
        )

    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    rsi: list[Optional[float]] = [None] * len(closes)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    rsi[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        # Index in rsi is i+1 because deltas are offset by 1
        rsi[i + 1] = _rsi_from_avgs(avg_gain, avg_loss)

    return rsi


def calculate_rsi_ma(
    rsi_series: Sequence[Optional[float]], ma_period: int = 14
) -> list[Optional[float]]:
    """Simple moving average of an RSI series.

    For each index ``i >= ma_period`` the value is the mean of the non-null
    RSI values in the trailing window ``[i - ma_period + 1, i]``; ``None``
    when that window holds no values.  The first *ma_period* entries are
    always ``None``.
    """
    if ma_period < 1:
        raise ValueError(f"ma_period must be >= 1, got {ma_period}")

    ma: list[Optional[float]] = [None] * min(ma_period, len(rsi_series))
    for i in range(ma_period, len(rsi_series)):
        window = [v for v in rsi_series[i - ma_period + 1 : i + 1] if v is not None]
        ma.append(sum(window) / len(window) if window else None)
    return ma
