"""Session clock — daily range window in a fixed UTC offset. Pure functions, no I/O.

The session clock runs at a fixed offset from UTC (UTC+7 by default) with
no daylight-saving rules.  The range candle of a session day opens at
``start_hour`` local time and spans ``range_hours``; with the defaults that
is 11:00-15:00 local, i.e. the 04:00-08:00 UTC four-hour candle.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

from signalcheck.analytics.models import SessionRange
from signalcheck.exchange.models import Candle

# Binance stamps close_time as the interval end minus one millisecond.
_CLOSE_TOLERANCE = timedelta(seconds=1)


def session_tz(utc_offset_hours: int = 7) -> timezone:
    return timezone(timedelta(hours=utc_offset_hours))


def session_date(dt: datetime, utc_offset_hours: int = 7) -> date:
    """Session-local calendar day of an aware datetime."""
    return dt.astimezone(session_tz(utc_offset_hours)).date()


def window_start(
    day: date, utc_offset_hours: int = 7, start_hour: int = 11
) -> datetime:
    """UTC instant at which the range window of session day *day* opens."""
    local = datetime(day.year, day.month, day.day, start_hour, tzinfo=session_tz(utc_offset_hours))
    return local.astimezone(timezone.utc)


def lookback_start(
    now: datetime, days: int, utc_offset_hours: int = 7, start_hour: int = 11
) -> datetime:
    """Window start of the session day ``days - 1`` days before today."""
    today = session_date(now, utc_offset_hours)
    return window_start(today, utc_offset_hours, start_hour) - timedelta(days=days - 1)


def is_range_candle(
    candle: Candle,
    utc_offset_hours: int = 7,
    start_hour: int = 11,
    range_hours: int = 4,
) -> bool:
    """True when *candle* covers exactly one session's range window."""
    local_open = candle.open_time.astimezone(session_tz(utc_offset_hours))
    if (local_open.hour, local_open.minute, local_open.second) != (start_hour, 0, 0):
        return False
    window_end = candle.open_time + timedelta(hours=range_hours)
    return window_end - _CLOSE_TOLERANCE <= candle.close_time <= window_end


def find_session_ranges(
    candles: Iterable[Candle],
    start: datetime,
    now: datetime,
    utc_offset_hours: int = 7,
    start_hour: int = 11,
    range_hours: int = 4,
) -> list[SessionRange]:
    """Build one ``SessionRange`` per session day from range-window candles.

    Only candles closing within ``[start, now]`` count, which also drops
    today's range while it is still forming.  When two candles claim the
    same day the one with the wider high-low spread wins.

    Returns ranges sorted ascending by close time.
    """
    ranges: dict[date, SessionRange] = {}
    for candle in candles:
        if not is_range_candle(candle, utc_offset_hours, start_hour, range_hours):
            continue
        if candle.close_time < start or candle.close_time > now:
            continue

        day = session_date(candle.close_time, utc_offset_hours)
        candidate = SessionRange(
            date=day,
            high=candle.high,
            low=candle.low,
            open_time=candle.open_time,
            close_time=candle.close_time,
        )
        existing = ranges.get(day)
        if existing is None or candidate.width > existing.width:
            ranges[day] = candidate

    return sorted(ranges.values(), key=lambda r: r.close_time)


def detection_window_end(session_range: SessionRange) -> datetime:
    """The next session's range opens here; detection stops strictly before."""
    return session_range.open_time + timedelta(days=1)


def in_detection_window(candle: Candle, session_range: SessionRange) -> bool:
    return (
        session_range.close_time < candle.close_time < detection_window_end(session_range)
    )


def range_candle_limit(days: int, range_hours: int = 4) -> int:
    """Four-hour candles to request to cover *days* session days, with slack."""
    return min(-(-days * 24 // range_hours) + 10, 500)


def format_session_time(dt: Optional[datetime], utc_offset_hours: int = 7) -> str:
    """``MM/DD HH:MM`` in session-local time, for log and notification text."""
    if dt is None:
        return "N/A"
    return dt.astimezone(session_tz(utc_offset_hours)).strftime("%m/%d %H:%M")
