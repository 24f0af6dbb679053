"""signalcheck — breakout notification payloads.

Diffs successive breakout results and formats alert payloads for the
notification collaborator.  Nothing here delivers an alert.
"""

import logging
from typing import Callable, Union

from signalcheck.analytics.models import LONG, BreakoutResult, BreakoutSignal, PendingBreakout
from signalcheck.analytics.session import format_session_time
from signalcheck.exchange.models import to_millis

logger = logging.getLogger("signalcheck.notify")

Alertable = Union[BreakoutSignal, PendingBreakout]
Listener = Callable[[Alertable, dict], None]


def _symbol_name(symbol: str) -> str:
    return symbol.split("/")[0]


def item_key(item: Alertable) -> tuple:
    if isinstance(item, BreakoutSignal):
        return ("signal", item.symbol, item.reentry_time, item.breakout_time)
    return ("pending", item.symbol, item.breakout_time, item.session_range.date)


def format_notification(item: Alertable, utc_offset_hours: int = 7) -> dict:
    """Build ``{title, body, tag, data}`` for a signal or pending breakout."""
    name = _symbol_name(item.symbol)
    breakout_at = format_session_time(item.breakout_time, utc_offset_hours)
    tag = f"breakout-{name}-{to_millis(item.breakout_time)}"

    if isinstance(item, BreakoutSignal):
        direction = item.breakout_direction
        return {
            "title": f"{name} Breakout & Re-entry",
            "body": (
                f"{'LONG' if direction == LONG else 'SHORT'} signal detected\n"
                f"Breakout: {breakout_at}\n"
                f"Re-entry: {format_session_time(item.reentry_time, utc_offset_hours)}"
            ),
            "tag": tag,
            "data": {"symbol": item.symbol, "type": "breakout-reentry", "direction": direction},
        }

    direction = item.implied_direction
    return {
        "title": f"{name} Breakout Detected",
        "body": (
            f"{'LONG' if direction == LONG else 'SHORT'} breakout at {breakout_at}\n"
            "Waiting for re-entry..."
        ),
        "tag": tag,
        "data": {"symbol": item.symbol, "type": "breakout-only", "direction": direction},
    }


class SignalNotifier:
    """Remembers what the previous refresh held and reports only new items.

    Args:
        notify_initial: When False, the first diff only records a baseline
            so a restart does not replay every cached signal.
        utc_offset_hours: Session clock used in notification text.
    """

    def __init__(self, notify_initial: bool = False, utc_offset_hours: int = 7) -> None:
        self._notify_initial = notify_initial
        self._utc_offset_hours = utc_offset_hours
        self._seen: set[tuple] = set()
        self._seeded: bool = False
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def diff(self, result: BreakoutResult) -> list[Alertable]:
        """Return items in *result* not present in the previous refresh.

        Each new item is passed with its formatted payload to every
        registered listener.  A failing listener is logged and skipped.
        """
        items: list[Alertable] = [*result.signals, *result.pending]
        current = {item_key(i): i for i in items}

        if not self._seeded and not self._notify_initial:
            new: list[Alertable] = []
        else:
            new = [item for key, item in current.items() if key not in self._seen]
        self._seen = set(current)
        self._seeded = True

        for item in new:
            payload = format_notification(item, self._utc_offset_hours)
            logger.info("New alert: %s", payload["title"])
            for listener in self._listeners:
                try:
                    listener(item, payload)
                except Exception as exc:
                    logger.error("Notification listener failed for %s: %s", payload["tag"], exc)
        return new
