"""Cadence: Time Windows.

Maps a symbolic window (``mtd``, ``trailing_30``...) to a concrete
``[start, end)`` range anchored at "now". Pure, no I/O.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, NamedTuple, Optional

from cadence.core.clock import utcnow


class TimeWindow(str, Enum):
    DAY = "day"
    WEEK = "week"
    MTD = "mtd"
    QTD = "qtd"
    YTD = "ytd"
    TRAILING_7 = "trailing_7"
    TRAILING_30 = "trailing_30"
    TRAILING_90 = "trailing_90"


class UnknownTimeWindowError(ValueError):
    """Raised for a window name that is not a ``TimeWindow``."""


class TimeRange(NamedTuple):
    start: datetime
    end: datetime


WINDOW_ORDER: List[str] = [w.value for w in TimeWindow]

_LABELS = {
    "day": "Today",
    "week": "This Week",
    "mtd": "Month to Date",
    "qtd": "Quarter to Date",
    "ytd": "Year to Date",
    "trailing_7": "Last 7 Days",
    "trailing_30": "Last 30 Days",
    "trailing_90": "Last 90 Days",
}

_SHORT_LABELS = {
    "day": "D",
    "week": "W",
    "mtd": "M",
    "qtd": "Q",
    "ytd": "YTD",
    "trailing_7": "7D",
    "trailing_30": "30D",
    "trailing_90": "90D",
}

_TRAILING_DAYS = {"trailing_7": 7, "trailing_30": 30, "trailing_90": 90}


def _start_of_day(d: datetime) -> datetime:
    return d.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_window(window: str) -> TimeWindow:
    """Return the ``TimeWindow`` for ``window`` or raise ``UnknownTimeWindowError``."""
    try:
        return TimeWindow(window)
    except ValueError:
        raise UnknownTimeWindowError(f"Unknown time window: {window}") from None


def get_time_range(window: str, now: Optional[datetime] = None) -> TimeRange:
    """Resolve ``window`` to a ``TimeRange`` ending at ``now``.

    Weeks start on Monday; trailing windows start at midnight N days ago.
    """
    w = parse_window(window)
    end = now or utcnow()
    midnight = _start_of_day(end)

    if w is TimeWindow.DAY:
        start = midnight
    elif w is TimeWindow.WEEK:
        start = midnight - timedelta(days=midnight.weekday())
    elif w is TimeWindow.MTD:
        start = midnight.replace(day=1)
    elif w is TimeWindow.QTD:
        quarter_month = (midnight.month - 1) // 3 * 3 + 1
        start = midnight.replace(month=quarter_month, day=1)
    elif w is TimeWindow.YTD:
        start = midnight.replace(month=1, day=1)
    else:
        start = midnight - timedelta(days=_TRAILING_DAYS[w.value])

    return TimeRange(start=start, end=end)


def format_date_iso(d: datetime) -> str:
    """YYYY-MM-DD."""
    return d.date().isoformat()


def get_time_window_label(window: str) -> str:
    return _LABELS[parse_window(window).value]


def get_time_window_short_label(window: str) -> str:
    """Compact label for table headers, e.g. ``30D``."""
    return _SHORT_LABELS[parse_window(window).value]


def sort_windows(windows: Iterable[str]) -> List[str]:
    """Sort windows by the standard display order."""
    return sorted(windows, key=lambda w: WINDOW_ORDER.index(parse_window(w).value))
