from datetime import datetime, timezone

import pytest

from cadence.sync.time_windows import (
    UnknownTimeWindowError,
    format_date_iso,
    get_time_range,
    get_time_window_label,
    get_time_window_short_label,
    sort_windows,
)

# Wednesday, 2024-05-15 13:45 UTC
NOW = datetime(2024, 5, 15, 13, 45, tzinfo=timezone.utc)


class TestGetTimeRange:
    def test_day_starts_at_midnight(self):
        r = get_time_range("day", NOW)
        assert r.start == datetime(2024, 5, 15, tzinfo=timezone.utc)
        assert r.end == NOW

    def test_week_starts_monday(self):
        r = get_time_range("week", NOW)
        assert r.start == datetime(2024, 5, 13, tzinfo=timezone.utc)
        assert r.start.weekday() == 0

    def test_week_on_monday_is_same_day(self):
        monday = datetime(2024, 5, 13, 9, 0, tzinfo=timezone.utc)
        assert get_time_range("week", monday).start == datetime(2024, 5, 13, tzinfo=timezone.utc)

    def test_mtd(self):
        assert get_time_range("mtd", NOW).start == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_qtd_second_quarter(self):
        assert get_time_range("qtd", NOW).start == datetime(2024, 4, 1, tzinfo=timezone.utc)

    def test_qtd_in_first_month_of_quarter(self):
        jan = datetime(2024, 1, 20, tzinfo=timezone.utc)
        assert get_time_range("qtd", jan).start == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_ytd(self):
        assert get_time_range("ytd", NOW).start == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_trailing_windows_start_at_midnight(self):
        assert get_time_range("trailing_7", NOW).start == datetime(2024, 5, 8, tzinfo=timezone.utc)
        assert get_time_range("trailing_30", NOW).start == datetime(2024, 4, 15, tzinfo=timezone.utc)
        assert get_time_range("trailing_90", NOW).start == datetime(2024, 2, 15, tzinfo=timezone.utc)

    def test_start_never_after_end(self):
        for window in ["day", "week", "mtd", "qtd", "ytd", "trailing_7", "trailing_30", "trailing_90"]:
            r = get_time_range(window, NOW)
            assert r.start <= r.end

    def test_unknown_window_raises(self):
        with pytest.raises(UnknownTimeWindowError):
            get_time_range("fortnight", NOW)


def test_labels():
    assert get_time_window_label("mtd") == "Month to Date"
    assert get_time_window_short_label("trailing_30") == "30D"


def test_sort_windows_uses_display_order():
    assert sort_windows(["trailing_30", "day", "qtd", "week"]) == ["day", "week", "qtd", "trailing_30"]


def test_format_date_iso():
    assert format_date_iso(NOW) == "2024-05-15"
