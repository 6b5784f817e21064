# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for dashboard periods and report windows."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from fitpulse.domains.analytics.exceptions import InvalidPeriodError
from fitpulse.domains.analytics.periods import (
    daily_window,
    monthly_window,
    parse_period,
    weekly_window,
)

NOW = datetime(2025, 3, 15, 10, 30, tzinfo=timezone.utc)
LAST = timedelta(microseconds=1)


class TestParsePeriod:
    """Tests for parse_period."""

    @pytest.mark.parametrize(
        "period,days",
        [("7d", 7), ("30d", 30), ("90d", 90), ("1y", 365)],
    )
    def test_shorthands(self, period: str, days: int) -> None:
        """Test the trailing window for each shorthand."""
        window = parse_period(period, now=NOW)

        assert window.start == NOW - timedelta(days=days)
        assert window.end == NOW

    def test_defaults_to_thirty_days(self) -> None:
        """Test that no period means 30 days."""
        window = parse_period(now=NOW)

        assert window.start == NOW - timedelta(days=30)

    def test_explicit_bounds_win(self) -> None:
        """Test that start and end override the shorthand."""
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        end = datetime(2025, 1, 31, tzinfo=timezone.utc)

        window = parse_period("7d", start=start, end=end, now=NOW)

        assert window.start == start
        assert window.end == end

    def test_start_only_runs_to_now(self) -> None:
        """Test that a lone start ends at the reference time."""
        start = datetime(2025, 3, 1, tzinfo=timezone.utc)

        window = parse_period(start=start, now=NOW)

        assert window.end == NOW

    def test_unknown_period(self) -> None:
        """Test that an unknown shorthand is rejected."""
        with pytest.raises(InvalidPeriodError) as exc_info:
            parse_period("2w", now=NOW)

        assert "7d" in str(exc_info.value)

    def test_end_without_start(self) -> None:
        """Test that an end with no start is rejected."""
        with pytest.raises(InvalidPeriodError):
            parse_period(end=NOW, now=NOW)

    def test_inverted_window(self) -> None:
        """Test that start after end is rejected."""
        with pytest.raises(InvalidPeriodError):
            parse_period(start=NOW, end=NOW - timedelta(days=1), now=NOW)


class TestReportWindows:
    """Tests for scheduled report windows."""

    def test_daily_window_is_yesterday(self) -> None:
        """Test the daily window in UTC."""
        window = daily_window(NOW)

        assert window.start == datetime(2025, 3, 14, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 3, 15, tzinfo=timezone.utc) - LAST

    def test_weekly_window_ends_yesterday(self) -> None:
        """Test the seven full days before today."""
        window = weekly_window(NOW)

        assert window.start == datetime(2025, 3, 8, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 3, 15, tzinfo=timezone.utc) - LAST

    def test_monthly_window_is_previous_month(self) -> None:
        """Test the previous calendar month, including February."""
        window = monthly_window(NOW)

        assert window.start == datetime(2025, 2, 1, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 3, 1, tzinfo=timezone.utc) - LAST

    def test_monthly_window_in_january(self) -> None:
        """Test that January reports cover the previous December."""
        window = monthly_window(datetime(2025, 1, 1, 4, 0, tzinfo=timezone.utc))

        assert window.start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 1, 1, tzinfo=timezone.utc) - LAST

    def test_daily_window_in_local_timezone(self) -> None:
        """Test that local midnights are converted to UTC."""
        tz = ZoneInfo("America/New_York")
        # 03:00 UTC on the 15th is still the 14th in New York
        window = daily_window(datetime(2025, 1, 15, 3, 0, tzinfo=timezone.utc), tz)

        assert window.start == datetime(2025, 1, 13, 5, 0, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 1, 14, 5, 0, tzinfo=timezone.utc) - LAST

    def test_daily_window_across_dst_change(self) -> None:
        """Test that the day of the spring-forward change is 23 hours long."""
        tz = ZoneInfo("America/New_York")
        window = daily_window(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc), tz)

        assert window.start == datetime(2025, 3, 9, 5, 0, tzinfo=timezone.utc)
        assert window.end == datetime(2025, 3, 10, 4, 0, tzinfo=timezone.utc) - LAST
