# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Date windows for dashboards and scheduled reports.

Dashboard periods are trailing windows ending at "now". Report windows
are whole calendar days in the scheduler timezone, converted to UTC:

- daily: yesterday 00:00:00 to 23:59:59.999999
- weekly: the seven full days ending yesterday
- monthly: the previous calendar month
"""

from datetime import datetime, timedelta, timezone, tzinfo

from fitpulse.domains.analytics.exceptions import InvalidPeriodError
from fitpulse.domains.analytics.schemas import DateRange
from fitpulse.utils.datetime import ensure_utc, utc_now

DEFAULT_PERIOD = "30d"

PERIOD_DAYS: dict[str, int] = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
}

_LAST_MICROSECOND = timedelta(microseconds=1)


def parse_period(
    period: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> DateRange:
    """Resolve a dashboard period into a date range.

    Explicit ``start``/``end`` win over the shorthand. When only ``start``
    is given the window runs to now.

    Args:
        period: One of 7d, 30d, 90d, 1y. Defaults to 30d.
        start: Explicit window start.
        end: Explicit window end.
        now: Reference time.

    Returns:
        The resolved DateRange.

    Raises:
        InvalidPeriodError: For an unknown shorthand, a lone ``end`` or
            an inverted window.
    """
    now = ensure_utc(now) or utc_now()

    if start is not None:
        return DateRange(start=start, end=end if end is not None else now)
    if end is not None:
        raise InvalidPeriodError("An explicit end requires a start")

    period = period or DEFAULT_PERIOD
    days = PERIOD_DAYS.get(period)
    if days is None:
        allowed = ", ".join(PERIOD_DAYS)
        raise InvalidPeriodError(f"Unknown period {period!r}; expected one of {allowed}")
    return DateRange(start=now - timedelta(days=days), end=now)


def _local_midnight(now: datetime, tz: tzinfo) -> datetime:
    local = now.astimezone(tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def _to_utc(local: datetime, tz: tzinfo) -> datetime:
    # Rebuild from wall-clock fields so DST offsets are re-resolved
    naive = local.replace(tzinfo=None)
    return naive.replace(tzinfo=tz).astimezone(timezone.utc)


def daily_window(now: datetime, tz: tzinfo = timezone.utc) -> DateRange:
    """Yesterday as a full local day."""
    today = _local_midnight(now, tz)
    yesterday = today - timedelta(days=1)
    return DateRange(
        start=_to_utc(yesterday, tz),
        end=_to_utc(today, tz) - _LAST_MICROSECOND,
    )


def weekly_window(now: datetime, tz: tzinfo = timezone.utc) -> DateRange:
    """The seven full local days ending yesterday."""
    today = _local_midnight(now, tz)
    return DateRange(
        start=_to_utc(today - timedelta(days=7), tz),
        end=_to_utc(today, tz) - _LAST_MICROSECOND,
    )


def monthly_window(now: datetime, tz: tzinfo = timezone.utc) -> DateRange:
    """The previous local calendar month."""
    first_of_month = _local_midnight(now, tz).replace(day=1)
    first_of_previous = (first_of_month - timedelta(days=1)).replace(day=1)
    return DateRange(
        start=_to_utc(first_of_previous, tz),
        end=_to_utc(first_of_month, tz) - _LAST_MICROSECOND,
    )
