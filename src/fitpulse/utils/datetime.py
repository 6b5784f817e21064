# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for the FitPulse telemetry service.

Design Decisions:
-----------------
1. All timestamps are stored in UTC (PostgreSQL TIMESTAMPTZ)
2. All Python datetimes are timezone-aware (with timezone.utc)
3. Calendar arithmetic for report windows happens in the configured
   scheduler timezone and is converted back to UTC before it is stored

Usage:
------
    from fitpulse.utils.datetime import utc_now

    now = utc_now()
    timestamp: datetime = Field(default_factory=utc_now)
"""

from datetime import datetime, timedelta, timezone, tzinfo


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.

    Note:
        - If dt is None, returns None
        - If dt is naive, assumes UTC and adds tzinfo
        - If dt is aware, converts to UTC
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def minutes_ago(minutes: int, now: datetime | None = None) -> datetime:
    """Get a datetime N minutes before ``now`` (defaults to current time)."""
    return (now or utc_now()) - timedelta(minutes=minutes)


def hours_ago(hours: int, now: datetime | None = None) -> datetime:
    """Get a datetime N hours before ``now`` (defaults to current time)."""
    return (now or utc_now()) - timedelta(hours=hours)


def days_ago(days: int, now: datetime | None = None) -> datetime:
    """Get a datetime N days before ``now`` (defaults to current time)."""
    return (now or utc_now()) - timedelta(days=days)


def start_of_day(dt: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """Get local midnight of the day containing ``dt`` in ``tz``.

    Args:
        dt: Timezone-aware datetime.
        tz: Timezone whose calendar defines the day.

    Returns:
        Timezone-aware datetime in ``tz`` at 00:00:00.
    """
    local = dt.astimezone(tz)
    return datetime(local.year, local.month, local.day, tzinfo=tz)


def floor_to_hour(dt: datetime) -> datetime:
    """Truncate a datetime to the start of its hour in UTC."""
    return ensure_utc(dt).replace(minute=0, second=0, microsecond=0)  # type: ignore[union-attr]


def format_iso(dt: datetime | None) -> str | None:
    """Format a datetime as an ISO 8601 string in UTC, or None."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()  # type: ignore[union-attr]
