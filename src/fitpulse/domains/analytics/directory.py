# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Interfaces to collaborators outside the telemetry pipeline.

User accounts and billing live in other services. The aggregation engine
and the report jobs only need a handful of facts from them, expressed as
the protocols below. The null implementations are used when nothing else
is wired in, which keeps the pipeline usable on its own.
"""

from typing import Any, Protocol, runtime_checkable

from fitpulse.domains.analytics.schemas import DateRange


@runtime_checkable
class UserDirectory(Protocol):
    """Read-only view of the user account store."""

    async def count_users(self, user_id: str | None = None) -> int:
        """Total registered users, or 1/0 for a single user id."""
        ...

    async def count_new_users(self, date_range: DateRange) -> int:
        """Users whose account was created inside the window."""
        ...

    async def report_recipients(self, cadence: str, limit: int) -> list[str]:
        """Ids of users opted in to ``cadence`` reports, at most ``limit``."""
        ...


@runtime_checkable
class BusinessMetricsSource(Protocol):
    """Revenue and subscription figures for the org-wide dashboard."""

    async def business_metrics(self, date_range: DateRange) -> dict[str, Any]:
        """Metrics such as total revenue, MRR, churn and conversion rate."""
        ...


class NullUserDirectory:
    """Directory with no users. Counts are zero and nobody gets reports."""

    async def count_users(self, user_id: str | None = None) -> int:
        return 0

    async def count_new_users(self, date_range: DateRange) -> int:
        return 0

    async def report_recipients(self, cadence: str, limit: int) -> list[str]:
        return []


class StaticUserDirectory:
    """In-memory directory backed by a fixed mapping.

    Args:
        users: Mapping of user id to account creation time.
        recipients: User ids opted in to periodic reports.
    """

    def __init__(self, users: dict[str, Any] | None = None, recipients: list[str] | None = None) -> None:
        self._users = dict(users or {})
        self._recipients = list(recipients or [])

    async def count_users(self, user_id: str | None = None) -> int:
        if user_id is not None:
            return 1 if user_id in self._users else 0
        return len(self._users)

    async def count_new_users(self, date_range: DateRange) -> int:
        return sum(1 for created in self._users.values() if created and date_range.contains(created))

    async def report_recipients(self, cadence: str, limit: int) -> list[str]:
        return self._recipients[:limit]
