# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Realtime metrics over short sliding windows.

Every snapshot is computed fresh from the event store. Nothing is cached
and nothing is written, so snapshots are safe to take concurrently.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics.aggregator import AnalyticsAggregator
from fitpulse.domains.analytics.schemas import DateRange
from fitpulse.domains.analytics.sessions import SessionTracker
from fitpulse.domains.analytics.store import EventStore
from fitpulse.utils.datetime import ensure_utc, utc_now

if TYPE_CHECKING:
    from fitpulse.core.config.settings import RealtimeSettings

logger = logging.getLogger(__name__)


@dataclass
class RealtimeSnapshot:
    """Point-in-time view of live activity."""

    active_users_now: int = 0
    active_users_today: int = 0
    active_sessions: int = 0
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    hourly_trends: list[dict[str, Any]] = field(default_factory=list)
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "active_users_now": self.active_users_now,
            "active_users_today": self.active_users_today,
            "active_sessions": self.active_sessions,
            "recent_events": self.recent_events,
            "hourly_trends": self.hourly_trends,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


class RealtimeMetrics:
    """Computes realtime snapshots.

    Args:
        active_window: Window for users and sessions counted as active now.
        daily_window: Window for the daily user count and the event feed.
        recent_events_limit: Size of the recent events feed.
    """

    def __init__(
        self,
        aggregator: AnalyticsAggregator | None = None,
        store: EventStore | None = None,
        sessions: SessionTracker | None = None,
        active_window: timedelta = timedelta(minutes=30),
        daily_window: timedelta = timedelta(hours=24),
        recent_events_limit: int = 50,
    ) -> None:
        self._aggregator = aggregator or AnalyticsAggregator()
        self._store = store or EventStore()
        self._sessions = sessions or SessionTracker()
        self.active_window = active_window
        self.daily_window = daily_window
        self.recent_events_limit = recent_events_limit

    @classmethod
    def from_settings(
        cls,
        settings: "RealtimeSettings",
        aggregator: AnalyticsAggregator | None = None,
    ) -> "RealtimeMetrics":
        """Create realtime metrics with windows from settings."""
        return cls(
            aggregator=aggregator,
            active_window=timedelta(minutes=settings.active_window_minutes),
            daily_window=timedelta(hours=settings.daily_window_hours),
            recent_events_limit=settings.recent_events_limit,
        )

    async def snapshot(self, db: AsyncSession, now: datetime | None = None) -> RealtimeSnapshot:
        """Compute a fresh snapshot.

        Args:
            db: Database session.
            now: Reference time, defaults to the current time.

        Returns:
            RealtimeSnapshot as of ``now``.
        """
        now = ensure_utc(now) or utc_now()
        active_since = now - self.active_window
        day_since = now - self.daily_window

        now_range = DateRange(start=active_since, end=now)
        day_range = DateRange(start=day_since, end=now)

        recent = await self._store.recent_events(
            db, day_since, self.recent_events_limit, until=now
        )

        return RealtimeSnapshot(
            active_users_now=await self._aggregator.count_unique_users(db, now_range),
            active_users_today=await self._aggregator.count_unique_users(db, day_range),
            active_sessions=await self._sessions.count_active_sessions(db, active_since),
            recent_events=[event.to_dict() for event in recent],
            hourly_trends=await self._aggregator.hourly_trends(db, day_range),
            last_updated=now,
        )
