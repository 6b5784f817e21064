# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Aggregation engine.

Read-only queries over the event store that back dashboards and reports.
Every query takes an inclusive DateRange and optional filters; nothing here
writes.

Grouped counts, sums and averages run in SQL. Unique users are counted
with COUNT(DISTINCT user_id). Day and hour buckets are computed in Python
from the matching timestamps so the same code works on every dialect and
respects the configured timezone.

Usage:
    aggregator = AnalyticsAggregator(directory=user_directory)
    async with db_manager.session() as db:
        groups = await aggregator.aggregate(db, ["event_category"], date_range)
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Any, Sequence

from sqlalchemy import and_, case, distinct, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics.directory import (
    BusinessMetricsSource,
    NullUserDirectory,
    UserDirectory,
)
from fitpulse.domains.analytics.exceptions import InvalidQueryError
from fitpulse.domains.analytics.schemas import DateRange
from fitpulse.domains.analytics.sessions import SessionTracker
from fitpulse.domains.analytics.store import EventFilters, event_conditions
from fitpulse.infrastructure.database.models import AnalyticsEvent, EventCategory, UserSession
from fitpulse.utils.datetime import ensure_utc, floor_to_hour

if TYPE_CHECKING:
    from fitpulse.domains.analytics.realtime import RealtimeMetrics

logger = logging.getLogger(__name__)

# Event columns that may be used as group keys
GROUPABLE_FIELDS = {
    "event_category": AnalyticsEvent.event_category,
    "event_action": AnalyticsEvent.event_action,
    "event_type": AnalyticsEvent.event_type,
    "event_label": AnalyticsEvent.event_label,
    "user_id": AnalyticsEvent.user_id,
    "session_id": AnalyticsEvent.session_id,
    "platform": AnalyticsEvent.platform,
}

FEATURE_USAGE_LIMIT = 20


@dataclass
class AggregateGroup:
    """One group of an aggregate query.

    Attributes:
        key: Group field values, keyed by field name.
        count: Number of events in the group.
        value_sum: Sum of event values (events without a value ignored).
        value_avg: Average event value, or None when no event had one.
        unique_users: Distinct user ids in the group.
    """

    key: dict[str, Any]
    count: int
    value_sum: float = 0.0
    value_avg: float | None = None
    unique_users: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            **self.key,
            "count": self.count,
            "value_sum": self.value_sum,
            "value_avg": self.value_avg,
            "unique_users": self.unique_users,
        }


@dataclass
class EngagementMetrics:
    """User engagement over a window."""

    total_users: int = 0
    active_users: int = 0
    new_users: int = 0
    total_sessions: int = 0
    avg_session_duration: float = 0.0
    avg_events_per_session: float = 0.0
    avg_events_per_user: float = 0.0
    retention_rate: float = 0.0
    bounce_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_users": self.total_users,
            "active_users": self.active_users,
            "new_users": self.new_users,
            "total_sessions": self.total_sessions,
            "avg_session_duration": round(self.avg_session_duration, 2),
            "avg_events_per_session": round(self.avg_events_per_session, 2),
            "avg_events_per_user": round(self.avg_events_per_user, 2),
            "retention_rate": round(self.retention_rate, 4),
            "bounce_rate": round(self.bounce_rate, 4),
        }


@dataclass
class FeatureStat:
    """Usage of one feature."""

    feature: str
    usage_count: int
    unique_users: int
    avg_time_spent: float | None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "feature": self.feature,
            "usage_count": self.usage_count,
            "unique_users": self.unique_users,
            "avg_time_spent": self.avg_time_spent,
        }


@dataclass
class FeatureUsage:
    """Ranked feature usage with adoption rates."""

    top_features: list[FeatureStat] = field(default_factory=list)
    feature_adoption: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "top_features": [f.to_dict() for f in self.top_features],
            "feature_adoption": self.feature_adoption,
        }


@dataclass
class EngagementScore:
    """Activity score of one user over a window."""

    user_id: str
    events: int
    sessions: int
    active_days: int
    score: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "events": self.events,
            "sessions": self.sessions,
            "active_days": self.active_days,
            "score": self.score,
        }


def _ratio(part: float, whole: float) -> float:
    return part / whole if whole else 0.0


def _day_range(date_range: DateRange, tz: tzinfo) -> list[date]:
    first = date_range.start.astimezone(tz).date()
    last = date_range.end.astimezone(tz).date()
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


class AnalyticsAggregator:
    """Read-only aggregation queries over events and sessions.

    Attributes:
        directory: User directory for user totals and new-user counts.
        business_metrics: Optional source of revenue figures.
    """

    # Weights of the per-user engagement score
    EVENT_WEIGHT = 1.0
    SESSION_WEIGHT = 5.0
    ACTIVE_DAY_WEIGHT = 10.0

    def __init__(
        self,
        directory: UserDirectory | None = None,
        business_metrics: BusinessMetricsSource | None = None,
        sessions: SessionTracker | None = None,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self.directory = directory or NullUserDirectory()
        self.business_metrics = business_metrics
        self._sessions = sessions or SessionTracker()
        self._tz = tz

    async def aggregate(
        self,
        db: AsyncSession,
        group_by: Sequence[str],
        date_range: DateRange,
        filters: EventFilters | None = None,
    ) -> list[AggregateGroup]:
        """Group events in a window and compute per-group statistics.

        Args:
            db: Database session.
            group_by: Field names from GROUPABLE_FIELDS. An empty list
                yields a single group over all matching events.
            date_range: Inclusive window on event timestamp.
            filters: Optional equality filters.

        Returns:
            Groups sorted by count, largest first.

        Raises:
            InvalidQueryError: If a group field is not supported.
        """
        unknown = [name for name in group_by if name not in GROUPABLE_FIELDS]
        if unknown:
            raise InvalidQueryError(f"Cannot group by: {', '.join(unknown)}")

        columns = [GROUPABLE_FIELDS[name].label(name) for name in group_by]
        count = func.count(AnalyticsEvent.id).label("count")
        stmt = (
            select(
                *columns,
                count,
                func.sum(AnalyticsEvent.event_value).label("value_sum"),
                func.avg(AnalyticsEvent.event_value).label("value_avg"),
                func.count(distinct(AnalyticsEvent.user_id)).label("unique_users"),
            )
            .where(and_(true(), *event_conditions(date_range, filters)))
            .order_by(count.desc())
        )
        if columns:
            stmt = stmt.group_by(*[GROUPABLE_FIELDS[name] for name in group_by])

        groups = []
        for row in (await db.execute(stmt)).mappings():
            if not row["count"]:
                continue
            groups.append(
                AggregateGroup(
                    key={name: row[name] for name in group_by},
                    count=int(row["count"]),
                    value_sum=float(row["value_sum"] or 0.0),
                    value_avg=float(row["value_avg"]) if row["value_avg"] is not None else None,
                    unique_users=int(row["unique_users"] or 0),
                )
            )
        return groups

    async def events_by_category(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
    ) -> dict[str, int]:
        """Event counts per category in a window."""
        groups = await self.aggregate(
            db, ["event_category"], date_range, EventFilters(user_id=user_id)
        )
        return {g.key["event_category"]: g.count for g in groups}

    async def count_unique_users(
        self,
        db: AsyncSession,
        date_range: DateRange,
        filters: EventFilters | None = None,
    ) -> int:
        """Distinct users with at least one event in the window."""
        stmt = select(func.count(distinct(AnalyticsEvent.user_id))).where(
            and_(true(), *event_conditions(date_range, filters))
        )
        return int(await db.scalar(stmt) or 0)

    async def engagement_metrics(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
    ) -> EngagementMetrics:
        """Compose user, session and behaviour metrics for a window.

        Retention is the share of users with sessions in the window who
        started another session on a later calendar day. Bounce rate is
        the share of sessions with exactly one event.

        Args:
            db: Database session.
            date_range: Inclusive window.
            user_id: Restrict to one user.

        Returns:
            EngagementMetrics for the window.
        """
        filters = EventFilters(user_id=user_id)

        per_user = (
            select(
                AnalyticsEvent.user_id,
                func.count(AnalyticsEvent.id).label("events"),
            )
            .where(
                and_(
                    AnalyticsEvent.user_id.isnot(None),
                    *event_conditions(date_range, filters),
                )
            )
            .group_by(AnalyticsEvent.user_id)
            .subquery()
        )
        user_row = (
            await db.execute(
                select(func.count(), func.avg(per_user.c.events)).select_from(per_user)
            )
        ).one()
        active_users = int(user_row[0] or 0)
        avg_events_per_user = float(user_row[1] or 0.0)

        stats = await self._sessions.session_stats(db, user_id=user_id, date_range=date_range)

        return EngagementMetrics(
            total_users=await self.directory.count_users(user_id),
            active_users=active_users,
            new_users=await self.directory.count_new_users(date_range),
            total_sessions=stats.total_sessions,
            avg_session_duration=stats.avg_duration_seconds,
            avg_events_per_session=stats.avg_events_per_session,
            avg_events_per_user=avg_events_per_user,
            retention_rate=await self._retention_rate(db, date_range, user_id),
            bounce_rate=await self._bounce_rate(db, date_range, user_id),
        )

    def _session_conditions(self, date_range: DateRange, user_id: str | None) -> list[Any]:
        conditions = [
            UserSession.start_time >= date_range.start,
            UserSession.start_time <= date_range.end,
        ]
        if user_id is not None:
            conditions.append(UserSession.user_id == user_id)
        return conditions

    async def _session_days(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None,
    ) -> dict[str, list[date]]:
        """Local start dates of each user's sessions in the window."""
        result = await db.execute(
            select(UserSession.user_id, UserSession.start_time).where(
                and_(
                    UserSession.user_id.isnot(None),
                    *self._session_conditions(date_range, user_id),
                )
            )
        )
        days: dict[str, list[date]] = defaultdict(list)
        for uid, started in result.all():
            days[uid].append(ensure_utc(started).astimezone(self._tz).date())
        return days

    async def _retention_rate(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None,
    ) -> float:
        days = await self._session_days(db, date_range, user_id)
        returning = sum(1 for d in days.values() if max(d) > min(d))
        return _ratio(returning, len(days))

    async def _bounce_rate(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None,
    ) -> float:
        row = (
            await db.execute(
                select(
                    func.count(UserSession.session_id),
                    func.sum(case((UserSession.total_events == 1, 1), else_=0)),
                ).where(and_(*self._session_conditions(date_range, user_id)))
            )
        ).one()
        return _ratio(float(row[1] or 0), float(row[0] or 0))

    async def feature_usage(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
        limit: int = FEATURE_USAGE_LIMIT,
    ) -> FeatureUsage:
        """Rank feature_usage events by feature.

        The feature is the event label, falling back to the action. The
        average time spent is the mean event value.

        Args:
            db: Database session.
            date_range: Inclusive window.
            user_id: Restrict to one user.
            limit: Number of features returned.

        Returns:
            FeatureUsage with the top features and their adoption rate
            among active users.
        """
        feature = func.coalesce(AnalyticsEvent.event_label, AnalyticsEvent.event_action)
        usage = func.count(AnalyticsEvent.id).label("usage_count")
        filters = EventFilters(user_id=user_id, category=EventCategory.FEATURE_USAGE.value)
        stmt = (
            select(
                feature.label("feature"),
                usage,
                func.count(distinct(AnalyticsEvent.user_id)).label("unique_users"),
                func.avg(AnalyticsEvent.event_value).label("avg_time_spent"),
            )
            .where(and_(*event_conditions(date_range, filters)))
            .group_by(feature)
            .order_by(usage.desc(), feature)
            .limit(limit)
        )

        top = [
            FeatureStat(
                feature=row["feature"],
                usage_count=int(row["usage_count"]),
                unique_users=int(row["unique_users"] or 0),
                avg_time_spent=(
                    round(float(row["avg_time_spent"]), 2)
                    if row["avg_time_spent"] is not None
                    else None
                ),
            )
            for row in (await db.execute(stmt)).mappings()
        ]

        active = await self.count_unique_users(db, date_range, EventFilters(user_id=user_id))
        adoption = {f.feature: round(_ratio(f.unique_users, active), 4) for f in top}
        return FeatureUsage(top_features=top, feature_adoption=adoption)

    async def _timestamps(
        self,
        db: AsyncSession,
        date_range: DateRange,
        filters: EventFilters | None = None,
    ) -> list[tuple[datetime, str | None, str]]:
        result = await db.execute(
            select(
                AnalyticsEvent.timestamp,
                AnalyticsEvent.user_id,
                AnalyticsEvent.event_category,
            ).where(and_(*event_conditions(date_range, filters)))
        )
        return [(ensure_utc(ts), uid, category) for ts, uid, category in result.all()]

    async def daily_trends(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Events and unique users per local day, including empty days."""
        counts: dict[date, int] = defaultdict(int)
        users: dict[date, set[str]] = defaultdict(set)
        for ts, uid, _ in await self._timestamps(db, date_range, EventFilters(user_id=user_id)):
            day = ts.astimezone(self._tz).date()
            counts[day] += 1
            if uid:
                users[day].add(uid)

        return [
            {"date": day.isoformat(), "count": counts[day], "unique_users": len(users[day])}
            for day in _day_range(date_range, self._tz)
        ]

    async def hourly_trends(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Events per UTC hour, including empty hours."""
        counts: dict[datetime, int] = defaultdict(int)
        for ts, _, _ in await self._timestamps(db, date_range, EventFilters(user_id=user_id)):
            counts[floor_to_hour(ts)] += 1

        hours = []
        hour = floor_to_hour(date_range.start)
        while hour <= date_range.end:
            hours.append({"hour": hour.isoformat(), "count": counts[hour]})
            hour += timedelta(hours=1)
        return hours

    async def user_engagement_timeline(
        self,
        db: AsyncSession,
        user_id: str,
        date_range: DateRange,
    ) -> list[dict[str, Any]]:
        """Per-day event counts by category for one user.

        Only days with activity are returned.
        """
        by_day: dict[date, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for ts, _, category in await self._timestamps(db, date_range, EventFilters(user_id=user_id)):
            by_day[ts.astimezone(self._tz).date()][category] += 1

        return [
            {
                "date": day.isoformat(),
                "total": sum(categories.values()),
                "categories": dict(categories),
            }
            for day, categories in sorted(by_day.items())
        ]

    async def report_payload(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Build the payload stored on a generated report.

        Besides the event totals and breakdowns, a report carries the
        same engagement, business, feature usage and daily trend sections
        as the dashboard for its window, so it stays readable after the raw
        events are evicted. Business metrics are left out of per-user
        reports.
        """
        filters = EventFilters(user_id=user_id)
        totals = await self.aggregate(db, [], date_range, filters)
        by_category = await self.aggregate(db, ["event_category"], date_range, filters)
        by_action = await self.aggregate(
            db, ["event_category", "event_action"], date_range, filters
        )
        engagement = await self.engagement_metrics(db, date_range, user_id)
        features = await self.feature_usage(db, date_range, user_id)
        trends = await self.daily_trends(db, date_range, user_id)

        business = None
        if user_id is None and self.business_metrics is not None:
            business = await self.business_metrics.business_metrics(date_range)

        return {
            "summary": {
                "total_events": totals[0].count if totals else 0,
                "unique_users": totals[0].unique_users if totals else 0,
                "date_range": date_range.to_dict(),
            },
            "details": {
                "by_category": [g.to_dict() for g in by_category],
                "by_action": [g.to_dict() for g in by_action],
            },
            "engagement": engagement.to_dict(),
            "business": business,
            "features": features.to_dict(),
            "daily_trends": trends,
        }

    async def dashboard(
        self,
        db: AsyncSession,
        date_range: DateRange,
        user_id: str | None = None,
        realtime: "RealtimeMetrics | None" = None,
    ) -> dict[str, Any]:
        """Compose the dashboard payload.

        Business metrics are org-wide figures and are left out of
        user-scoped dashboards.
        """
        engagement = await self.engagement_metrics(db, date_range, user_id)
        features = await self.feature_usage(db, date_range, user_id)
        categories = await self.events_by_category(db, date_range, user_id)
        trends = await self.daily_trends(db, date_range, user_id)

        business = None
        if user_id is None and self.business_metrics is not None:
            business = await self.business_metrics.business_metrics(date_range)

        snapshot = None
        if realtime is not None:
            snapshot = (await realtime.snapshot(db)).to_dict()

        return {
            "date_range": date_range.to_dict(),
            "engagement": engagement.to_dict(),
            "business": business,
            "features": features.to_dict(),
            "categories": categories,
            "daily_trends": trends,
            "realtime": snapshot,
        }

    async def engagement_scores(
        self,
        db: AsyncSession,
        date_range: DateRange,
        limit: int = 100,
    ) -> list[EngagementScore]:
        """Score users by events, sessions and active days in a window.

        Args:
            db: Database session.
            date_range: Inclusive window.
            limit: Number of users returned.

        Returns:
            Highest scoring users first.
        """
        result = await db.execute(
            select(AnalyticsEvent.user_id, func.count(AnalyticsEvent.id))
            .where(
                and_(
                    AnalyticsEvent.user_id.isnot(None),
                    *event_conditions(date_range),
                )
            )
            .group_by(AnalyticsEvent.user_id)
        )
        events = {uid: int(n) for uid, n in result.all()}
        session_days = await self._session_days(db, date_range, None)

        scores = []
        for uid in set(events) | set(session_days):
            days = session_days.get(uid, [])
            sessions = len(days)
            active_days = len(set(days))
            score = (
                self.EVENT_WEIGHT * events.get(uid, 0)
                + self.SESSION_WEIGHT * sessions
                + self.ACTIVE_DAY_WEIGHT * active_days
            )
            scores.append(
                EngagementScore(
                    user_id=uid,
                    events=events.get(uid, 0),
                    sessions=sessions,
                    active_days=active_days,
                    score=round(score, 2),
                )
            )

        scores.sort(key=lambda s: (-s.score, s.user_id))
        logger.debug("Computed engagement scores for %d users", len(scores))
        return scores[:limit]
