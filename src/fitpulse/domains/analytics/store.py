# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event store access.

The event store owns AnalyticsEvent and UserSession rows. Events are
written once and never updated; they leave the store only through
retention eviction.

Inserts are idempotent on the event id: a redelivered event (same
producer-assigned id) is skipped instead of stored twice, so a batch that
is retried after a failed or timed-out write does not double count.

Usage:
    store = EventStore()
    async with db_manager.session() as db:
        inserted = await store.add_events(db, events)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import ColumnElement, and_, delete, func, insert, select, true
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics.schemas import DateRange
from fitpulse.infrastructure.database.models import AnalyticsEvent, EventCategory, UserSession
from fitpulse.utils.datetime import utc_now

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def _enum_value(value: "EventCategory | str") -> str:
    return value.value if isinstance(value, EventCategory) else value


@dataclass(frozen=True)
class EventFilters:
    """Optional equality filters applied to event queries.

    Attributes:
        user_id: Restrict to one user.
        category: Restrict to one event category.
        action: Restrict to one event action.
        event_type: Restrict to one event type.
        session_id: Restrict to one session.
    """

    user_id: str | None = None
    category: str | None = None
    action: str | None = None
    event_type: str | None = None
    session_id: str | None = None

    def conditions(self) -> list[ColumnElement[bool]]:
        """SQL conditions for the filters that are set."""
        conditions: list[ColumnElement[bool]] = []
        if self.user_id is not None:
            conditions.append(AnalyticsEvent.user_id == self.user_id)
        if self.category is not None:
            conditions.append(AnalyticsEvent.event_category == _enum_value(self.category))
        if self.action is not None:
            conditions.append(AnalyticsEvent.event_action == self.action)
        if self.event_type is not None:
            conditions.append(AnalyticsEvent.event_type == self.event_type)
        if self.session_id is not None:
            conditions.append(AnalyticsEvent.session_id == self.session_id)
        return conditions


def event_conditions(
    date_range: DateRange | None,
    filters: EventFilters | None = None,
) -> list[ColumnElement[bool]]:
    """Build the WHERE conditions for a windowed, filtered event query."""
    conditions: list[ColumnElement[bool]] = []
    if date_range is not None:
        conditions.append(AnalyticsEvent.timestamp >= date_range.start)
        conditions.append(AnalyticsEvent.timestamp <= date_range.end)
    if filters is not None:
        conditions.extend(filters.conditions())
    return conditions


@dataclass
class EvictionResult:
    """Outcome of a retention eviction pass."""

    events_deleted: int = 0
    sessions_deleted: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "events_deleted": self.events_deleted,
            "sessions_deleted": self.sessions_deleted,
        }


def _event_values(event: AnalyticsEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "user_id": event.user_id,
        "session_id": event.session_id,
        "event_type": event.event_type,
        "event_category": event.event_category,
        "event_action": event.event_action,
        "event_label": event.event_label,
        "event_value": event.event_value,
        "event_metadata": event.event_metadata or {},
        "platform": event.platform,
        "user_agent": event.user_agent,
        "ip_address": event.ip_address,
        "timestamp": event.timestamp,
        "created_at": event.created_at or utc_now(),
    }


class EventStore:
    """Stateless accessor for event and session records."""

    async def add_events(
        self,
        db: AsyncSession,
        events: Sequence[AnalyticsEvent],
    ) -> list[AnalyticsEvent]:
        """Insert events, skipping ids that are already stored.

        Args:
            db: Database session.
            events: Transient events with ids assigned.

        Returns:
            The events that were newly inserted, in input order.
        """
        seen: set[str] = set()
        unique: list[AnalyticsEvent] = []
        for event in events:
            if event.id in seen:
                continue
            seen.add(event.id)
            unique.append(event)

        upsert = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
        inserted: list[AnalyticsEvent] = []

        for event in unique:
            values = _event_values(event)
            if upsert is not None:
                stmt = (
                    upsert(AnalyticsEvent)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["id"])
                    .returning(AnalyticsEvent.id)
                )
                row = (await db.execute(stmt)).first()
                if row is not None:
                    inserted.append(event)
            else:
                existing = await db.scalar(
                    select(AnalyticsEvent.id).where(AnalyticsEvent.id == event.id)
                )
                if existing is None:
                    await db.execute(insert(AnalyticsEvent).values(**values))
                    inserted.append(event)

        skipped = len(events) - len(inserted)
        if skipped:
            logger.info("Skipped %d already stored events", skipped)

        return inserted

    async def get_event(self, db: AsyncSession, event_id: str) -> AnalyticsEvent | None:
        """Get one event by id."""
        return await db.get(AnalyticsEvent, event_id)

    async def count_events(
        self,
        db: AsyncSession,
        date_range: DateRange | None = None,
        filters: EventFilters | None = None,
    ) -> int:
        """Count events matching a window and filters."""
        stmt = select(func.count(AnalyticsEvent.id)).where(
            and_(true(), *event_conditions(date_range, filters))
        )
        return int(await db.scalar(stmt) or 0)

    async def recent_events(
        self,
        db: AsyncSession,
        since: datetime,
        limit: int,
        user_id: str | None = None,
        until: datetime | None = None,
    ) -> list[AnalyticsEvent]:
        """Most recent events between ``since`` and ``until``, newest first."""
        conditions = [AnalyticsEvent.timestamp >= since]
        if until is not None:
            conditions.append(AnalyticsEvent.timestamp <= until)
        if user_id is not None:
            conditions.append(AnalyticsEvent.user_id == user_id)
        stmt = (
            select(AnalyticsEvent)
            .where(and_(*conditions))
            .order_by(AnalyticsEvent.timestamp.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def evict_expired(
        self,
        db: AsyncSession,
        now: datetime,
        event_retention: timedelta,
        session_retention: timedelta,
    ) -> EvictionResult:
        """Delete events and ended sessions older than their retention window.

        Args:
            db: Database session.
            now: Reference time.
            event_retention: Maximum age of an event.
            session_retention: Maximum age of an ended session.

        Returns:
            Number of deleted rows per table.
        """
        event_cutoff = now - event_retention
        session_cutoff = now - session_retention

        events_result = await db.execute(
            delete(AnalyticsEvent)
            .where(AnalyticsEvent.timestamp < event_cutoff)
            .execution_options(synchronize_session=False)
        )
        sessions_result = await db.execute(
            delete(UserSession)
            .where(
                and_(
                    UserSession.is_active.is_(False),
                    UserSession.start_time < session_cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )

        result = EvictionResult(
            events_deleted=events_result.rowcount or 0,
            sessions_deleted=sessions_result.rowcount or 0,
        )
        logger.info(
            "Evicted expired records: events=%d, sessions=%d",
            result.events_deleted,
            result.sessions_deleted,
        )
        return result
