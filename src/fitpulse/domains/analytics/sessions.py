# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Session tracking.

One UserSession row exists per client-generated session id. A session is
created by its first event (or an explicit start), bumped by every later
event, and closed exactly once: explicitly by the client or by the
inactivity sweep.

Counter updates are single UPDATE statements guarded by ``is_active`` so
concurrent ingestion requests cannot lose increments or reopen a closed
session.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy import and_, case, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics.schemas import DateRange, DeviceInfo, RequestContext
from fitpulse.infrastructure.database.models import UserSession, UTCDateTime
from fitpulse.utils.datetime import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    """Summary statistics over a set of sessions.

    Attributes:
        total_sessions: Number of sessions.
        avg_duration_seconds: Mean duration of ended sessions.
        total_duration_seconds: Summed duration of ended sessions.
        avg_events_per_session: Mean event count per session.
        total_events: Summed event count.
        platforms: Distinct platforms seen.
    """

    total_sessions: int = 0
    avg_duration_seconds: float = 0.0
    total_duration_seconds: float = 0.0
    avg_events_per_session: float = 0.0
    total_events: int = 0
    platforms: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_sessions": self.total_sessions,
            "avg_duration_seconds": round(self.avg_duration_seconds, 2),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "avg_events_per_session": round(self.avg_events_per_session, 2),
            "total_events": self.total_events,
            "platforms": self.platforms,
        }


class SessionTracker:
    """Maintains session records in the event store."""

    async def get_session(self, db: AsyncSession, session_id: str) -> UserSession | None:
        """Get a session by id, reloading it from the database."""
        return await db.get(UserSession, session_id, populate_existing=True)

    async def create_session(
        self,
        db: AsyncSession,
        session_id: str,
        device_info: DeviceInfo | Mapping[str, Any] | None = None,
        context: RequestContext | None = None,
        started_at: datetime | None = None,
        location: Mapping[str, Any] | None = None,
    ) -> UserSession:
        """Create an active session unless one already exists for the id.

        Args:
            db: Database session.
            session_id: Client-generated session id.
            device_info: Device description.
            context: Request context supplying user id and platform.
            started_at: Start time (defaults to now).
            location: Optional coarse location.

        Returns:
            The new session, or the existing one for this id.
        """
        existing = await self.get_session(db, session_id)
        if existing is not None:
            return existing

        if isinstance(device_info, DeviceInfo):
            device = device_info.model_dump(exclude_none=True)
        else:
            device = dict(device_info or {})
        context = context or RequestContext()
        start = ensure_utc(started_at) or utc_now()

        session = UserSession(
            session_id=session_id,
            user_id=context.user_id,
            platform=device.get("platform") or context.platform,
            device_info=device,
            location=dict(location) if location else None,
            start_time=start,
            end_time=None,
            duration_seconds=None,
            is_active=True,
            total_events=0,
            last_activity=start,
            created_at=utc_now(),
        )
        db.add(session)
        await db.flush()

        logger.debug("Created session %s for user %s", session_id, context.user_id)
        return session

    async def update_activity(
        self,
        db: AsyncSession,
        session_id: str,
        at: datetime | None = None,
    ) -> bool:
        """Count one event against an active session.

        Increments the event count and moves last activity forward. Ended
        sessions are left untouched.

        Args:
            db: Database session.
            session_id: Session id.
            at: Activity time (defaults to now).

        Returns:
            True if an active session was updated.
        """
        moment = literal(ensure_utc(at) or utc_now(), UTCDateTime())
        result = await db.execute(
            update(UserSession)
            .where(
                and_(
                    UserSession.session_id == session_id,
                    UserSession.is_active.is_(True),
                )
            )
            .values(
                total_events=UserSession.total_events + 1,
                last_activity=case(
                    (UserSession.last_activity < moment, moment),
                    else_=UserSession.last_activity,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def record_event(
        self,
        db: AsyncSession,
        session_id: str,
        at: datetime,
        context: RequestContext | None = None,
    ) -> bool:
        """Create the session if needed, then count the event against it."""
        await self.create_session(db, session_id, context=context, started_at=at)
        return await self.update_activity(db, session_id, at)

    async def end_session(
        self,
        db: AsyncSession,
        session_id: str,
        ended_at: datetime | None = None,
    ) -> UserSession | None:
        """End a session and fix its duration.

        Ending an already ended session is a no-op.

        Args:
            db: Database session.
            session_id: Session id.
            ended_at: End time (defaults to now).

        Returns:
            The session after the call, or None if it does not exist.
        """
        session = await self.get_session(db, session_id)
        if session is None or not session.is_active:
            return session

        end = ensure_utc(ended_at) or utc_now()
        await self._close(db, session, end)
        return await self.get_session(db, session_id)

    async def _close(self, db: AsyncSession, session: UserSession, end: datetime) -> bool:
        duration = max((end - session.start_time).total_seconds(), 0.0)
        result = await db.execute(
            update(UserSession)
            .where(
                and_(
                    UserSession.session_id == session.session_id,
                    UserSession.is_active.is_(True),
                )
            )
            .values(end_time=end, duration_seconds=duration, is_active=False)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def close_inactive_sessions(
        self,
        db: AsyncSession,
        idle_timeout: timedelta,
        now: datetime | None = None,
    ) -> int:
        """End active sessions whose last activity is older than the timeout.

        The session is considered to have ended at its last activity.

        Args:
            db: Database session.
            idle_timeout: Allowed idle time.
            now: Reference time (defaults to now).

        Returns:
            Number of sessions closed.
        """
        cutoff = (ensure_utc(now) or utc_now()) - idle_timeout
        result = await db.execute(
            select(UserSession).where(
                and_(
                    UserSession.is_active.is_(True),
                    UserSession.last_activity < cutoff,
                )
            )
        )
        closed = 0
        for session in result.scalars().all():
            if await self._close(db, session, session.last_activity):
                closed += 1

        if closed:
            logger.info("Closed %d inactive sessions", closed)
        return closed

    async def active_sessions(
        self,
        db: AsyncSession,
        user_id: str | None = None,
        active_since: datetime | None = None,
    ) -> list[UserSession]:
        """Active sessions, most recently active first.

        Args:
            db: Database session.
            user_id: Only sessions of this user.
            active_since: Only sessions with activity at or after this time.
        """
        conditions = [UserSession.is_active.is_(True)]
        if user_id is not None:
            conditions.append(UserSession.user_id == user_id)
        if active_since is not None:
            conditions.append(UserSession.last_activity >= active_since)

        result = await db.execute(
            select(UserSession)
            .where(and_(*conditions))
            .order_by(UserSession.last_activity.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_active_sessions(self, db: AsyncSession, active_since: datetime) -> int:
        """Count active sessions with activity at or after ``active_since``."""
        stmt = select(func.count(UserSession.session_id)).where(
            and_(
                UserSession.is_active.is_(True),
                UserSession.last_activity >= active_since,
            )
        )
        return int(await db.scalar(stmt) or 0)

    async def session_stats(
        self,
        db: AsyncSession,
        user_id: str | None = None,
        date_range: DateRange | None = None,
    ) -> SessionStats:
        """Aggregate statistics over sessions started within a window.

        Args:
            db: Database session.
            user_id: Only sessions of this user.
            date_range: Only sessions started inside this window.
        """
        conditions = []
        if user_id is not None:
            conditions.append(UserSession.user_id == user_id)
        if date_range is not None:
            conditions.append(UserSession.start_time >= date_range.start)
            conditions.append(UserSession.start_time <= date_range.end)

        stmt = select(
            func.count(UserSession.session_id),
            func.avg(UserSession.duration_seconds),
            func.sum(UserSession.duration_seconds),
            func.avg(UserSession.total_events),
            func.sum(UserSession.total_events),
        )
        platforms_stmt = select(UserSession.platform).where(UserSession.platform.isnot(None))
        if conditions:
            stmt = stmt.where(and_(*conditions))
            platforms_stmt = platforms_stmt.where(and_(*conditions))

        row = (await db.execute(stmt)).one()
        platforms = (await db.execute(platforms_stmt.distinct())).scalars().all()

        return SessionStats(
            total_sessions=int(row[0] or 0),
            avg_duration_seconds=float(row[1] or 0.0),
            total_duration_seconds=float(row[2] or 0.0),
            avg_events_per_session=float(row[3] or 0.0),
            total_events=int(row[4] or 0),
            platforms=sorted(platforms),
        )
