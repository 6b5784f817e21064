# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the session tracker."""

from datetime import datetime, timedelta, timezone

import pytest

from fitpulse.domains.analytics.schemas import DateRange, DeviceInfo, RequestContext
from fitpulse.domains.analytics.sessions import SessionTracker

START = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


def _at(minutes: float) -> datetime:
    return START + timedelta(minutes=minutes)


@pytest.fixture
def tracker() -> SessionTracker:
    """Create the session tracker."""
    return SessionTracker()


@pytest.fixture
def context() -> RequestContext:
    """Create a request context for an iOS user."""
    return RequestContext(user_id="user-1", session_id="s-1", platform="ios")


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_creates_active_session(self, db_manager, tracker, context) -> None:
        """Test that a new session starts active with no events."""
        async with db_manager.session() as db:
            session = await tracker.create_session(
                db,
                "s-1",
                device_info=DeviceInfo(platform="android", app_version="2.1.0"),
                context=context,
                started_at=START,
            )

        assert session.is_active is True
        assert session.user_id == "user-1"
        assert session.platform == "android"
        assert session.device_info == {"platform": "android", "app_version": "2.1.0"}
        assert session.total_events == 0
        assert session.start_time == START
        assert session.last_activity == START

    @pytest.mark.asyncio
    async def test_existing_session_is_returned_unchanged(self, db_manager, tracker, context) -> None:
        """Test that creating an existing id does not reset it."""
        async with db_manager.session() as db:
            await tracker.create_session(db, "s-1", context=context, started_at=START)
            await tracker.update_activity(db, "s-1", _at(3))

        async with db_manager.session() as db:
            again = await tracker.create_session(db, "s-1", context=context, started_at=_at(10))

        assert again.start_time == START
        assert again.total_events == 1


class TestSessionLifecycle:
    """Tests for activity updates and ending sessions."""

    @pytest.mark.asyncio
    async def test_duration_and_event_count(self, db_manager, tracker, context) -> None:
        """Test events at 0, 5 and 12 minutes then an end at 20 minutes."""
        async with db_manager.session() as db:
            for minutes in (0, 5, 12):
                await tracker.record_event(db, "s-1", _at(minutes), context)

        async with db_manager.session() as db:
            ended = await tracker.end_session(db, "s-1", ended_at=_at(20))

        assert ended is not None
        assert ended.is_active is False
        assert ended.total_events == 3
        assert ended.last_activity == _at(12)
        assert ended.end_time == _at(20)
        assert ended.duration_seconds == 20 * 60

    @pytest.mark.asyncio
    async def test_ending_twice_changes_nothing(self, db_manager, tracker, context) -> None:
        """Test that a second end leaves end time and duration alone."""
        async with db_manager.session() as db:
            await tracker.record_event(db, "s-1", START, context)
        async with db_manager.session() as db:
            await tracker.end_session(db, "s-1", ended_at=_at(20))

        async with db_manager.session() as db:
            again = await tracker.end_session(db, "s-1", ended_at=_at(25))

        assert again is not None
        assert again.end_time == _at(20)
        assert again.duration_seconds == 20 * 60

    @pytest.mark.asyncio
    async def test_ended_session_ignores_activity(self, db_manager, tracker, context) -> None:
        """Test that events after the end do not touch the session."""
        async with db_manager.session() as db:
            await tracker.record_event(db, "s-1", START, context)
        async with db_manager.session() as db:
            await tracker.end_session(db, "s-1", ended_at=_at(5))

        async with db_manager.session() as db:
            updated = await tracker.update_activity(db, "s-1", _at(6))
            session = await tracker.get_session(db, "s-1")

        assert updated is False
        assert session.total_events == 1

    @pytest.mark.asyncio
    async def test_out_of_order_activity_keeps_latest(self, db_manager, tracker, context) -> None:
        """Test that last activity never moves backwards."""
        async with db_manager.session() as db:
            await tracker.record_event(db, "s-1", _at(10), context)
            await tracker.record_event(db, "s-1", _at(4), context)
            session = await tracker.get_session(db, "s-1")

        assert session.last_activity == _at(10)
        assert session.total_events == 2

    @pytest.mark.asyncio
    async def test_end_unknown_session_returns_none(self, db_manager, tracker) -> None:
        """Test that ending an unknown id returns None."""
        async with db_manager.session() as db:
            assert await tracker.end_session(db, "missing") is None


class TestInactivitySweep:
    """Tests for closing idle sessions."""

    @pytest.mark.asyncio
    async def test_closes_only_idle_sessions(self, db_manager, tracker, context) -> None:
        """Test that sessions idle past the timeout end at their last activity."""
        async with db_manager.session() as db:
            await tracker.record_event(db, "idle", START, context)
            await tracker.record_event(db, "idle", _at(10), context)
            await tracker.record_event(db, "busy", _at(50), context)

        async with db_manager.session() as db:
            closed = await tracker.close_inactive_sessions(
                db, timedelta(minutes=30), now=_at(60)
            )

        async with db_manager.session() as db:
            idle = await tracker.get_session(db, "idle")
            busy = await tracker.get_session(db, "busy")

        assert closed == 1
        assert idle.is_active is False
        assert idle.end_time == _at(10)
        assert idle.duration_seconds == 10 * 60
        assert busy.is_active is True


class TestSessionQueries:
    """Tests for active session queries and statistics."""

    @pytest.mark.asyncio
    async def test_active_sessions_and_count(self, db_manager, tracker, context) -> None:
        """Test active session listing honours the activity cut-off."""
        other = RequestContext(user_id="user-2", platform="android")
        async with db_manager.session() as db:
            await tracker.record_event(db, "recent", _at(55), context)
            await tracker.record_event(db, "stale", _at(5), other)

        async with db_manager.session() as db:
            active = await tracker.active_sessions(db, active_since=_at(30))
            user_2 = await tracker.active_sessions(db, user_id="user-2")
            count = await tracker.count_active_sessions(db, _at(30))

        assert [s.session_id for s in active] == ["recent"]
        assert [s.session_id for s in user_2] == ["stale"]
        assert count == 1

    @pytest.mark.asyncio
    async def test_session_stats(self, db_manager, tracker, context) -> None:
        """Test aggregate statistics over ended sessions."""
        android = RequestContext(user_id="user-1", platform="android")
        async with db_manager.session() as db:
            await tracker.record_event(db, "a", START, context)
            await tracker.record_event(db, "a", _at(1), context)
            await tracker.record_event(db, "b", _at(30), android)
        async with db_manager.session() as db:
            await tracker.end_session(db, "a", ended_at=_at(10))
            await tracker.end_session(db, "b", ended_at=_at(50))

        async with db_manager.session() as db:
            stats = await tracker.session_stats(
                db,
                user_id="user-1",
                date_range=DateRange(start=START, end=_at(60)),
            )

        assert stats.total_sessions == 2
        assert stats.total_events == 3
        assert stats.avg_duration_seconds == 15 * 60
        assert stats.total_duration_seconds == 30 * 60
        assert stats.avg_events_per_session == 1.5
        assert stats.platforms == ["android", "ios"]
