# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for realtime metrics."""

from datetime import datetime, timedelta, timezone

import pytest

from fitpulse.core.config.settings import RealtimeSettings
from fitpulse.domains.analytics.realtime import RealtimeMetrics
from fitpulse.domains.analytics.schemas import RequestContext
from fitpulse.domains.analytics.sessions import SessionTracker

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def realtime() -> RealtimeMetrics:
    """Create realtime metrics with the default windows."""
    return RealtimeMetrics.from_settings(RealtimeSettings())


class TestSnapshot:
    """Tests for RealtimeMetrics.snapshot."""

    @pytest.mark.asyncio
    async def test_active_users_and_sessions(self, db_manager, realtime, make_event) -> None:
        """Test the 30 minute and 24 hour windows."""
        await make_event(timestamp=NOW - timedelta(minutes=5), user_id="user-1")
        await make_event(timestamp=NOW - timedelta(minutes=10), user_id="user-2")
        await make_event(timestamp=NOW - timedelta(hours=3), user_id="user-3")
        await make_event(timestamp=NOW - timedelta(hours=30), user_id="user-4")

        tracker = SessionTracker()
        async with db_manager.session() as db:
            await tracker.record_event(db, "live", NOW - timedelta(minutes=5), RequestContext(user_id="user-1"))
            await tracker.record_event(db, "stale", NOW - timedelta(hours=3), RequestContext(user_id="user-3"))

        async with db_manager.session() as db:
            snapshot = await realtime.snapshot(db, now=NOW)

        assert snapshot.active_users_now == 2
        assert snapshot.active_users_today == 3
        assert snapshot.active_sessions == 1
        assert snapshot.last_updated == NOW
        assert len(snapshot.hourly_trends) == 25
        assert sum(h["count"] for h in snapshot.hourly_trends) == 3

    @pytest.mark.asyncio
    async def test_recent_events_feed(self, db_manager, make_event) -> None:
        """Test that the feed is newest first, limited and excludes future events."""
        realtime = RealtimeMetrics(recent_events_limit=2)
        for minutes in (1, 2, 3):
            await make_event(timestamp=NOW - timedelta(minutes=minutes), action=f"a{minutes}")
        await make_event(timestamp=NOW + timedelta(minutes=5), action="future")

        async with db_manager.session() as db:
            snapshot = await realtime.snapshot(db, now=NOW)

        assert [e["event_action"] for e in snapshot.recent_events] == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_empty_store(self, db_manager, realtime) -> None:
        """Test that a snapshot over no data is all zeros."""
        async with db_manager.session() as db:
            snapshot = await realtime.snapshot(db, now=NOW)

        result = snapshot.to_dict()
        assert result["active_users_now"] == 0
        assert result["active_users_today"] == 0
        assert result["active_sessions"] == 0
        assert result["recent_events"] == []
        assert result["last_updated"] == NOW.isoformat()
