# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the aggregation engine."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from fitpulse.domains.analytics.aggregator import AnalyticsAggregator
from fitpulse.domains.analytics.directory import StaticUserDirectory
from fitpulse.domains.analytics.exceptions import InvalidQueryError
from fitpulse.domains.analytics.schemas import DateRange, RequestContext
from fitpulse.domains.analytics.sessions import SessionTracker
from fitpulse.domains.analytics.store import EventFilters
from fitpulse.infrastructure.database.models import EventCategory

DAY = datetime(2025, 1, 15, tzinfo=timezone.utc)
WINDOW = DateRange(start=DAY, end=DAY + timedelta(days=1) - timedelta(microseconds=1))


@pytest.fixture
def aggregator() -> AnalyticsAggregator:
    """Create an aggregator with a small user directory."""
    directory = StaticUserDirectory(
        users={
            "user-1": DAY - timedelta(days=90),
            "user-2": DAY + timedelta(hours=3),
            "user-3": DAY - timedelta(days=5),
        }
    )
    return AnalyticsAggregator(directory=directory)


@pytest_asyncio.fixture
async def seeded(make_event) -> None:
    """Three workout and two nutrition events on one day."""
    await make_event(EventCategory.WORKOUT, "start", DAY + timedelta(hours=8), "user-1", value=10)
    await make_event(EventCategory.WORKOUT, "complete", DAY + timedelta(hours=9), "user-1", value=30)
    await make_event(EventCategory.WORKOUT, "start", DAY + timedelta(hours=9), "user-2", value=20)
    await make_event(EventCategory.NUTRITION, "log_meal", DAY + timedelta(hours=12), "user-2")
    await make_event(EventCategory.NUTRITION, "log_meal", DAY + timedelta(hours=18), "user-1")


class TestAggregate:
    """Tests for grouped aggregation."""

    @pytest.mark.asyncio
    async def test_events_by_category(self, db_manager, aggregator, seeded) -> None:
        """Test counts per category."""
        async with db_manager.session() as db:
            result = await aggregator.events_by_category(db, WINDOW)

        assert result == {"workout": 3, "nutrition": 2}

    @pytest.mark.asyncio
    async def test_groups_sorted_by_count(self, db_manager, aggregator, seeded) -> None:
        """Test that groups come largest first with sums and averages."""
        async with db_manager.session() as db:
            groups = await aggregator.aggregate(db, ["event_category"], WINDOW)

        workout, nutrition = groups
        assert workout.key == {"event_category": "workout"}
        assert workout.count == 3
        assert workout.value_sum == 60
        assert workout.value_avg == 20
        assert workout.unique_users == 2
        assert nutrition.count == 2
        assert nutrition.value_avg is None

    @pytest.mark.asyncio
    async def test_multi_field_grouping_with_filter(self, db_manager, aggregator, seeded) -> None:
        """Test grouping by two fields restricted to one user."""
        async with db_manager.session() as db:
            groups = await aggregator.aggregate(
                db,
                ["event_category", "event_action"],
                WINDOW,
                EventFilters(user_id="user-1"),
            )

        keys = {(g.key["event_category"], g.key["event_action"]): g.count for g in groups}
        assert keys == {
            ("workout", "start"): 1,
            ("workout", "complete"): 1,
            ("nutrition", "log_meal"): 1,
        }

    @pytest.mark.asyncio
    async def test_window_bounds_are_inclusive(self, db_manager, aggregator, make_event) -> None:
        """Test that events exactly on both bounds are counted."""
        await make_event(timestamp=WINDOW.start)
        await make_event(timestamp=WINDOW.end)
        await make_event(timestamp=WINDOW.end + timedelta(microseconds=1))

        async with db_manager.session() as db:
            groups = await aggregator.aggregate(db, [], WINDOW)

        assert groups[0].count == 2

    @pytest.mark.asyncio
    async def test_empty_window(self, db_manager, aggregator) -> None:
        """Test that an empty store yields no groups."""
        async with db_manager.session() as db:
            assert await aggregator.aggregate(db, ["event_category"], WINDOW) == []
            assert await aggregator.events_by_category(db, WINDOW) == {}

    @pytest.mark.asyncio
    async def test_unknown_group_field(self, db_manager, aggregator) -> None:
        """Test that unsupported group fields are rejected."""
        async with db_manager.session() as db:
            with pytest.raises(InvalidQueryError):
                await aggregator.aggregate(db, ["ip_address"], WINDOW)

    @pytest.mark.asyncio
    async def test_count_unique_users(self, db_manager, aggregator, seeded) -> None:
        """Test distinct user counting."""
        async with db_manager.session() as db:
            total = await aggregator.count_unique_users(db, WINDOW)
            nutrition = await aggregator.count_unique_users(
                db, WINDOW, EventFilters(category=EventCategory.NUTRITION)
            )

        assert total == 2
        assert nutrition == 2


class TestEngagement:
    """Tests for engagement metrics."""

    @pytest.mark.asyncio
    async def test_engagement_metrics(self, db_manager, aggregator, seeded) -> None:
        """Test user, session, retention and bounce figures."""
        tracker = SessionTracker()
        week = DateRange(start=DAY, end=DAY + timedelta(days=7))
        async with db_manager.session() as db:
            ctx_1 = RequestContext(user_id="user-1")
            ctx_2 = RequestContext(user_id="user-2")
            # user-1 returns on a later day, user-2 does not
            await tracker.record_event(db, "a", DAY + timedelta(hours=8), ctx_1)
            await tracker.record_event(db, "a", DAY + timedelta(hours=8, minutes=5), ctx_1)
            await tracker.record_event(db, "b", DAY + timedelta(days=2), ctx_1)
            await tracker.record_event(db, "c", DAY + timedelta(hours=9), ctx_2)

        async with db_manager.session() as db:
            metrics = await aggregator.engagement_metrics(db, week)

        assert metrics.total_users == 3
        assert metrics.new_users == 1
        assert metrics.active_users == 2
        assert metrics.avg_events_per_user == 2.5
        assert metrics.total_sessions == 3
        assert metrics.retention_rate == 0.5
        assert metrics.bounce_rate == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_retention_uses_local_days(self, db_manager) -> None:
        """Test that sessions on one local day are not a return visit."""
        aggregator = AnalyticsAggregator(tz=ZoneInfo("America/New_York"))
        tracker = SessionTracker()
        ctx = RequestContext(user_id="user-1")
        # 23:00 and 03:00 UTC fall on the same New York evening
        async with db_manager.session() as db:
            await tracker.record_event(db, "a", DAY + timedelta(hours=23), ctx)
            await tracker.record_event(db, "b", DAY + timedelta(days=1, hours=3), ctx)

        async with db_manager.session() as db:
            metrics = await aggregator.engagement_metrics(
                db, DateRange(start=DAY, end=DAY + timedelta(days=2))
            )

        assert metrics.retention_rate == 0.0

    @pytest.mark.asyncio
    async def test_engagement_scores(self, db_manager, aggregator, seeded) -> None:
        """Test the weighted score ranking."""
        tracker = SessionTracker()
        async with db_manager.session() as db:
            await tracker.record_event(
                db, "a", DAY + timedelta(hours=8), RequestContext(user_id="user-1")
            )

        async with db_manager.session() as db:
            scores = await aggregator.engagement_scores(db, WINDOW)

        first, second = scores
        assert first.user_id == "user-1"
        assert first.events == 3
        assert first.sessions == 1
        assert first.active_days == 1
        assert first.score == 3 + 5 + 10
        assert second.user_id == "user-2"
        assert second.score == 2


class TestFeatureUsage:
    """Tests for feature usage ranking."""

    @pytest.mark.asyncio
    async def test_ranks_features_with_adoption(self, db_manager, aggregator, make_event) -> None:
        """Test ranking by usage with time spent and adoption rates."""
        at = DAY + timedelta(hours=10)
        for user, value in (("user-1", 30), ("user-1", 60), ("user-2", 90)):
            await make_event(EventCategory.FEATURE_USAGE, "meal_planner_open", at, user,
                             label="meal_planner", value=value)
        await make_event(EventCategory.FEATURE_USAGE, "coach_open", at, "user-1")
        await make_event(EventCategory.WORKOUT, "start", at, "user-3")

        async with db_manager.session() as db:
            usage = await aggregator.feature_usage(db, WINDOW)

        planner, coach = usage.top_features
        assert planner.feature == "meal_planner"
        assert planner.usage_count == 3
        assert planner.unique_users == 2
        assert planner.avg_time_spent == 60.0
        assert coach.feature == "coach_open"
        assert coach.avg_time_spent is None
        assert usage.feature_adoption == {"meal_planner": round(2 / 3, 4), "coach_open": round(1 / 3, 4)}


class TestTrends:
    """Tests for daily and hourly trends and timelines."""

    @pytest.mark.asyncio
    async def test_daily_trends_fill_empty_days(self, db_manager, aggregator, seeded) -> None:
        """Test that days without events appear with zero counts."""
        window = DateRange(start=DAY - timedelta(days=1), end=DAY + timedelta(days=1, hours=1))

        async with db_manager.session() as db:
            trends = await aggregator.daily_trends(db, window)

        assert trends == [
            {"date": "2025-01-14", "count": 0, "unique_users": 0},
            {"date": "2025-01-15", "count": 5, "unique_users": 2},
            {"date": "2025-01-16", "count": 0, "unique_users": 0},
        ]

    @pytest.mark.asyncio
    async def test_hourly_trends(self, db_manager, aggregator, seeded) -> None:
        """Test hourly buckets across the window."""
        window = DateRange(start=DAY + timedelta(hours=8), end=DAY + timedelta(hours=10))

        async with db_manager.session() as db:
            trends = await aggregator.hourly_trends(db, window)

        assert [t["count"] for t in trends] == [1, 2, 0]

    @pytest.mark.asyncio
    async def test_user_timeline(self, db_manager, aggregator, seeded) -> None:
        """Test one user's per-day categories."""
        async with db_manager.session() as db:
            timeline = await aggregator.user_engagement_timeline(db, "user-2", WINDOW)

        assert timeline == [
            {"date": "2025-01-15", "total": 2, "categories": {"workout": 1, "nutrition": 1}}
        ]


class TestPayloads:
    """Tests for report and dashboard payloads."""

    @pytest.mark.asyncio
    async def test_report_payload(self, db_manager, aggregator, seeded, make_event) -> None:
        """Test the stored report payload shape."""
        await make_event(EventCategory.FEATURE_USAGE, "planner_open", DAY + timedelta(hours=10),
                         "user-1", label="meal_planner", value=45)

        async with db_manager.session() as db:
            payload = await aggregator.report_payload(db, WINDOW)

        assert payload["summary"]["total_events"] == 6
        assert payload["summary"]["unique_users"] == 2
        assert payload["summary"]["date_range"] == WINDOW.to_dict()
        assert [g["event_category"] for g in payload["details"]["by_category"]] == [
            "workout",
            "nutrition",
            "feature_usage",
        ]
        assert payload["details"]["by_category"][0]["count"] == 3

        engagement = payload["engagement"]
        assert engagement["total_users"] == 3
        assert engagement["new_users"] == 1
        assert engagement["active_users"] == 2
        assert engagement["avg_events_per_user"] == 3.0

        [planner] = payload["features"]["top_features"]
        assert planner["feature"] == "meal_planner"
        assert planner["usage_count"] == 1
        assert "meal_planner" in payload["features"]["feature_adoption"]

        assert payload["daily_trends"] == [{"date": "2025-01-15", "count": 6, "unique_users": 2}]

    @pytest.mark.asyncio
    async def test_user_report_payload_is_scoped(self, db_manager, aggregator, seeded) -> None:
        """Test that a per-user report only covers that user's activity."""
        async with db_manager.session() as db:
            payload = await aggregator.report_payload(db, WINDOW, user_id="user-2")

        assert payload["summary"]["total_events"] == 2
        assert payload["engagement"]["active_users"] == 1
        assert payload["features"]["top_features"] == []
        assert payload["daily_trends"] == [{"date": "2025-01-15", "count": 2, "unique_users": 1}]

    @pytest.mark.asyncio
    async def test_org_report_payload_carries_business_metrics(self, db_manager, seeded) -> None:
        """Test that org-wide reports store business metrics and user reports do not."""
        business = AsyncMock()
        business.business_metrics = AsyncMock(return_value={"mrr": 1200.0})
        aggregator = AnalyticsAggregator(business_metrics=business)

        async with db_manager.session() as db:
            org = await aggregator.report_payload(db, WINDOW)
            user = await aggregator.report_payload(db, WINDOW, user_id="user-1")

        assert org["business"] == {"mrr": 1200.0}
        assert user["business"] is None
        business.business_metrics.assert_awaited_once_with(WINDOW)

    @pytest.mark.asyncio
    async def test_report_payload_for_empty_window(self, db_manager, aggregator) -> None:
        """Test that an empty window still produces a payload."""
        async with db_manager.session() as db:
            payload = await aggregator.report_payload(db, WINDOW)

        assert payload["summary"]["total_events"] == 0
        assert payload["details"]["by_category"] == []

    @pytest.mark.asyncio
    async def test_dashboard_includes_business_metrics(self, db_manager, seeded) -> None:
        """Test that org dashboards carry business metrics and user ones do not."""
        business = AsyncMock()
        business.business_metrics = AsyncMock(return_value={"mrr": 1200.0})
        aggregator = AnalyticsAggregator(business_metrics=business)

        async with db_manager.session() as db:
            org = await aggregator.dashboard(db, WINDOW)
            user = await aggregator.dashboard(db, WINDOW, user_id="user-1")

        assert org["business"] == {"mrr": 1200.0}
        assert org["categories"] == {"workout": 3, "nutrition": 2}
        assert org["realtime"] is None
        assert user["business"] is None
        assert user["categories"] == {"workout": 2, "nutrition": 1}
        business.business_metrics.assert_awaited_once_with(WINDOW)
