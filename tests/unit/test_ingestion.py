# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the ingestion service."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from fitpulse.domains.analytics.exceptions import (
    BatchTooLargeError,
    IngestionError,
    InvalidEventError,
)
from fitpulse.domains.analytics.ingestion import IngestionService, IngestResult
from fitpulse.domains.analytics.schemas import RequestContext
from fitpulse.domains.analytics.sessions import SessionTracker
from fitpulse.domains.analytics.store import EventStore
from fitpulse.infrastructure.database.connection import DatabaseError
from fitpulse.infrastructure.database.models import AnalyticsEvent

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


def _draft(event_id: str, action: str = "start", **overrides) -> dict:
    draft = {
        "event_id": event_id,
        "category": "workout",
        "action": action,
        "timestamp": T0.isoformat(),
    }
    draft.update(overrides)
    return draft


@pytest.fixture
def context() -> RequestContext:
    """Create a request context for one client session."""
    return RequestContext(
        user_id="user-1",
        session_id="s-1",
        user_agent="FitPulse/2.1 (iPhone)",
        ip_address="203.0.113.7",
        platform="ios",
    )


@pytest.fixture
def service(db_manager) -> IngestionService:
    """Create an ingestion service on the test database."""
    return IngestionService(db_manager, batch_size=3, flush_interval=60.0, write_timeout=5.0)


async def _stored(db_manager) -> list[AnalyticsEvent]:
    async with db_manager.session() as db:
        result = await db.execute(select(AnalyticsEvent).order_by(AnalyticsEvent.timestamp))
        return list(result.scalars().all())


class TestIngestBatch:
    """Tests for the batch path."""

    @pytest.mark.asyncio
    async def test_writes_batch_with_context(self, db_manager, service, context) -> None:
        """Test that every event gets the request context."""
        result = await service.ingest_batch([_draft("e-1"), _draft("e-2", "complete")], context)

        events = await _stored(db_manager)
        assert result == IngestResult(accepted=2, inserted=2)
        assert {e.id for e in events} == {"e-1", "e-2"}
        for event in events:
            assert event.user_id == "user-1"
            assert event.session_id == "s-1"
            assert event.user_agent == "FitPulse/2.1 (iPhone)"
            assert event.ip_address == "203.0.113.7"
            assert event.platform == "ios"
            assert event.event_type == "workout_interaction"

    @pytest.mark.asyncio
    async def test_redelivered_batch_is_not_double_counted(self, db_manager, service, context) -> None:
        """Test that resending a batch inserts nothing and leaves the session alone."""
        batch = [_draft("e-1"), _draft("e-2")]

        first = await service.ingest_batch(batch, context)
        second = await service.ingest_batch(batch, context)

        async with db_manager.session() as db:
            session = await SessionTracker().get_session(db, "s-1")

        assert first.inserted == 2
        assert second.inserted == 0
        assert second.duplicates == 2
        assert len(await _stored(db_manager)) == 2
        assert session.total_events == 2

    @pytest.mark.asyncio
    async def test_missing_ids_and_timestamps_are_stamped(self, db_manager, service) -> None:
        """Test that the server assigns ids and timestamps."""
        await service.ingest_batch([{"category": "nutrition", "action": "log_meal"}])

        events = await _stored(db_manager)
        assert len(events) == 1
        assert events[0].id
        assert events[0].timestamp is not None
        assert events[0].event_type == "nutrition_interaction"

    @pytest.mark.asyncio
    async def test_malformed_event_rejects_whole_batch(self, db_manager, service, context) -> None:
        """Test that one bad draft means nothing is written."""
        batch = [_draft("e-1"), {"event_id": "e-2", "category": "teleport", "action": "go"}]

        with pytest.raises(InvalidEventError):
            await service.ingest_batch(batch, context)

        assert await _stored(db_manager) == []

    @pytest.mark.asyncio
    async def test_blank_action_is_rejected(self, service) -> None:
        """Test that a whitespace-only action is invalid."""
        with pytest.raises(InvalidEventError):
            await service.ingest_batch([_draft("e-1", action="   ")])

    @pytest.mark.asyncio
    async def test_batch_too_large(self, db_manager) -> None:
        """Test that batches over the maximum are refused."""
        service = IngestionService(db_manager, max_batch_size=2)

        with pytest.raises(BatchTooLargeError) as exc_info:
            await service.ingest_batch([_draft("a"), _draft("b"), _draft("c")])

        assert exc_info.value.limit == 2

    @pytest.mark.asyncio
    async def test_store_failure_raises_ingestion_error(self) -> None:
        """Test that write failures surface as IngestionError."""
        db_manager = MagicMock()
        db_manager.session.side_effect = DatabaseError("connection refused")
        service = IngestionService(db_manager)

        with pytest.raises(IngestionError):
            await service.ingest_batch([_draft("e-1")])

    @pytest.mark.asyncio
    async def test_empty_batch(self, service) -> None:
        """Test that an empty batch is a no-op."""
        result = await service.ingest_batch([])

        assert result.accepted == 0
        assert result.inserted == 0


class TestTrackAndFlush:
    """Tests for the queue path."""

    @pytest.mark.asyncio
    async def test_track_queues_until_flush(self, db_manager, service, context) -> None:
        """Test that tracked events are written by flush()."""
        assert service.track(_draft("e-1"), context) is True
        assert service.queue_size == 1
        assert await _stored(db_manager) == []

        inserted = await service.flush()

        assert inserted == 1
        assert service.queue_size == 0
        assert len(await _stored(db_manager)) == 1

    @pytest.mark.asyncio
    async def test_malformed_event_is_dropped(self, service) -> None:
        """Test that track() drops invalid drafts without raising."""
        assert service.track({"category": "workout"}) is False
        assert service.queue_size == 0
        assert service.get_stats()["dropped_malformed"] == 1

    @pytest.mark.asyncio
    async def test_reaching_batch_size_schedules_flush(self, db_manager, service) -> None:
        """Test that the queue flushes itself at the batch size."""
        for i in range(3):
            service.track(_draft(f"e-{i}"))

        await service.flush_now()

        assert service.queue_size == 0
        assert len(await _stored(db_manager)) == 3

    @pytest.mark.asyncio
    async def test_failed_flush_requeues_in_order(self, service) -> None:
        """Test that a failed write puts the batch back at the front."""
        service.track(_draft("e-1"))
        service.track(_draft("e-2"))

        with patch.object(service, "_write", AsyncMock(side_effect=DatabaseError("down"))):
            assert await service.flush() == 0

        service.track(_draft("e-3"))

        assert [draft.event_id for draft, _ in service._queue] == ["e-1", "e-2", "e-3"]
        assert service.get_stats()["failed_flushes"] == 1

    @pytest.mark.asyncio
    async def test_timed_out_flush_requeues(self, db_manager) -> None:
        """Test that a write exceeding the timeout counts as a failure."""
        service = IngestionService(db_manager, batch_size=100, write_timeout=0.01)

        async def _slow(batch):
            await asyncio.sleep(1)

        service.track(_draft("e-1"))
        with patch.object(service, "_write", _slow):
            assert await service.flush() == 0

        assert service.queue_size == 1

    @pytest.mark.asyncio
    async def test_concurrent_flush_is_noop(self, service) -> None:
        """Test that a flush while another is in flight returns at once."""
        service.track(_draft("e-1"))

        async with service._flush_lock:
            assert await service.flush() == 0

        assert service.queue_size == 1

    @pytest.mark.asyncio
    async def test_events_tracked_during_flush_stay_queued(self, db_manager, service) -> None:
        """Test that events queued mid-flush wait for the next flush."""
        service.track(_draft("e-1"))
        original_write = service._write

        async def _write_and_track(batch):
            service.track(_draft("e-2"))
            return await original_write(batch)

        with patch.object(service, "_write", _write_and_track):
            await service.flush()

        assert [draft.event_id for draft, _ in service._queue] == ["e-2"]
        assert [e.id for e in await _stored(db_manager)] == ["e-1"]

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining_events(self, db_manager, service) -> None:
        """Test that stop() drains the queue."""
        await service.start()
        assert service.is_running is True

        service.track(_draft("e-1"))
        await service.stop()

        assert service.is_running is False
        assert len(await _stored(db_manager)) == 1

    @pytest.mark.asyncio
    async def test_timer_flushes_partial_batch(self, db_manager) -> None:
        """Test that the interval loop flushes below the batch size."""
        service = IngestionService(db_manager, batch_size=100, flush_interval=0.05)
        await service.start()

        service.track(_draft("e-1"))
        await asyncio.sleep(0.2)

        assert len(await _stored(db_manager)) == 1
        await service.stop()


class TestDomainHelpers:
    """Tests for the server-side tracking helpers."""

    @pytest.mark.asyncio
    async def test_track_workout_event(self, db_manager, service) -> None:
        """Test the workout helper's category, label, value and metadata."""
        service.track_workout_event(
            "user-1",
            "complete",
            {"id": "w-9", "workout_type": "hiit", "duration": 1800, "exercises": ["a", "b"]},
        )
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_category == "workout"
        assert event.event_action == "complete"
        assert event.event_type == "workout_interaction"
        assert event.event_label == "hiit"
        assert event.event_value == 1800
        assert event.event_metadata == {"workout_id": "w-9", "exercise_count": 2}
        assert event.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_track_feature_usage(self, db_manager, service) -> None:
        """Test the feature usage helper."""
        service.track_feature_usage("user-1", "meal_planner", "open", time_spent=42.0)
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_category == "feature_usage"
        assert event.event_action == "meal_planner_open"
        assert event.event_label == "meal_planner"
        assert event.event_value == 42.0

    @pytest.mark.asyncio
    async def test_track_error(self, db_manager, service) -> None:
        """Test the error helper records type and message."""
        service.track_error(ValueError("bad macros"), user_id="user-1")
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_category == "error"
        assert event.event_label == "ValueError"
        assert event.event_metadata["error_message"] == "bad macros"

    @pytest.mark.asyncio
    async def test_track_api_request(self, db_manager, service, context) -> None:
        """Test that API requests are recorded with their duration."""
        service.track_api_request("GET", "/api/v1/analytics/dashboard", 200, 12.5, context)
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_type == "api_request"
        assert event.event_action == "GET /api/v1/analytics/dashboard"
        assert event.event_label == "200"
        assert event.event_value == 12.5

    @pytest.mark.asyncio
    async def test_track_nutrition_event(self, db_manager, service) -> None:
        """Test the nutrition helper uses calories as the value."""
        service.track_nutrition_event(
            "user-1",
            "log_meal",
            {"meal_type": "lunch", "calories": 650, "macros": {"protein": 40}},
        )
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_category == "nutrition"
        assert event.event_label == "lunch"
        assert event.event_value == 650
        assert event.event_metadata == {"meal_type": "lunch", "macros": {"protein": 40}}

    @pytest.mark.asyncio
    async def test_track_subscription_event(self, db_manager, service) -> None:
        """Test the subscription helper records plan and amount."""
        service.track_subscription_event(
            "user-1",
            "upgrade",
            {"plan_id": "pro", "plan_name": "Pro", "interval": "monthly", "amount": 9.99},
        )
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_category == "subscription"
        assert event.event_label == "Pro"
        assert event.event_value == 9.99
        assert event.event_metadata == {"plan_id": "pro", "billing_interval": "monthly"}

    @pytest.mark.asyncio
    async def test_track_navigation(self, db_manager, service) -> None:
        """Test the navigation helper labels the transition."""
        service.track_navigation("user-1", "Dashboard", "Workouts", "tab")
        await service.flush()

        [event] = await _stored(db_manager)
        assert event.event_category == "navigation"
        assert event.event_action == "screen_change"
        assert event.event_label == "Dashboard -> Workouts"
