# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Server-side event ingestion.

The IngestionService is the boundary between event producers and the
event store. It has two entry points:

1. ingest_batch(): a client batch written in one transaction. The caller
   learns success or failure for the batch as a whole.
2. track(): a single event from server-side code. It is appended to an
   internal queue that is flushed when it reaches ``batch_size`` or on a
   fixed interval, whichever comes first.

Both paths stamp missing timestamps and event ids before the first write
attempt, so a retried write carries the same ids and the event store
drops the copies it already holds.

Usage:
    ingestion = IngestionService.from_settings(db_manager, settings)
    await ingestion.start()

    ingestion.track_workout_event("user-1", "complete", {"duration": 1800})
    result = await ingestion.ingest_batch(drafts, context)

    await ingestion.stop()
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Mapping, Sequence, TypedDict
from uuid import uuid4

from fitpulse.domains.analytics.exceptions import (
    BatchTooLargeError,
    IngestionError,
    InvalidEventError,
)
from fitpulse.domains.analytics.schemas import EventDraft, RequestContext, parse_draft
from fitpulse.domains.analytics.sessions import SessionTracker
from fitpulse.domains.analytics.store import EventStore
from fitpulse.infrastructure.database.models import AnalyticsEvent, EventCategory
from fitpulse.utils.datetime import utc_now

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from fitpulse.core.config.settings import Settings
    from fitpulse.infrastructure.database.connection import DatabaseManager

logger = logging.getLogger(__name__)

WorkoutAction = Literal["start", "complete", "pause", "resume", "cancel"]
NutritionAction = Literal["log_meal", "scan_barcode", "add_custom_food", "update_goal"]
SubscriptionAction = Literal["subscribe", "cancel", "upgrade", "downgrade", "reactivate"]


class WorkoutMetadata(TypedDict, total=False):
    workout_id: str | None
    exercise_count: int | None
    difficulty: str | None
    tags: list[str] | None


class NutritionMetadata(TypedDict, total=False):
    meal_type: str | None
    food_id: str | None
    quantity: float | None
    macros: dict[str, float] | None


class SubscriptionMetadata(TypedDict, total=False):
    plan_id: str | None
    billing_interval: str | None
    payment_method: str | None
    previous_plan: str | None


class NavigationMetadata(TypedDict, total=False):
    from_screen: str
    to_screen: str
    navigation_method: str | None


@dataclass
class IngestResult:
    """Outcome of writing one batch.

    Attributes:
        accepted: Events in the batch.
        inserted: Events newly written (the rest were already stored).
    """

    accepted: int
    inserted: int

    @property
    def duplicates(self) -> int:
        """Events skipped because their id was already stored."""
        return self.accepted - self.inserted

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "accepted": self.accepted,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
        }


# Queue entry: a stamped draft and the context it arrived with
_QueuedEvent = tuple[EventDraft, RequestContext]


def _stamp(draft: EventDraft) -> EventDraft:
    """Assign an event id and server timestamp where the producer did not."""
    updates: dict[str, Any] = {}
    if draft.event_id is None:
        updates["event_id"] = str(uuid4())
    if draft.timestamp is None:
        updates["timestamp"] = utc_now()
    return draft.model_copy(update=updates) if updates else draft


def _to_event(draft: EventDraft, context: RequestContext) -> AnalyticsEvent:
    return AnalyticsEvent(
        id=draft.event_id or str(uuid4()),
        user_id=context.user_id,
        session_id=context.session_id,
        event_type=draft.resolved_event_type,
        event_category=draft.category.value,
        event_action=draft.action,
        event_label=draft.label,
        event_value=draft.value,
        event_metadata=dict(draft.metadata),
        platform=draft.platform or context.platform,
        user_agent=context.user_agent,
        ip_address=context.ip_address,
        timestamp=draft.timestamp or utc_now(),
        created_at=utc_now(),
    )


class IngestionService:
    """Validates, enriches and writes events to the event store.

    Attributes:
        batch_size: Queue length that triggers an immediate flush.
        flush_interval: Seconds between timer-driven flushes.
        write_timeout: Upper bound in seconds for one batch write.
        max_batch_size: Largest batch ingest_batch() accepts.
    """

    def __init__(
        self,
        db_manager: "DatabaseManager",
        store: EventStore | None = None,
        sessions: SessionTracker | None = None,
        batch_size: int = 10,
        flush_interval: float = 5.0,
        write_timeout: float = 10.0,
        max_batch_size: int = 500,
    ) -> None:
        """Initialize the ingestion service.

        Args:
            db_manager: Database manager used for writes.
            store: Event store accessor.
            sessions: Session tracker updated for every new event.
            batch_size: Queue length that triggers an immediate flush.
            flush_interval: Seconds between timer-driven flushes.
            write_timeout: Upper bound in seconds for one batch write.
            max_batch_size: Largest batch ingest_batch() accepts.
        """
        self._db = db_manager
        self._store = store or EventStore()
        self._sessions = sessions or SessionTracker()
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.write_timeout = write_timeout
        self.max_batch_size = max_batch_size

        self._queue: list[_QueuedEvent] = []
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task[int]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

        self._flushed_batches = 0
        self._failed_flushes = 0
        self._dropped_malformed = 0

    @classmethod
    def from_settings(
        cls,
        db_manager: "DatabaseManager",
        settings: "Settings",
        store: EventStore | None = None,
        sessions: SessionTracker | None = None,
    ) -> "IngestionService":
        """Create a service configured from application settings."""
        return cls(
            db_manager,
            store=store,
            sessions=sessions,
            batch_size=settings.ingestion.batch_size,
            flush_interval=settings.ingestion.flush_interval_seconds,
            write_timeout=settings.ingestion.write_timeout_seconds,
            max_batch_size=settings.ingestion.max_batch_size,
        )

    @property
    def queue_size(self) -> int:
        """Number of events waiting in the internal queue."""
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        """Whether the timer loop is running."""
        return self._loop_task is not None and not self._loop_task.done()

    # =========================================================================
    # Batch path
    # =========================================================================

    async def ingest_batch(
        self,
        drafts: Sequence[EventDraft | Mapping[str, Any]],
        context: RequestContext | None = None,
    ) -> IngestResult:
        """Write a client batch in one transaction.

        Args:
            drafts: Event drafts.
            context: Request context applied to every event.

        Returns:
            IngestResult with accepted and inserted counts.

        Raises:
            BatchTooLargeError: If the batch exceeds max_batch_size.
            InvalidEventError: If any draft is malformed.
            IngestionError: If the write fails or times out.
        """
        if len(drafts) > self.max_batch_size:
            raise BatchTooLargeError(len(drafts), self.max_batch_size)

        context = context or RequestContext()
        try:
            batch = [(_stamp(parse_draft(draft)), context) for draft in drafts]
        except InvalidEventError:
            logger.warning("Rejected malformed batch of %d events", len(drafts))
            raise

        if not batch:
            return IngestResult(accepted=0, inserted=0)

        try:
            result = await self._write_with_timeout(batch)
        except asyncio.TimeoutError as e:
            raise IngestionError(
                f"Batch write timed out after {self.write_timeout:.1f}s"
            ) from e
        except Exception as e:
            logger.error("Batch write failed: %s", e)
            raise IngestionError(f"Batch write failed: {e}") from e

        logger.info(
            "Ingested batch: accepted=%d, inserted=%d, session=%s",
            result.accepted,
            result.inserted,
            context.session_id,
        )
        return result

    # =========================================================================
    # Queue path
    # =========================================================================

    def track(
        self,
        draft: EventDraft | Mapping[str, Any],
        context: RequestContext | None = None,
    ) -> bool:
        """Queue one event for the next flush.

        Never blocks and never raises for bad input: malformed drafts are
        logged and dropped.

        Args:
            draft: Event draft.
            context: Request context for this event.

        Returns:
            True if the event was queued.
        """
        try:
            parsed = _stamp(parse_draft(draft))
        except InvalidEventError as e:
            self._dropped_malformed += 1
            logger.warning("Dropping malformed event: %s", e)
            return False

        self._queue.append((parsed, context or RequestContext()))

        if len(self._queue) >= self.batch_size:
            self._schedule_flush()
        return True

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the timer picks the queue up once started
            return
        task = loop.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> int:
        """Write the queued events as one batch.

        A flush that finds another flush in flight returns immediately.
        On failure or timeout the batch goes back to the front of the
        queue for the next attempt.

        Returns:
            Number of events newly inserted.
        """
        if self._flush_lock.locked():
            return 0

        async with self._flush_lock:
            if not self._queue:
                return 0

            batch = self._queue[:]
            self._queue.clear()

            try:
                result = await self._write_with_timeout(batch)
            except asyncio.CancelledError:
                self._queue[:0] = batch
                raise
            except Exception as e:
                self._queue[:0] = batch
                self._failed_flushes += 1
                logger.warning(
                    "Flush of %d events failed, requeued: %s",
                    len(batch),
                    e or type(e).__name__,
                )
                return 0

            self._flushed_batches += 1
            logger.debug(
                "Flushed %d events (%d new)",
                result.accepted,
                result.inserted,
            )
            return result.inserted

    async def flush_now(self) -> int:
        """Wait for any in-flight flush, then flush whatever is queued.

        Intended for controlled teardown.
        """
        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
        async with self._flush_lock:
            pass
        return await self.flush()

    async def _write_with_timeout(self, batch: list[_QueuedEvent]) -> IngestResult:
        return await asyncio.wait_for(self._write(batch), timeout=self.write_timeout)

    async def _write(self, batch: list[_QueuedEvent]) -> IngestResult:
        async with self._db.session() as db:
            return await self.persist(db, batch)

    async def persist(
        self,
        db: "AsyncSession",
        batch: Sequence[_QueuedEvent],
    ) -> IngestResult:
        """Insert a stamped batch and update the sessions it touches.

        Only newly inserted events count against their session, so a
        redelivered batch leaves session counters unchanged.

        Args:
            db: Database session (the caller owns the transaction).
            batch: Stamped drafts with their contexts.

        Returns:
            IngestResult for the batch.
        """
        events = [_to_event(draft, context) for draft, context in batch]
        contexts = {draft.event_id: context for draft, context in batch}

        inserted = await self._store.add_events(db, events)

        for event in sorted(inserted, key=lambda e: e.timestamp):
            if event.session_id:
                await self._sessions.record_event(
                    db,
                    event.session_id,
                    event.timestamp,
                    contexts.get(event.id),
                )

        return IngestResult(accepted=len(events), inserted=len(inserted))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the timer-driven flush loop."""
        if self.is_running:
            return
        self._stopping = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run(), name="ingestion-flush-loop")
        logger.info(
            "Ingestion flush loop started (batch_size=%d, interval=%.1fs)",
            self.batch_size,
            self.flush_interval,
        )

    async def stop(self) -> None:
        """Stop the loop and flush what is left."""
        if self._loop_task is not None:
            self._stopping.set()
            await self._loop_task
            self._loop_task = None

        await self.flush_now()
        if self._queue:
            logger.warning("Ingestion stopped with %d unflushed events", len(self._queue))
        logger.info("Ingestion flush loop stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                await self.flush()

    def get_stats(self) -> dict[str, Any]:
        """Get ingestion statistics."""
        return {
            "is_running": self.is_running,
            "queue_size": len(self._queue),
            "flushed_batches": self._flushed_batches,
            "failed_flushes": self._failed_flushes,
            "dropped_malformed": self._dropped_malformed,
        }

    # =========================================================================
    # Domain helpers
    # =========================================================================

    def track_event(
        self,
        category: EventCategory,
        action: str,
        user_id: str | None = None,
        label: str | None = None,
        value: float | None = None,
        metadata: Mapping[str, Any] | None = None,
        event_type: str | None = None,
        session_id: str | None = None,
    ) -> bool:
        """Queue a server-side event for a user."""
        draft = {
            "category": category,
            "action": action,
            "label": label,
            "value": value,
            "metadata": {k: v for k, v in (metadata or {}).items() if v is not None},
            "event_type": event_type,
        }
        return self.track(draft, RequestContext(user_id=user_id, session_id=session_id))

    def track_workout_event(
        self,
        user_id: str,
        action: WorkoutAction,
        workout: Mapping[str, Any] | None = None,
    ) -> bool:
        """Track a workout interaction (start, complete, pause, resume, cancel)."""
        workout = workout or {}
        exercises = workout.get("exercises")
        metadata: WorkoutMetadata = {
            "workout_id": workout.get("id"),
            "exercise_count": len(exercises) if exercises is not None else None,
            "difficulty": workout.get("difficulty"),
            "tags": workout.get("tags"),
        }
        return self.track_event(
            EventCategory.WORKOUT,
            action,
            user_id=user_id,
            label=workout.get("workout_type") or workout.get("name"),
            value=workout.get("duration"),
            metadata=metadata,
            event_type="workout_interaction",
        )

    def track_nutrition_event(
        self,
        user_id: str,
        action: NutritionAction,
        nutrition: Mapping[str, Any] | None = None,
    ) -> bool:
        """Track a nutrition interaction such as a logged meal."""
        nutrition = nutrition or {}
        metadata: NutritionMetadata = {
            "meal_type": nutrition.get("meal_type"),
            "food_id": nutrition.get("food_id"),
            "quantity": nutrition.get("quantity"),
            "macros": nutrition.get("macros"),
        }
        return self.track_event(
            EventCategory.NUTRITION,
            action,
            user_id=user_id,
            label=nutrition.get("food_name") or nutrition.get("meal_type"),
            value=nutrition.get("calories"),
            metadata=metadata,
            event_type="nutrition_interaction",
        )

    def track_subscription_event(
        self,
        user_id: str,
        action: SubscriptionAction,
        subscription: Mapping[str, Any] | None = None,
    ) -> bool:
        """Track a subscription change."""
        subscription = subscription or {}
        metadata: SubscriptionMetadata = {
            "plan_id": subscription.get("plan_id"),
            "billing_interval": subscription.get("interval"),
            "payment_method": subscription.get("payment_method"),
            "previous_plan": subscription.get("previous_plan"),
        }
        return self.track_event(
            EventCategory.SUBSCRIPTION,
            action,
            user_id=user_id,
            label=subscription.get("plan_name"),
            value=subscription.get("amount"),
            metadata=metadata,
            event_type="subscription_interaction",
        )

    def track_feature_usage(
        self,
        user_id: str,
        feature: str,
        action: str,
        metadata: Mapping[str, Any] | None = None,
        time_spent: float | None = None,
    ) -> bool:
        """Track use of a product feature.

        ``time_spent`` (seconds) feeds the average-time-spent ranking.
        """
        return self.track_event(
            EventCategory.FEATURE_USAGE,
            f"{feature}_{action}",
            user_id=user_id,
            label=feature,
            value=time_spent,
            metadata={"feature": feature, "action": action, **(metadata or {})},
            event_type="feature_usage",
        )

    def track_error(
        self,
        error: BaseException,
        user_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Track an application error."""
        return self.track_event(
            EventCategory.ERROR,
            "application_error",
            user_id=user_id,
            label=type(error).__name__,
            metadata={
                "error_message": str(error),
                "error_stack": "".join(traceback.format_exception(error)),
                "context": dict(context) if context else None,
            },
            event_type="error",
        )

    def track_navigation(
        self,
        user_id: str,
        from_screen: str,
        to_screen: str,
        navigation_method: str | None = None,
    ) -> bool:
        """Track a screen change."""
        metadata: NavigationMetadata = {
            "from_screen": from_screen,
            "to_screen": to_screen,
            "navigation_method": navigation_method,
        }
        return self.track_event(
            EventCategory.NAVIGATION,
            "screen_change",
            user_id=user_id,
            label=f"{from_screen} -> {to_screen}",
            metadata=metadata,
            event_type="navigation",
        )

    def track_api_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        context: RequestContext,
        category: EventCategory = EventCategory.NAVIGATION,
    ) -> bool:
        """Track one served API request with its duration as the value."""
        return self.track(
            {
                "event_type": "api_request",
                "category": category,
                "action": f"{method} {path}"[:100],
                "label": str(status_code),
                "value": duration_ms,
                "metadata": {
                    "method": method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            },
            context,
        )
