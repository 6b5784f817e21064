# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Client-side event buffer.

Events tracked on the device are queued in memory and mirrored to local
storage, so they survive a restart while offline. The queue is sent when it
reaches ``batch_size`` or when the flush timer fires, in requests of at
most ``max_batch_size`` events.

Events are validated against the ingestion schema when tracked, and a batch
the server rejects as malformed is dropped. Any other failed send leaves
the queue untouched and puts the buffer offline. No flush happens while
offline; set_online_status(True) retries once right away. Tracking never raises: every failure is logged and swallowed.

Usage:
    buffer = EventBuffer(HttpTransport("https://api.fitpulse.app"), JsonFileStorage(path))
    await buffer.start()

    await buffer.track(EventCategory.WORKOUT, "start", label="hiit")
    await buffer.track_screen_view("Dashboard")

    await buffer.stop()
"""

import asyncio
import json
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Mapping
from uuid import uuid4

from fitpulse.client.storage import KeyValueStorage, MemoryStorage
from fitpulse.client.transport import EventTransport, TransportError
from fitpulse.domains.analytics.exceptions import InvalidEventError
from fitpulse.domains.analytics.schemas import parse_draft
from fitpulse.infrastructure.database.models import EventCategory
from fitpulse.utils.datetime import utc_now

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "pendingAnalyticsEvents"

# Statuses meaning the batch itself is invalid; resending it cannot succeed
REJECTED_STATUS_CODES = frozenset({400, 422})


@dataclass
class BufferConfig:
    """Client buffer configuration.

    Attributes:
        batch_size: Queue length that triggers a flush.
        max_batch_size: Most events sent in one request. Must not exceed
            the ingestion endpoint limit.
        flush_interval: Seconds between timer flushes.
        max_pending: Most recent events kept in local storage.
        storage_key: Storage key of the pending queue.
        platform: Platform recorded on every event.
    """

    batch_size: int = 10
    max_batch_size: int = 500
    flush_interval: float = 5.0
    max_pending: int = 100
    storage_key: str = PENDING_EVENTS_KEY
    platform: str | None = None


class EventBuffer:
    """Queues tracked events and delivers them in batches.

    Args:
        transport: Delivers one batch to the ingestion endpoint.
        storage: Local storage for the pending queue.
        config: Buffer configuration.
        clock: Monotonic clock in seconds, used for screen time.
    """

    def __init__(
        self,
        transport: EventTransport,
        storage: KeyValueStorage | None = None,
        config: BufferConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._storage = storage or MemoryStorage()
        self.config = config or BufferConfig()
        self._clock = clock

        self._queue: list[dict[str, Any]] = []
        self._online = True
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: set[asyncio.Task[bool]] = set()
        self._timer: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

        self._current_screen: str | None = None
        self._screen_started: float | None = None

    @property
    def is_online(self) -> bool:
        """Whether flushes are attempted."""
        return self._online

    @property
    def queue_size(self) -> int:
        """Events waiting to be sent."""
        return len(self._queue)

    @property
    def pending_events(self) -> list[dict[str, Any]]:
        """Copy of the queued event drafts, oldest first."""
        return list(self._queue)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Load events left over from a previous run and start the timer."""
        await self.load_pending_events()
        if self._timer is None or self._timer.done():
            self._stopping = asyncio.Event()
            self._timer = asyncio.create_task(self._run(), name="event-buffer-flush-timer")

    async def stop(self) -> None:
        """Stop the timer and flush what is queued."""
        if self._timer is not None:
            self._stopping.set()
            await self._timer
            self._timer = None
        await self.flush_now()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.flush_interval)
            except asyncio.TimeoutError:
                await self.flush()

    async def load_pending_events(self) -> int:
        """Restore the persisted queue into memory.

        Returns:
            Number of events restored.
        """
        try:
            raw = await self._storage.get_item(self.config.storage_key)
            stored = json.loads(raw) if raw else []
        except (OSError, ValueError) as e:
            logger.error("Error loading pending events: %s", e)
            return 0

        known = {event.get("event_id") for event in self._queue}
        restored = [e for e in stored if isinstance(e, dict) and e.get("event_id") not in known]
        self._queue[:0] = restored
        if restored:
            logger.info("Restored %d pending events", len(restored))
        return len(restored)

    async def _persist(self) -> None:
        try:
            if self._queue:
                pending = self._queue[-self.config.max_pending :]
                await self._storage.set_item(self.config.storage_key, json.dumps(pending))
            else:
                await self._storage.remove_item(self.config.storage_key)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Error storing events locally: %s", e)

    # =========================================================================
    # Tracking
    # =========================================================================

    async def track(
        self,
        category: EventCategory | str,
        action: str,
        label: str | None = None,
        value: float | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Queue an event and persist the pending queue.

        Never raises. Events the ingestion endpoint would reject are logged
        and dropped. A flush is scheduled, not awaited, when the queue
        reaches the batch size.
        """
        try:
            event = {
                "event_id": str(uuid4()),
                "category": category.value if isinstance(category, EventCategory) else category,
                "action": action,
                "label": label,
                "value": value,
                "metadata": dict(metadata or {}),
                "timestamp": utc_now().isoformat(),
                "platform": self.config.platform,
            }
            json.dumps(event)
            parse_draft(event)
            self._queue.append(event)
            await self._persist()

            if self._online and len(self._queue) >= self.config.batch_size:
                self._schedule_flush()
        except InvalidEventError as e:
            logger.error("Dropping invalid %s event %r: %s", category, action[:100], e)
        except (TypeError, ValueError) as e:
            logger.error("Dropping event that cannot be serialized: %s", e)
        except Exception as e:
            logger.error("Error tracking event: %s", e)

    def _schedule_flush(self) -> None:
        task = asyncio.get_running_loop().create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def track_screen_view(self, screen: str) -> None:
        """Track a screen view, first recording time spent on the previous one.

        The screen_time value is in seconds.
        """
        now = self._clock()
        if self._current_screen is not None and self._screen_started is not None:
            await self.track(
                EventCategory.NAVIGATION,
                "screen_time",
                label=self._current_screen,
                value=round(max(now - self._screen_started, 0.0), 3),
            )

        self._current_screen = screen
        self._screen_started = now
        await self.track(EventCategory.NAVIGATION, "screen_view", label=screen)

    async def track_workout_started(self, workout_id: str, workout_type: str | None = None) -> None:
        """Track the start of a workout."""
        await self.track(
            EventCategory.WORKOUT,
            "start",
            label=workout_type,
            metadata={"workout_id": workout_id},
        )

    async def track_workout_completed(
        self,
        workout_id: str,
        duration: float,
        exercises: list[str] | None = None,
        intensity: float | None = None,
    ) -> None:
        """Track a completed workout; the value is its duration in seconds."""
        await self.track(
            EventCategory.WORKOUT,
            "complete",
            value=duration,
            metadata={
                "workout_id": workout_id,
                "exercises": exercises or [],
                "exercise_count": len(exercises or []),
                "intensity": intensity,
            },
        )

    async def track_meal_logged(
        self,
        meal_type: str,
        calories: float | None = None,
        macros: Mapping[str, float] | None = None,
    ) -> None:
        """Track a logged meal; the value is its calories."""
        await self.track(
            EventCategory.NUTRITION,
            "log_meal",
            label=meal_type,
            value=calories,
            metadata={"meal_type": meal_type, "macros": dict(macros or {})},
        )

    async def track_feature_usage(
        self,
        feature: str,
        action: str,
        metadata: Mapping[str, Any] | None = None,
        time_spent: float | None = None,
    ) -> None:
        """Track use of a feature."""
        await self.track(
            EventCategory.FEATURE_USAGE,
            f"{feature}_{action}",
            label=feature,
            value=time_spent,
            metadata={"feature": feature, "action": action, **(metadata or {})},
        )

    async def track_error(self, error: BaseException, context: Mapping[str, Any] | None = None) -> None:
        """Track an error caught by the app."""
        await self.track(
            EventCategory.ERROR,
            "application_error",
            label=type(error).__name__,
            metadata={
                "error_message": str(error),
                "error_stack": "".join(traceback.format_exception(error)),
                "context": dict(context or {}),
            },
        )

    # =========================================================================
    # Delivery
    # =========================================================================

    async def flush(self) -> bool:
        """Send the queued events in batches of at most ``max_batch_size``.

        A flush is skipped while offline, when the queue is empty or when
        another flush is in flight. Batches are sent oldest first until
        every event queued when the flush began is sent or a send fails.
        Only the events that were sent are removed, so events tracked
        during the send stay queued.

        A batch the server rejects as malformed (422) is dropped rather
        than retried. Any other failure keeps the batch and puts the buffer
        offline.

        Returns:
            True if at least one batch was confirmed by the server.
        """
        if self._flush_lock.locked() or not self._online or not self._queue:
            return False

        delivered = False
        async with self._flush_lock:
            # Events tracked while this flush runs wait for the next one
            remaining = len(self._queue)
            while self._online and remaining > 0:
                batch = self._queue[: min(remaining, self.config.max_batch_size)]
                try:
                    await self._transport.send(batch)
                except TransportError as e:
                    if e.status_code not in REJECTED_STATUS_CODES:
                        self._go_offline(batch, e)
                        break
                    logger.error(
                        "Server rejected %d analytics events (%s), dropping them",
                        len(batch),
                        e.status_code,
                    )
                except Exception as e:
                    self._go_offline(batch, e)
                    break
                else:
                    delivered = True
                    logger.debug("Flushed %d analytics events", len(batch))

                del self._queue[: len(batch)]
                remaining -= len(batch)
                await self._persist()

        return delivered

    def _go_offline(self, batch: list[dict[str, Any]], error: Exception) -> None:
        self._online = False
        logger.warning("Error flushing %d analytics events, going offline: %s", len(batch), error)

    async def flush_now(self) -> bool:
        """Wait for any in-flight flush, then flush what is left.

        Events that could not be sent stay in local storage for the next
        start(); their number is logged.
        """
        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
        async with self._flush_lock:
            pass
        delivered = await self.flush()
        if self._queue:
            logger.warning(
                "%d analytics events left unsent (%s), kept in local storage",
                len(self._queue),
                "online" if self._online else "offline",
            )
        return delivered

    async def set_online_status(self, online: bool) -> bool:
        """Record a connectivity change.

        Going online retries a flush once, immediately.

        Returns:
            True if that retry delivered a batch.
        """
        was_online = self._online
        self._online = online
        if online:
            if not was_online:
                logger.info("Back online with %d pending events", len(self._queue))
            return await self.flush()
        return False
