# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

Store-level tests run against an in-memory SQLite database through the
same DatabaseManager the service uses in production.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

# Keep Dramatiq off Redis for every test module
os.environ.setdefault("DRAMATIQ_TEST_MODE", "true")

from fitpulse.core.config.settings import (  # noqa: E402
    RateLimitSettings,
    SchedulerSettings,
    Settings,
)
from fitpulse.infrastructure.database.connection import DatabaseManager  # noqa: E402
from fitpulse.infrastructure.database.models import AnalyticsEvent, EventCategory  # noqa: E402

SQLITE_URL = "sqlite+aiosqlite:///:memory:"

EventFactory = Callable[..., Awaitable[AnalyticsEvent]]


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_manager() -> AsyncGenerator[DatabaseManager, None]:
    """Provide a DatabaseManager on a fresh in-memory database."""
    manager = DatabaseManager(SQLITE_URL)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def make_event(db_manager: DatabaseManager) -> EventFactory:
    """Provide a coroutine that stores one event and returns it."""

    async def _make(
        category: EventCategory | str = EventCategory.WORKOUT,
        action: str = "start",
        timestamp: datetime | None = None,
        user_id: str | None = "user-1",
        session_id: str | None = None,
        label: str | None = None,
        value: float | None = None,
        event_type: str = "interaction",
        platform: str | None = "ios",
        metadata: dict[str, Any] | None = None,
    ) -> AnalyticsEvent:
        event = AnalyticsEvent(
            id=str(uuid4()),
            user_id=user_id,
            session_id=session_id,
            event_type=event_type,
            event_category=category.value if isinstance(category, EventCategory) else category,
            event_action=action,
            event_label=label,
            event_value=value,
            event_metadata=metadata or {},
            platform=platform,
            timestamp=timestamp or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
            created_at=datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
        )
        async with db_manager.session() as db:
            db.add(event)
        return event

    return _make


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Provide settings for tests: UTC scheduler, no rate limits."""
    return Settings(
        environment="development",
        scheduler=SchedulerSettings(timezone="UTC", enabled=False),
        rate_limit=RateLimitSettings(enabled=False),
    )


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Helper Fixtures
# =============================================================================


@pytest.fixture
def sample_user_id() -> str:
    """Provide a sample user ID for testing."""
    return "550e8400-e29b-41d4-a716-446655440001"


@pytest.fixture
def sample_session_id() -> str:
    """Provide a sample client session ID for testing."""
    return "5f0c2d9e-8a8b-4c59-9a51-0f1f8f3c2b10"
