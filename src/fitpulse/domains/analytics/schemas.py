# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Value types shared by the analytics services.

EventDraft is the wire shape of one tracked event before the server
enriches it. The metadata map stays open; category and action are
validated strictly.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fitpulse.domains.analytics.exceptions import InvalidEventError, InvalidPeriodError
from fitpulse.infrastructure.database.models import EventCategory
from fitpulse.utils.datetime import ensure_utc

# Default event_type per category when the producer does not set one
DEFAULT_EVENT_TYPES: dict[EventCategory, str] = {
    EventCategory.WORKOUT: "workout_interaction",
    EventCategory.NUTRITION: "nutrition_interaction",
    EventCategory.SUBSCRIPTION: "subscription_interaction",
    EventCategory.NAVIGATION: "navigation",
    EventCategory.FEATURE_USAGE: "feature_usage",
    EventCategory.ERROR: "error",
}


class EventDraft(BaseModel):
    """A tracked event as produced by a client or a server-side action."""

    model_config = ConfigDict(extra="ignore")

    event_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=36,
        description="Producer-assigned id, used to drop redelivered events",
    )
    event_type: str | None = Field(default=None, max_length=100, description="Free-form event type")
    category: EventCategory = Field(description="Event category")
    action: str = Field(min_length=1, max_length=100, description="Event action")
    label: str | None = Field(default=None, max_length=255, description="Optional label")
    value: float | None = Field(default=None, allow_inf_nan=False, description="Optional numeric value")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    timestamp: datetime | None = Field(default=None, description="Producer timestamp")
    platform: str | None = Field(default=None, max_length=32, description="Client platform")

    @field_validator("action")
    @classmethod
    def strip_action(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("action must not be blank")
        return value

    @field_validator("timestamp")
    @classmethod
    def normalise_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def resolved_event_type(self) -> str:
        """Event type, defaulting to the category's conventional type."""
        return self.event_type or DEFAULT_EVENT_TYPES[self.category]


def parse_draft(raw: "EventDraft | Mapping[str, Any]") -> EventDraft:
    """Validate a raw mapping into an EventDraft.

    Args:
        raw: An EventDraft or a mapping with draft fields.

    Returns:
        Validated EventDraft.

    Raises:
        InvalidEventError: If required fields are missing or invalid.
    """
    if isinstance(raw, EventDraft):
        return raw
    try:
        return EventDraft.model_validate(raw)
    except ValidationError as e:
        raise InvalidEventError(str(e)) from e


@dataclass(frozen=True)
class RequestContext:
    """Ambient context of the request that delivered events.

    Attributes:
        user_id: Authenticated user id, if any.
        session_id: Client session id, if any.
        user_agent: User-Agent header.
        ip_address: Source IP address.
        platform: Client platform reported by the producer.
    """

    user_id: str | None = None
    session_id: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    platform: str | None = None


class DeviceInfo(BaseModel):
    """Device description recorded on a session."""

    model_config = ConfigDict(extra="allow")

    platform: str | None = Field(default=None, max_length=32)
    os_version: str | None = None
    app_version: str | None = None
    device_model: str | None = None
    screen_resolution: str | None = None


@dataclass(frozen=True)
class DateRange:
    """Inclusive time window.

    Both bounds are timezone-aware UTC datetimes and queries treat them as
    inclusive: ``start <= timestamp <= end``.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = ensure_utc(self.start)
        end = ensure_utc(self.end)
        if start > end:  # type: ignore[operator]
            raise InvalidPeriodError("Date range start must not be after its end")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def contains(self, moment: datetime) -> bool:
        """Whether ``moment`` falls inside the window."""
        moment = ensure_utc(moment)  # type: ignore[assignment]
        return self.start <= moment <= self.end

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary."""
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}
