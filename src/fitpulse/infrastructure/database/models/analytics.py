# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event store models: analytics events, user sessions and reports.

Events are immutable facts. Sessions are one mutable row per
client-generated session id. Reports move from ``generating`` to exactly
one terminal status.
"""

import enum
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import CheckConstraint, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fitpulse.infrastructure.database.models.base import Base, JSONType, UTCDateTime
from fitpulse.utils.datetime import utc_now


class EventCategory(str, enum.Enum):
    """Closed set of event categories."""

    WORKOUT = "workout"
    NUTRITION = "nutrition"
    SUBSCRIPTION = "subscription"
    NAVIGATION = "navigation"
    FEATURE_USAGE = "feature_usage"
    ERROR = "error"


class ReportType(str, enum.Enum):
    """Report cadence or on-demand type."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ReportStatus(str, enum.Enum):
    """Report lifecycle status."""

    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed."""
        return self is not ReportStatus.GENERATING


class ReportFormat(str, enum.Enum):
    """Requested output format of a report."""

    JSON = "json"
    CSV = "csv"
    PDF = "pdf"


def _values(enum_cls: type[enum.Enum]) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


def _new_id() -> str:
    return str(uuid4())


class AnalyticsEvent(Base):
    """Immutable analytics event."""

    __tablename__ = "analytics_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(64))
    session_id: Mapped[str | None] = mapped_column(String(64), index=True)
    event_type: Mapped[str] = mapped_column(String(100))
    event_category: Mapped[str] = mapped_column(String(32))
    event_action: Mapped[str] = mapped_column(String(100))
    event_label: Mapped[str | None] = mapped_column(String(255))
    event_value: Mapped[float | None] = mapped_column(Float)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    platform: Mapped[str | None] = mapped_column(String(32))
    user_agent: Mapped[str | None] = mapped_column(String(512))
    ip_address: Mapped[str | None] = mapped_column(String(64))
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            f"event_category IN ({_values(EventCategory)})",
            name="ck_analytics_events_category",
        ),
        Index("ix_analytics_events_timestamp", "timestamp"),
        Index("ix_analytics_events_user_timestamp", "user_id", "timestamp"),
        Index("ix_analytics_events_category_timestamp", "event_category", "timestamp"),
        Index("ix_analytics_events_type_timestamp", "event_type", "timestamp"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "event_type": self.event_type,
            "event_category": self.event_category,
            "event_action": self.event_action,
            "event_label": self.event_label,
            "event_value": self.event_value,
            "metadata": self.event_metadata or {},
            "platform": self.platform,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class UserSession(Base):
    """One row per client session id."""

    __tablename__ = "user_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(64), index=True)
    platform: Mapped[str | None] = mapped_column(String(32))
    device_info: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    location: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime)
    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime)
    duration_seconds: Mapped[float | None] = mapped_column(Float)
    is_active: Mapped[bool] = mapped_column(default=True)
    total_events: Mapped[int] = mapped_column(Integer, default=0)
    last_activity: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    __table_args__ = (
        Index("ix_user_sessions_active_last_activity", "is_active", "last_activity"),
        Index("ix_user_sessions_start_time", "start_time"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "platform": self.platform,
            "device_info": self.device_info or {},
            "location": self.location,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "is_active": self.is_active,
            "total_events": self.total_events,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


class AnalyticsReport(Base):
    """Materialized aggregation result."""

    __tablename__ = "analytics_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    report_type: Mapped[str] = mapped_column(String(16))
    report_name: Mapped[str] = mapped_column(String(255))
    user_id: Mapped[str | None] = mapped_column(String(64), index=True)
    date_start: Mapped[datetime] = mapped_column(UTCDateTime)
    date_end: Mapped[datetime] = mapped_column(UTCDateTime)
    metrics: Mapped[list[str]] = mapped_column(JSONType, default=list)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    format: Mapped[str] = mapped_column(String(8), default=ReportFormat.JSON.value)
    status: Mapped[str] = mapped_column(String(16), default=ReportStatus.GENERATING.value)
    error_message: Mapped[str | None] = mapped_column(Text)
    generated_by: Mapped[str] = mapped_column(String(64))
    generated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            f"report_type IN ({_values(ReportType)})",
            name="ck_analytics_reports_type",
        ),
        CheckConstraint(
            f"status IN ({_values(ReportStatus)})",
            name="ck_analytics_reports_status",
        ),
        Index("ix_analytics_reports_type_created", "report_type", "created_at"),
        Index("ix_analytics_reports_created_at", "created_at"),
    )

    def to_dict(self, include_data: bool = True) -> dict[str, Any]:
        """Convert to dictionary.

        Args:
            include_data: Whether to include the (possibly large) payload.
        """
        result: dict[str, Any] = {
            "id": self.id,
            "report_type": self.report_type,
            "report_name": self.report_name,
            "user_id": self.user_id,
            "date_range": {
                "start": self.date_start.isoformat(),
                "end": self.date_end.isoformat(),
            },
            "metrics": self.metrics or [],
            "format": self.format,
            "status": self.status,
            "error_message": self.error_message,
            "generated_by": self.generated_by,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_data:
            result["data"] = self.data
        return result
