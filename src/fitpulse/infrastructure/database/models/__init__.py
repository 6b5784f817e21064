# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""ORM models for the event store."""

from fitpulse.infrastructure.database.models.analytics import (
    AnalyticsEvent,
    AnalyticsReport,
    EventCategory,
    ReportFormat,
    ReportStatus,
    ReportType,
    UserSession,
)
from fitpulse.infrastructure.database.models.base import Base, JSONType, UTCDateTime

__all__ = [
    "Base",
    "JSONType",
    "UTCDateTime",
    "AnalyticsEvent",
    "UserSession",
    "AnalyticsReport",
    "EventCategory",
    "ReportType",
    "ReportStatus",
    "ReportFormat",
]
