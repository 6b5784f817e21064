# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Analytics domain: the telemetry pipeline.

Event store, ingestion, session tracking, aggregation, realtime metrics,
report lifecycle and the recurring report jobs.
"""

from fitpulse.domains.analytics.aggregator import (
    AggregateGroup,
    AnalyticsAggregator,
    EngagementMetrics,
    EngagementScore,
    FeatureStat,
    FeatureUsage,
)
from fitpulse.domains.analytics.directory import (
    BusinessMetricsSource,
    NullUserDirectory,
    StaticUserDirectory,
    UserDirectory,
)
from fitpulse.domains.analytics.exceptions import (
    AnalyticsError,
    BatchTooLargeError,
    IngestionError,
    InvalidEventError,
    InvalidPeriodError,
    InvalidQueryError,
    InvalidReportRequestError,
    ReportNotFoundError,
    ReportStateError,
)
from fitpulse.domains.analytics.ingestion import IngestionService, IngestResult
from fitpulse.domains.analytics.jobs import ReportJobs
from fitpulse.domains.analytics.periods import (
    daily_window,
    monthly_window,
    parse_period,
    weekly_window,
)
from fitpulse.domains.analytics.realtime import RealtimeMetrics, RealtimeSnapshot
from fitpulse.domains.analytics.reports import ReportPage, ReportService
from fitpulse.domains.analytics.schemas import (
    DateRange,
    DeviceInfo,
    EventDraft,
    RequestContext,
    parse_draft,
)
from fitpulse.domains.analytics.sessions import SessionStats, SessionTracker
from fitpulse.domains.analytics.store import EventFilters, EventStore, EvictionResult

__all__ = [
    # Aggregation
    "AggregateGroup",
    "AnalyticsAggregator",
    "EngagementMetrics",
    "EngagementScore",
    "FeatureStat",
    "FeatureUsage",
    # Collaborators
    "BusinessMetricsSource",
    "NullUserDirectory",
    "StaticUserDirectory",
    "UserDirectory",
    # Exceptions
    "AnalyticsError",
    "BatchTooLargeError",
    "IngestionError",
    "InvalidEventError",
    "InvalidPeriodError",
    "InvalidQueryError",
    "InvalidReportRequestError",
    "ReportNotFoundError",
    "ReportStateError",
    # Ingestion
    "IngestionService",
    "IngestResult",
    # Jobs and periods
    "ReportJobs",
    "daily_window",
    "monthly_window",
    "parse_period",
    "weekly_window",
    # Realtime
    "RealtimeMetrics",
    "RealtimeSnapshot",
    # Reports
    "ReportPage",
    "ReportService",
    # Schemas
    "DateRange",
    "DeviceInfo",
    "EventDraft",
    "RequestContext",
    "parse_draft",
    # Sessions and store
    "SessionStats",
    "SessionTracker",
    "EventFilters",
    "EventStore",
    "EvictionResult",
]
