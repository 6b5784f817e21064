# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Analytics API endpoints.

This module provides endpoints for the telemetry pipeline:
- POST /events/batch - Ingest a client batch
- POST /events - Queue one server-side event
- POST /sessions, POST /sessions/{session_id}/end - Session lifecycle
- GET /dashboard - Dashboard for a period
- GET /users/{user_id} - Analytics for one user
- POST /reports, GET /reports, GET /reports/{report_id} - Reports
- GET /realtime - Realtime snapshot

Example:
    POST /api/v1/analytics/events/batch
    X-User-Id: user-1
    X-Session-Id: 5f0c...

    {"events": [{"event_id": "...", "category": "workout", "action": "start"}]}
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from fitpulse.api.dependencies import (
    Aggregator,
    Context,
    DbManager,
    DbSession,
    Ingestion,
    Realtime,
    Reports,
    Sessions,
)
from fitpulse.api.middleware.rate_limit import ingest_limit, limiter
from fitpulse.domains.analytics import (
    BatchTooLargeError,
    DateRange,
    DeviceInfo,
    IngestionError,
    InvalidEventError,
    InvalidPeriodError,
    InvalidReportRequestError,
    ReportNotFoundError,
    parse_draft,
    parse_period,
)
from fitpulse.infrastructure.database.connection import DatabaseError
from fitpulse.infrastructure.database.models import ReportFormat, ReportType

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================


class BatchRequest(BaseModel):
    """A batch of event drafts from one client.

    Drafts are validated by the ingestion service so a single malformed
    draft rejects the whole batch.
    """

    events: list[dict[str, Any]] = Field(description="Event drafts")


class SessionStartRequest(BaseModel):
    """Start of a client session."""

    session_id: str = Field(min_length=1, max_length=64, description="Client-generated session id")
    device_info: DeviceInfo | None = Field(None, description="Device description")
    location: dict[str, Any] | None = Field(None, description="Coarse location")
    started_at: datetime | None = Field(None, description="Start time, defaults to now")


class SessionEndRequest(BaseModel):
    """End of a client session."""

    ended_at: datetime | None = Field(None, description="End time, defaults to now")


class ReportRequest(BaseModel):
    """On-demand report request.

    The window is ``start``/``end`` when given, otherwise ``period``.
    """

    report_type: ReportType = Field(ReportType.CUSTOM, description="Report type")
    period: str | None = Field(None, description="7d, 30d, 90d or 1y")
    start: datetime | None = Field(None, description="Window start")
    end: datetime | None = Field(None, description="Window end")
    format: ReportFormat = Field(ReportFormat.JSON, description="Output format")
    user_id: str | None = Field(None, description="Limit the report to one user")


# ============================================================================
# Response Models
# ============================================================================


class IngestResponse(BaseModel):
    """Outcome of a batch ingestion."""

    accepted: int = Field(description="Events in the batch")
    inserted: int = Field(description="Events that were new")


class QueuedResponse(BaseModel):
    """Outcome of queueing one event."""

    queued: bool = Field(description="Whether the event was queued")
    queue_size: int = Field(description="Events waiting for the next flush")


class SessionResponse(BaseModel):
    """A session record."""

    session_id: str
    user_id: str | None
    platform: str | None
    device_info: dict[str, Any]
    location: dict[str, Any] | None
    start_time: datetime
    end_time: datetime | None
    duration_seconds: float | None
    is_active: bool
    total_events: int
    last_activity: datetime


class ReportAcceptedResponse(BaseModel):
    """A report that is being generated."""

    report_id: str = Field(description="Id to poll")
    status: str = Field(description="Report status")


class ReportResponse(BaseModel):
    """Report metadata, with the payload when requested by id."""

    id: str
    report_type: str
    report_name: str
    user_id: str | None
    date_range: dict[str, datetime]
    metrics: list[str]
    format: str
    status: str
    error_message: str | None
    generated_by: str
    generated_at: datetime | None
    created_at: datetime | None
    data: dict[str, Any] | None = None


class Pagination(BaseModel):
    """Pagination details."""

    page: int
    limit: int
    total: int
    pages: int


class ReportListResponse(BaseModel):
    """One page of report metadata."""

    reports: list[ReportResponse]
    pagination: Pagination


class DashboardResponse(BaseModel):
    """Dashboard payload."""

    date_range: dict[str, datetime]
    engagement: dict[str, Any]
    business: dict[str, Any] | None
    features: dict[str, Any]
    categories: dict[str, int]
    daily_trends: list[dict[str, Any]]
    realtime: dict[str, Any] | None


class UserAnalyticsResponse(BaseModel):
    """Analytics for one user."""

    user_id: str
    date_range: dict[str, datetime]
    timeline: list[dict[str, Any]] = Field(description="Daily event counts by category")
    sessions: dict[str, Any] = Field(description="Session statistics")
    features: dict[str, Any] = Field(description="Feature usage")
    categories: dict[str, int] = Field(description="Events by category")
    engagement: dict[str, Any] = Field(description="Engagement metrics")


class RealtimeResponse(BaseModel):
    """Realtime snapshot."""

    active_users_now: int
    active_users_today: int
    active_sessions: int
    recent_events: list[dict[str, Any]]
    hourly_trends: list[dict[str, Any]]
    last_updated: datetime


# ============================================================================
# Helpers
# ============================================================================


def _date_range(
    period: str | None,
    start: datetime | None,
    end: datetime | None,
) -> DateRange:
    try:
        return parse_period(period, start, end)
    except InvalidPeriodError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )


def _unavailable(e: Exception) -> HTTPException:
    logger.error("Event store unavailable: %s", e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Event store is temporarily unavailable",
    )


# ============================================================================
# Ingestion Endpoints
# ============================================================================


@router.post(
    "/events/batch",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a batch of events",
)
@limiter.limit(ingest_limit)
async def ingest_batch(
    request: Request,
    body: BatchRequest,
    ingestion: Ingestion,
    context: Context,
) -> IngestResponse:
    """Write a client batch to the event store.

    The batch is written in one transaction. Events already stored under
    the same event id are skipped, so clients can resend a batch after a
    failed delivery.
    """
    try:
        result = await ingestion.ingest_batch(body.events, context)
    except BatchTooLargeError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(e),
        )
    except InvalidEventError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except IngestionError as e:
        raise _unavailable(e)

    return IngestResponse(accepted=result.accepted, inserted=result.inserted)


@router.post(
    "/events",
    response_model=QueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a single event",
)
@limiter.limit(ingest_limit)
async def track_event(
    request: Request,
    body: dict[str, Any],
    ingestion: Ingestion,
    context: Context,
) -> QueuedResponse:
    """Queue one event for the next ingestion flush."""
    try:
        draft = parse_draft(body)
    except InvalidEventError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )

    queued = ingestion.track(draft, context)
    return QueuedResponse(queued=queued, queue_size=ingestion.queue_size)


# ============================================================================
# Session Endpoints
# ============================================================================


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a session",
)
async def start_session(
    body: SessionStartRequest,
    db_manager: DbManager,
    sessions: Sessions,
    context: Context,
) -> dict[str, Any]:
    """Create a session. Starting an existing session id returns it unchanged."""
    try:
        async with db_manager.session() as db:
            session = await sessions.create_session(
                db,
                body.session_id,
                device_info=body.device_info,
                context=context,
                started_at=body.started_at,
                location=body.location,
            )
            return session.to_dict()
    except DatabaseError as e:
        raise _unavailable(e)


@router.post(
    "/sessions/{session_id}/end",
    response_model=SessionResponse,
    summary="End a session",
)
async def end_session(
    session_id: str,
    db_manager: DbManager,
    sessions: Sessions,
    body: SessionEndRequest | None = None,
) -> dict[str, Any]:
    """End a session. Ending an ended session returns it unchanged."""
    try:
        async with db_manager.session() as db:
            session = await sessions.end_session(
                db,
                session_id,
                ended_at=body.ended_at if body else None,
            )
    except DatabaseError as e:
        raise _unavailable(e)

    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return session.to_dict()


# ============================================================================
# Query Endpoints
# ============================================================================


@router.get(
    "/dashboard",
    response_model=DashboardResponse,
    summary="Get dashboard",
)
async def get_dashboard(
    db: DbSession,
    aggregator: Aggregator,
    realtime: Realtime,
    period: str | None = Query(None, description="7d, 30d, 90d or 1y"),
    start: datetime | None = Query(None, description="Window start"),
    end: datetime | None = Query(None, description="Window end"),
    user_id: str | None = Query(None, description="Limit to one user"),
    include_realtime: bool = Query(True, description="Attach a realtime snapshot"),
) -> dict[str, Any]:
    """Engagement, feature usage, category split and trends for a window."""
    date_range = _date_range(period, start, end)
    return await aggregator.dashboard(
        db,
        date_range,
        user_id=user_id,
        realtime=realtime if include_realtime else None,
    )


@router.get(
    "/users/{user_id}",
    response_model=UserAnalyticsResponse,
    summary="Get analytics for a user",
)
async def get_user_analytics(
    user_id: str,
    db: DbSession,
    aggregator: Aggregator,
    sessions: Sessions,
    period: str | None = Query(None, description="7d, 30d, 90d or 1y"),
    start: datetime | None = Query(None, description="Window start"),
    end: datetime | None = Query(None, description="Window end"),
) -> UserAnalyticsResponse:
    """Timeline, session statistics and feature usage of one user."""
    date_range = _date_range(period, start, end)

    timeline = await aggregator.user_engagement_timeline(db, user_id, date_range)
    session_stats = await sessions.session_stats(db, user_id=user_id, date_range=date_range)
    features = await aggregator.feature_usage(db, date_range, user_id=user_id)
    categories = await aggregator.events_by_category(db, date_range, user_id=user_id)
    engagement = await aggregator.engagement_metrics(db, date_range, user_id=user_id)

    return UserAnalyticsResponse(
        user_id=user_id,
        date_range=date_range.to_dict(),
        timeline=timeline,
        sessions=session_stats.to_dict(),
        features=features.to_dict(),
        categories=categories,
        engagement=engagement.to_dict(),
    )


@router.get(
    "/realtime",
    response_model=RealtimeResponse,
    summary="Get realtime metrics",
)
async def get_realtime(db: DbSession, realtime: Realtime) -> dict[str, Any]:
    """Active users and sessions, recent events and hourly trends."""
    snapshot = await realtime.snapshot(db)
    return snapshot.to_dict()


# ============================================================================
# Report Endpoints
# ============================================================================


@router.post(
    "/reports",
    response_model=ReportAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request a report",
)
async def request_report(
    body: ReportRequest,
    reports: Reports,
    context: Context,
) -> ReportAcceptedResponse:
    """Create a report and generate it in the background.

    Poll GET /reports/{report_id} until the status is completed or failed.
    """
    date_range = _date_range(body.period, body.start, body.end)
    try:
        report = await reports.request_report(
            body.report_type,
            date_range,
            format=body.format,
            user_id=body.user_id,
            generated_by=context.user_id,
        )
    except InvalidReportRequestError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except DatabaseError as e:
        raise _unavailable(e)
    except Exception as e:
        logger.error("Could not dispatch report: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Report generation is temporarily unavailable",
        )

    return ReportAcceptedResponse(report_id=report.id, status=report.status)


@router.get(
    "/reports",
    response_model=ReportListResponse,
    summary="List reports",
)
async def list_reports(
    db: DbSession,
    reports: Reports,
    report_type: ReportType | None = Query(None, alias="type", description="Report type"),
    user_id: str | None = Query(None, description="Reports of one user"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
) -> dict[str, Any]:
    """Report metadata, newest first, without payloads."""
    result = await reports.list_reports(
        db,
        report_type=report_type,
        user_id=user_id,
        page=page,
        limit=limit,
    )
    return result.to_dict()


@router.get(
    "/reports/{report_id}",
    response_model=ReportResponse,
    summary="Get a report",
)
async def get_report(report_id: str, db: DbSession, reports: Reports) -> dict[str, Any]:
    """Report metadata and, once completed, its payload."""
    try:
        report = await reports.get_report(db, report_id)
    except ReportNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )
    return report.to_dict()
