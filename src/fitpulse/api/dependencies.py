# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI dependency injection definitions.

Services are built once at startup and stored on ``app.state``. The
functions here hand them to endpoints:

    @router.get("/realtime")
    async def realtime(
        db: DbSession,
        realtime: Annotated[RealtimeMetrics, Depends(get_realtime)],
    ):
        ...
"""

import logging
from typing import Annotated, Any, AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics import (
    AnalyticsAggregator,
    IngestionService,
    RealtimeMetrics,
    ReportService,
    RequestContext,
    SessionTracker,
)
from fitpulse.infrastructure.database.connection import DatabaseManager

logger = logging.getLogger(__name__)


def _service(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service '{name}' is not initialized",
        )
    return service


def get_db_manager(request: Request) -> DatabaseManager:
    """Get the event store database manager."""
    return _service(request, "db_manager")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get a database session for read endpoints.

    Yields:
        AsyncSession scoped to the request.
    """
    async with get_db_manager(request).session() as session:
        yield session


def get_ingestion(request: Request) -> IngestionService:
    return _service(request, "ingestion")


def get_session_tracker(request: Request) -> SessionTracker:
    return _service(request, "sessions")


def get_aggregator(request: Request) -> AnalyticsAggregator:
    return _service(request, "aggregator")


def get_realtime(request: Request) -> RealtimeMetrics:
    return _service(request, "realtime")


def get_reports(request: Request) -> ReportService:
    return _service(request, "reports")


def client_ip(request: Request) -> str | None:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def get_request_context(request: Request) -> RequestContext:
    """Build the ambient context recorded on ingested events.

    The user id comes from ``request.state.user_id`` when an upstream
    auth layer has set it, otherwise from the X-User-Id header.
    """
    user_id = getattr(request.state, "user_id", None) or request.headers.get("X-User-Id")
    return RequestContext(
        user_id=user_id or None,
        session_id=request.headers.get("X-Session-Id") or None,
        user_agent=request.headers.get("User-Agent"),
        ip_address=client_ip(request),
        platform=request.headers.get("X-Platform") or None,
    )


# Type aliases for common dependency combinations
DbSession = Annotated[AsyncSession, Depends(get_db)]
Context = Annotated[RequestContext, Depends(get_request_context)]
DbManager = Annotated[DatabaseManager, Depends(get_db_manager)]
Ingestion = Annotated[IngestionService, Depends(get_ingestion)]
Sessions = Annotated[SessionTracker, Depends(get_session_tracker)]
Aggregator = Annotated[AnalyticsAggregator, Depends(get_aggregator)]
Realtime = Annotated[RealtimeMetrics, Depends(get_realtime)]
Reports = Annotated[ReportService, Depends(get_reports)]
