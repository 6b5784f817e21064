# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Health check endpoints.

This module provides liveness, readiness and health endpoints for the API.
"""

import logging
import time
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel, Field

from fitpulse.utils.datetime import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

VERSION = "1.0.0"

# Track server start time for uptime calculation
_server_start_time = time.time()


class ComponentHealth(BaseModel):
    """Individual component health status."""
    status: str = Field(description="Component status")
    latency_ms: float | None = Field(None, description="Response latency in ms")
    message: str | None = Field(None, description="Additional status message")


class ComponentsHealth(BaseModel):
    """All components health status."""
    database: ComponentHealth | None = None
    ingestion: ComponentHealth | None = None
    scheduler: ComponentHealth | None = None


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(description="Overall health status")
    timestamp: datetime = Field(description="Current server timestamp")
    version: str = Field(description="API version")
    environment: str = Field(description="Deployment environment")
    uptime_seconds: int = Field(description="Server uptime in seconds")
    components: ComponentsHealth = Field(default_factory=ComponentsHealth)


class LivenessResponse(BaseModel):
    """Liveness check response model."""
    status: str = Field(description="Always 'alive' while the process serves requests")
    timestamp: datetime = Field(description="Current server timestamp")


class ReadinessResponse(BaseModel):
    """Readiness check response model."""
    ready: bool = Field(description="Whether the service is ready")
    checks: dict[str, Any] = Field(description="Individual check results")


async def check_database(request: Request) -> ComponentHealth:
    """Check the event store connection."""
    db_manager = getattr(request.app.state, "db_manager", None)
    if db_manager is None:
        return ComponentHealth(status="unhealthy", message="Database not initialized")

    start = time.time()
    if not await db_manager.check_connection():
        return ComponentHealth(status="unhealthy", message="Database unreachable")

    latency = (time.time() - start) * 1000
    return ComponentHealth(status="healthy", latency_ms=round(latency, 2))


def check_ingestion(request: Request) -> ComponentHealth:
    """Check that the ingestion flush loop is running."""
    ingestion = getattr(request.app.state, "ingestion", None)
    if ingestion is None:
        return ComponentHealth(status="unhealthy", message="Ingestion not initialized")

    stats = ingestion.get_stats()
    if not stats["is_running"]:
        return ComponentHealth(status="degraded", message="Flush loop is not running")
    return ComponentHealth(status="healthy", message=f"{stats['queue_size']} events queued")


def check_scheduler(request: Request) -> ComponentHealth:
    """Check the report scheduler."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return ComponentHealth(status="disabled")

    stats = scheduler.get_stats()
    if not stats["is_running"]:
        return ComponentHealth(status="degraded", message="Scheduler is not running")
    return ComponentHealth(status="healthy", message=f"{stats['job_count']} jobs registered")


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check if the API is healthy with component details.

    Returns:
        HealthResponse with detailed status.
    """
    settings = request.app.state.settings

    db_health = await check_database(request)
    ingestion_health = check_ingestion(request)
    scheduler_health = check_scheduler(request)

    component_statuses = [
        s.status for s in (db_health, ingestion_health, scheduler_health) if s.status != "disabled"
    ]
    if all(s == "healthy" for s in component_statuses):
        overall_status = "healthy"
    elif db_health.status == "unhealthy":
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=utc_now(),
        version=VERSION,
        environment=settings.environment,
        uptime_seconds=int(time.time() - _server_start_time),
        components=ComponentsHealth(
            database=db_health,
            ingestion=ingestion_health,
            scheduler=scheduler_health,
        ),
    )


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    """Report that the process is serving requests."""
    return LivenessResponse(status="alive", timestamp=utc_now())


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request, response: Response) -> ReadinessResponse:
    """Check if the API is ready to accept traffic.

    Responds 503 while the event store is unreachable.
    """
    checks: dict[str, Any] = {}

    db_health = await check_database(request)
    checks["database"] = {"status": db_health.status, "latency_ms": db_health.latency_ms}

    ingestion_health = check_ingestion(request)
    checks["ingestion"] = {"status": ingestion_health.status}

    ready = db_health.status == "healthy" and ingestion_health.status != "unhealthy"
    if not ready:
        logger.warning("Readiness check failed: %s", checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(ready=ready, checks=checks)
