# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI Application Factory.

This module provides the main application factory for the FitPulse
telemetry API.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.datastructures import State

from fitpulse.api.middleware import (
    RequestTrackingMiddleware,
    limiter,
    rate_limit_exceeded_handler,
)
from fitpulse.api.routes import health
from fitpulse.api.v1 import router as v1_router
from fitpulse.core.config import Settings, get_settings
from fitpulse.domains.analytics import (
    AnalyticsAggregator,
    BusinessMetricsSource,
    EventStore,
    IngestionService,
    RealtimeMetrics,
    ReportJobs,
    ReportService,
    SessionTracker,
    UserDirectory,
)
from fitpulse.domains.analytics.reports import Dispatcher
from fitpulse.infrastructure.background import (
    JobScheduler,
    get_broker_manager,
    setup_dramatiq,
    shutdown_dramatiq,
)
from fitpulse.infrastructure.database.connection import (
    DatabaseError,
    DatabaseManager,
    close_database,
    init_database,
)
from fitpulse.infrastructure.telemetry import instrument_app, setup_telemetry
from fitpulse.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def _report_dispatcher() -> Dispatcher | None:
    """Send report ids to the Dramatiq worker.

    With the stub broker nothing consumes the queue, so reports are
    generated on the API's own event loop instead.
    """
    setup_dramatiq()
    if get_broker_manager().is_stub:
        logger.info("Stub broker in use, reports are generated in-process")
        return None

    from fitpulse.infrastructure.background.tasks import generate_report

    def dispatch(report_id: str) -> None:
        generate_report.send(report_id)

    return dispatch


def build_services(state: State, settings: Settings, db_manager: DatabaseManager) -> None:
    """Construct the analytics services and store them on ``state``.

    Args:
        state: Where the services are stored, usually ``app.state``.
        settings: Application settings.
        db_manager: Event store database manager.
    """
    directory: UserDirectory | None = getattr(state, "directory", None)
    business_metrics: BusinessMetricsSource | None = getattr(state, "business_metrics", None)

    store = EventStore()
    sessions = SessionTracker()
    aggregator = AnalyticsAggregator(
        directory=directory,
        business_metrics=business_metrics,
        sessions=sessions,
        tz=settings.scheduler.tzinfo,
    )

    state.db_manager = db_manager
    state.store = store
    state.sessions = sessions
    state.aggregator = aggregator
    state.realtime = RealtimeMetrics.from_settings(settings.realtime, aggregator)
    state.ingestion = IngestionService.from_settings(db_manager, settings, store, sessions)
    state.reports = ReportService(db_manager, aggregator)
    state.jobs = ReportJobs(
        db_manager,
        state.reports,
        settings,
        aggregator=aggregator,
        directory=directory,
        store=store,
        sessions=sessions,
    )


def runs_embedded_scheduler(settings: Settings) -> bool:
    """Whether the API process should run the recurring jobs itself.

    Every uvicorn worker runs the lifespan, so with more than one worker
    each job would fire once per worker. Those deployments leave the jobs
    to the ``fitpulse-scheduler`` process.
    """
    if not settings.scheduler.embedded:
        return False
    return settings.api.reload or settings.api.workers == 1


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events for the application.
    Initializes and cleans up:
    - Event store connection
    - Analytics services and the ingestion flush loop
    - Dramatiq broker
    - APScheduler for recurring report jobs

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    settings: Settings = app.state.settings

    try:
        setup_logging(settings)
    except Exception as e:
        logger.warning("Failed to setup logging: %s", str(e))

    logger.info(
        "Starting FitPulse telemetry API (environment=%s, debug=%s)",
        settings.environment,
        settings.debug,
    )

    # =========================================================================
    # Startup
    # =========================================================================

    # Initialize the event store
    db_manager: DatabaseManager | None = None
    try:
        db_manager = await init_database(settings)
        logger.info("Database connection initialized")
    except Exception as e:
        logger.warning("Failed to initialize database connection: %s", str(e))

    if db_manager is not None:
        build_services(app.state, settings, db_manager)

        # Start the ingestion flush loop
        try:
            await app.state.ingestion.start()
        except Exception as e:
            logger.warning("Failed to start ingestion: %s", str(e))

        # Setup Dramatiq broker for on-demand reports
        try:
            app.state.reports.set_dispatcher(_report_dispatcher())
            logger.info("Dramatiq broker initialized")
        except Exception as e:
            logger.warning("Failed to setup Dramatiq, reports run in-process: %s", str(e))

        # Start scheduler for recurring jobs
        if settings.scheduler.enabled and not runs_embedded_scheduler(settings):
            logger.info(
                "Recurring jobs not scheduled in this API process (workers=%d, embedded=%s); "
                "run fitpulse-scheduler alongside the API",
                settings.api.workers,
                settings.scheduler.embedded,
            )
        elif settings.scheduler.enabled:
            try:
                scheduler = JobScheduler(timezone=settings.scheduler.tzinfo)
                app.state.jobs.register(scheduler)
                await scheduler.start()
                app.state.scheduler = scheduler
                logger.info("Scheduler started")
            except Exception as e:
                logger.warning("Failed to start scheduler: %s", str(e))

    yield

    # =========================================================================
    # Shutdown
    # =========================================================================

    # Stop scheduler first (its jobs use the database)
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        try:
            await scheduler.stop()
            logger.info("Scheduler stopped")
        except Exception as e:
            logger.warning("Error stopping scheduler: %s", str(e))

    # Flush queued events
    ingestion = getattr(app.state, "ingestion", None)
    if ingestion is not None:
        try:
            await ingestion.stop()
        except Exception as e:
            logger.warning("Error stopping ingestion: %s", str(e))

    # Let in-process reports finish
    reports = getattr(app.state, "reports", None)
    if reports is not None:
        await reports.wait_pending()

    # Shutdown Dramatiq
    try:
        shutdown_dramatiq()
        logger.info("Dramatiq broker shutdown")
    except Exception as e:
        logger.warning("Error shutting down Dramatiq: %s", str(e))

    # Close database
    try:
        await close_database()
        logger.info("Database connection closed")
    except Exception as e:
        logger.warning("Error closing database connection: %s", str(e))

    logger.info("Shutting down FitPulse telemetry API")


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    """Translate event store failures into 503 responses."""
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Event store is temporarily unavailable"},
    )


def create_app(
    settings: Settings | None = None,
    directory: UserDirectory | None = None,
    business_metrics: BusinessMetricsSource | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    This factory function creates a new FastAPI instance with all
    middleware, routes, and configurations applied.

    Args:
        settings: Application settings, defaults to get_settings().
        directory: User directory for user counts and report recipients.
        business_metrics: Source of revenue and subscription figures.

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="FitPulse Telemetry API",
        description="Event ingestion, session tracking, analytics and reports",
        version=health.VERSION,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # =========================================================================
    # State
    # =========================================================================
    app.state.settings = settings
    app.state.directory = directory
    app.state.business_metrics = business_metrics
    app.state.scheduler = None
    limiter.enabled = settings.rate_limit.enabled
    app.state.limiter = limiter

    # =========================================================================
    # Exception handlers
    # =========================================================================
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)

    # =========================================================================
    # Middleware (order matters - last added is first executed)
    # =========================================================================
    if settings.rate_limit.enabled:
        app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware (should be last to execute first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.origins_list,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.allow_methods,
        allow_headers=settings.cors.allow_headers,
    )

    # OpenTelemetry (optional, depends on OTEL_ENABLED)
    try:
        if setup_telemetry(settings.otel):
            instrument_app(app)
    except Exception as e:
        logger.warning("Failed to setup telemetry: %s", str(e))

    # =========================================================================
    # Routes
    # =========================================================================
    app.include_router(health.router, tags=["Health"])
    app.include_router(v1_router)

    return app


def run() -> None:
    """Serve the API with uvicorn using the API settings."""
    settings = get_settings()
    uvicorn.run(
        "fitpulse.api.app:create_app",
        factory=True,
        host=settings.api.host,
        port=settings.api.port,
        workers=1 if settings.api.reload else settings.api.workers,
        reload=settings.api.reload,
    )
