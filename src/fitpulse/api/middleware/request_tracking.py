# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Request logging and API usage tracking.

Every request gets a request id bound to the structlog context, so all log
lines emitted while serving it carry the id, method, path and user. API
requests are also queued as ``api_request`` events through the ingestion
service, with the response time as the event value. Requests to the
ingestion endpoints themselves are not tracked.
"""

import logging
import time
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from fitpulse.api.dependencies import get_request_context
from fitpulse.utils.logging import bind_context, clear_context

logger = logging.getLogger(__name__)

TRACKED_PREFIX = "/api/"

# Path prefixes never recorded as api_request events
UNTRACKED_PREFIXES = (
    "/api/v1/analytics/events",
    "/api/v1/analytics/sessions",
)


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Binds request context for logging and records API usage events."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        context = get_request_context(request)
        bind_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            user_id=context.user_id,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            response.headers["X-Request-ID"] = request_id
            self._track(request, response.status_code, duration_ms)
            logger.debug(
                "%s %s -> %d (%.2f ms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
            )
            return response
        finally:
            clear_context()

    def _track(self, request: Request, status_code: int, duration_ms: float) -> None:
        path = request.url.path
        if not path.startswith(TRACKED_PREFIX) or path.startswith(UNTRACKED_PREFIXES):
            return

        ingestion = getattr(request.app.state, "ingestion", None)
        if ingestion is None:
            return

        ingestion.track_api_request(
            request.method,
            _route_path(request),
            status_code,
            duration_ms,
            get_request_context(request),
        )
