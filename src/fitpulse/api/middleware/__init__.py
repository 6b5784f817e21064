# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""API middleware components.

This package provides middleware for request processing:
- RequestTrackingMiddleware: Request-scoped log context and API usage events.
- limiter: slowapi rate limiter keyed by user id or client IP.

Exports:
    RequestTrackingMiddleware: Request tracking middleware.
    limiter: Shared rate limiter.
    ingest_limit: Rate limit of the ingestion endpoints.
    rate_limit_exceeded_handler: 429 response handler.
"""

from fitpulse.api.middleware.rate_limit import (
    ingest_limit,
    limiter,
    rate_limit_exceeded_handler,
)
from fitpulse.api.middleware.request_tracking import RequestTrackingMiddleware

__all__ = [
    "RequestTrackingMiddleware",
    "ingest_limit",
    "limiter",
    "rate_limit_exceeded_handler",
]
