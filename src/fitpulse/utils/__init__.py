# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Utility functions and helpers for the FitPulse telemetry service.

This package contains cross-cutting utilities:
- logging: Structured logging with structlog
- datetime: Timezone-aware datetime operations
"""

from fitpulse.utils.datetime import (
    days_ago,
    ensure_utc,
    floor_to_hour,
    format_iso,
    hours_ago,
    minutes_ago,
    start_of_day,
    utc_now,
)
from fitpulse.utils.logging import (
    bind_context,
    clear_context,
    get_logger,
    log_context,
    setup_logging,
)

__all__ = [
    # Datetime
    "utc_now",
    "ensure_utc",
    "minutes_ago",
    "hours_ago",
    "days_ago",
    "start_of_day",
    "floor_to_hour",
    "format_iso",
    # Logging
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "log_context",
]
