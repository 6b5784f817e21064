# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for the FitPulse telemetry service.

Example:
    >>> from fitpulse.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from fitpulse.core.config.settings import (
    APISettings,
    CORSSettings,
    DatabaseSettings,
    IngestionSettings,
    OTelSettings,
    RateLimitSettings,
    RealtimeSettings,
    RedisSettings,
    RetentionSettings,
    SchedulerSettings,
    SessionSettings,
    Settings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "DatabaseSettings",
    "RedisSettings",
    "IngestionSettings",
    "SessionSettings",
    "RetentionSettings",
    "SchedulerSettings",
    "RealtimeSettings",
    "RateLimitSettings",
    "CORSSettings",
    "OTelSettings",
    "APISettings",
]
