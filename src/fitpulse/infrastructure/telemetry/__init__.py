# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Observability setup."""

from fitpulse.infrastructure.telemetry.setup import instrument_app, setup_telemetry

__all__ = ["instrument_app", "setup_telemetry"]
