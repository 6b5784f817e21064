# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq actors for FitPulse.

Running Workers:
    dramatiq fitpulse.infrastructure.background.tasks --processes 2 --threads 4
"""

from fitpulse.infrastructure.background.tasks.reports import generate_report

__all__ = ["generate_report"]
