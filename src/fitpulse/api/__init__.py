# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FitPulse HTTP API.

Run with:
    fitpulse-api
or:
    uvicorn fitpulse.api.app:create_app --factory
"""

from fitpulse.api.app import create_app

__all__ = ["create_app"]
