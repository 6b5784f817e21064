# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FitPulse telemetry pipeline.

Client-side event buffering, batched server ingestion, session tracking,
windowed aggregation, realtime metrics and scheduled report generation.
"""

__version__ = "1.0.0"
