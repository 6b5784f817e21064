# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Report generation tasks.

The API creates a report in ``generating`` status and sends its id here.
The actor populates the payload and records the terminal status. Reports
are not retried: a failed report stays failed and a new request creates a
new report.
"""

import logging
from typing import Any

import dramatiq

from fitpulse.infrastructure.background.broker import Queues, setup_dramatiq
from fitpulse.infrastructure.background.tasks.base import run_async
from fitpulse.utils.logging import log_context

# Setup broker before defining actors
setup_dramatiq()

logger = logging.getLogger(__name__)


@dramatiq.actor(
    queue_name=Queues.REPORTS,
    max_retries=0,
    time_limit=600_000,  # 10 minutes
)
def generate_report(report_id: str) -> dict[str, Any]:
    """Generate a report created by the API.

    Args:
        report_id: Report in ``generating`` status.

    Returns:
        Report id and terminal status.
    """

    async def _generate() -> dict[str, Any]:
        from fitpulse.core.config import get_settings
        from fitpulse.domains.analytics.aggregator import AnalyticsAggregator
        from fitpulse.domains.analytics.reports import ReportService
        from fitpulse.infrastructure.database.connection import get_worker_db_manager

        settings = get_settings()
        service = ReportService(
            get_worker_db_manager(),
            AnalyticsAggregator(tz=settings.scheduler.tzinfo),
            generated_by="worker",
        )
        status = await service.run(report_id)
        return {"report_id": report_id, "status": status.value}

    with log_context(report_id=report_id):
        logger.info("Generating report")
        result = run_async(_generate())
        logger.info("Report finished with status %s", result["status"])
    return result
