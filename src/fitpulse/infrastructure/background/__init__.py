# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background work for FitPulse.

- Dramatiq with a Redis broker for on-demand report generation
- APScheduler-backed JobScheduler for recurring jobs

Running Workers:
    dramatiq fitpulse.infrastructure.background.tasks --processes 2 --threads 4

Tasks are imported lazily to avoid configuring the broker on import:
    from fitpulse.infrastructure.background.tasks import generate_report
"""

from fitpulse.infrastructure.background.broker import (
    BrokerManager,
    Queues,
    get_broker,
    get_broker_manager,
    is_test_mode,
    setup_dramatiq,
    shutdown_dramatiq,
)
from fitpulse.infrastructure.background.scheduler import (
    JobScheduler,
    ScheduledJob,
    SchedulerError,
    cron_trigger,
)

__all__ = [
    # Broker
    "BrokerManager",
    "Queues",
    "get_broker",
    "get_broker_manager",
    "is_test_mode",
    "setup_dramatiq",
    "shutdown_dramatiq",
    # Scheduler
    "JobScheduler",
    "ScheduledJob",
    "SchedulerError",
    "cron_trigger",
]
