# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Standalone process for the recurring report and maintenance jobs.

The API runs the jobs itself only with a single worker (see
``runs_embedded_scheduler``). Multi-worker deployments start exactly one
of these next to the API:

    fitpulse-scheduler

It shares the event store with the API; every job reads and writes the
database, so nothing needs to live in an API worker.
"""

import asyncio
import logging
import signal

from starlette.datastructures import State

from fitpulse.api.app import build_services
from fitpulse.core.config import Settings, get_settings
from fitpulse.infrastructure.background import JobScheduler
from fitpulse.infrastructure.database.connection import close_database, init_database
from fitpulse.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def serve(
    settings: Settings,
    stop: asyncio.Event,
    scheduler: JobScheduler | None = None,
) -> JobScheduler | None:
    """Run the scheduled jobs until ``stop`` is set.

    Args:
        settings: Application settings.
        stop: Set to shut the scheduler down.
        scheduler: Scheduler to register the jobs on. Created from the
            settings timezone when omitted.

    Returns:
        The stopped scheduler, or None when scheduling is disabled.
    """
    if not settings.scheduler.enabled:
        logger.warning("Scheduler disabled by SCHEDULER_ENABLED, nothing to run")
        return None

    db_manager = await init_database(settings)
    state = State()
    build_services(state, settings, db_manager)

    scheduler = scheduler or JobScheduler(timezone=settings.scheduler.tzinfo)
    state.jobs.register(scheduler)
    await scheduler.start()
    logger.info("Scheduler process started with %d jobs", len(scheduler.list_jobs()))

    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        await close_database()
        logger.info("Scheduler process stopped")
    return scheduler


async def _main(settings: Settings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await serve(settings, stop)


def run() -> None:
    """Entry point for ``fitpulse-scheduler``."""
    settings = get_settings()
    setup_logging(settings)
    asyncio.run(_main(settings))
