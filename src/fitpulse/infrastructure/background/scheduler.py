# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Scheduler for recurring in-process jobs.

Uses APScheduler for cron-style and interval scheduling of coroutine jobs.
Jobs are registered by name; a job whose previous run is still in progress
when its trigger fires is skipped, and the skip is logged.

Cron expressions use the classic five fields (minute hour day month
weekday) and are evaluated in the scheduler timezone. Weekday numbers
follow cron (0 and 7 are Sunday).

Example:
    from fitpulse.infrastructure.background.scheduler import JobScheduler

    scheduler = JobScheduler(timezone="Europe/Berlin")

    # Runs daily at 02:00 local time
    scheduler.add_cron_job("daily-reports", jobs.daily_reports, "0 2 * * *")

    # Runs every 15 minutes
    scheduler.add_interval_job("session-sweep", jobs.sweep_sessions, minutes=15)

    await scheduler.start()
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Awaitable, Callable, Literal
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from fitpulse.utils.datetime import utc_now
from fitpulse.utils.logging import log_context

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]

_WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

# A bare weekday number, not the step of a */n expression
_WEEKDAY_NUMBER = re.compile(r"(?<![/\d])\d+")


class SchedulerError(Exception):
    """Raised for unknown job names or invalid schedules."""

    pass


def _cron_day_of_week(value: str) -> str:
    """Translate cron weekday numbers into names APScheduler reads correctly."""

    def _name(match: re.Match[str]) -> str:
        number = int(match.group(0))
        if number > 7:
            raise SchedulerError(f"Invalid weekday in cron expression: {number}")
        return _WEEKDAY_NAMES[number % 7]

    return _WEEKDAY_NUMBER.sub(_name, value)


def cron_trigger(expression: str, tz: tzinfo) -> CronTrigger:
    """Build a CronTrigger from a five field cron expression.

    Raises:
        SchedulerError: If the expression is malformed.
    """
    parts = expression.split()
    if len(parts) != 5:
        raise SchedulerError(f"Invalid cron expression: {expression}")

    minute, hour, day, month, day_of_week = parts
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_cron_day_of_week(day_of_week),
            timezone=tz,
        )
    except ValueError as e:
        raise SchedulerError(f"Invalid cron expression {expression!r}: {e}") from e


@dataclass
class ScheduledJob:
    """A named recurring job.

    Attributes:
        name: Unique job name.
        func: Coroutine function run on every trigger.
        trigger: APScheduler trigger.
        schedule: Human readable schedule (cron expression or interval).
        kind: Trigger kind.
        enabled: Whether triggers run the job.
        is_running: Whether a run is in progress.
        last_run: Start of the most recent run.
        last_duration: Seconds taken by the most recent run.
        last_error: Error of the most recent failed run.
        run_count: Completed runs.
        error_count: Failed runs.
        skip_count: Triggers skipped because a run was in progress.
    """

    name: str
    func: JobFunc
    trigger: BaseTrigger
    schedule: str
    kind: Literal["cron", "interval"]
    enabled: bool = True
    is_running: bool = False
    last_run: datetime | None = None
    last_duration: float | None = None
    last_error: str | None = None
    run_count: int = 0
    error_count: int = 0
    skip_count: int = 0
    next_run: datetime | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "kind": self.kind,
            "schedule": self.schedule,
            "enabled": self.enabled,
            "is_running": self.is_running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_duration": self.last_duration,
            "last_error": self.last_error,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "skip_count": self.skip_count,
        }


class JobScheduler:
    """Runs named coroutine jobs on cron and interval schedules.

    Attributes:
        timezone: Timezone cron expressions are evaluated in.
    """

    def __init__(self, timezone: tzinfo | str = "UTC") -> None:
        """Initialize the scheduler.

        Args:
            timezone: Timezone object or IANA name.
        """
        self.timezone: tzinfo = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
        self._scheduler: AsyncIOScheduler | None = None
        self._jobs: dict[str, ScheduledJob] = {}

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._scheduler is not None

    def _get(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise SchedulerError(f"Unknown job: {name}")
        return job

    def _register(self, job: ScheduledJob) -> ScheduledJob:
        if job.name in self._jobs:
            raise SchedulerError(f"Job already registered: {job.name}")
        self._jobs[job.name] = job
        if self._scheduler is not None and job.enabled:
            self._schedule(job)
        return job

    def add_cron_job(
        self,
        name: str,
        func: JobFunc,
        cron_expression: str,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Add a cron-scheduled job.

        Args:
            name: Job name.
            func: Coroutine function to run.
            cron_expression: Cron expression (minute hour day month weekday).
            enabled: Whether the job is enabled.

        Returns:
            Created ScheduledJob.

        Raises:
            SchedulerError: If the name is taken or the expression is invalid.
        """
        job = self._register(
            ScheduledJob(
                name=name,
                func=func,
                trigger=cron_trigger(cron_expression, self.timezone),
                schedule=cron_expression,
                kind="cron",
                enabled=enabled,
            )
        )
        logger.info("Added cron job: %s (%s)", name, cron_expression)
        return job

    def add_interval_job(
        self,
        name: str,
        func: JobFunc,
        seconds: int = 0,
        minutes: int = 0,
        hours: int = 0,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Add an interval-scheduled job.

        Args:
            name: Job name.
            func: Coroutine function to run.
            seconds: Interval seconds.
            minutes: Interval minutes.
            hours: Interval hours.
            enabled: Whether the job is enabled.

        Returns:
            Created ScheduledJob.
        """
        if seconds <= 0 and minutes <= 0 and hours <= 0:
            raise SchedulerError(f"Interval of job {name} must be positive")

        job = self._register(
            ScheduledJob(
                name=name,
                func=func,
                trigger=IntervalTrigger(
                    seconds=seconds,
                    minutes=minutes,
                    hours=hours,
                    timezone=self.timezone,
                ),
                schedule=f"every {hours}h {minutes}m {seconds}s",
                kind="interval",
                enabled=enabled,
            )
        )
        logger.info(
            "Added interval job: %s (every %dh %dm %ds)",
            name,
            hours,
            minutes,
            seconds,
        )
        return job

    def _schedule(self, job: ScheduledJob) -> None:
        if self._scheduler is None:
            return
        # Overlaps are decided by the job's running flag, so APScheduler
        # must let a second instance through for the skip to be recorded
        self._scheduler.add_job(
            self.run_job,
            trigger=job.trigger,
            args=[job.name],
            id=job.name,
            name=job.name,
            max_instances=2,
            coalesce=True,
            replace_existing=True,
        )

    def _unschedule(self, job: ScheduledJob) -> None:
        if self._scheduler is not None and self._scheduler.get_job(job.name) is not None:
            self._scheduler.remove_job(job.name)

    async def run_job(self, name: str) -> bool:
        """Run a job now unless a previous run is still in progress.

        Used by the triggers and for manual runs. Errors raised by the job
        are logged and counted, not propagated.

        Args:
            name: Job name.

        Returns:
            False if the run was skipped.

        Raises:
            SchedulerError: If the job is unknown.
        """
        job = self._get(name)
        if job.is_running:
            job.skip_count += 1
            logger.warning("Job %s is still running; skipping this trigger", name)
            return False

        job.is_running = True
        job.last_run = utc_now()
        started = time.monotonic()
        logger.info("Running scheduled job: %s", name)

        try:
            with log_context(job=name):
                await job.func()
            job.last_error = None
        except Exception as e:
            job.error_count += 1
            job.last_error = str(e) or type(e).__name__
            logger.error("Scheduled job %s failed: %s", name, e, exc_info=True)
        finally:
            job.is_running = False
            job.run_count += 1
            job.last_duration = round(time.monotonic() - started, 3)

        logger.info("Scheduled job %s finished in %.3fs", name, job.last_duration)
        return True

    def start_job(self, name: str) -> ScheduledJob:
        """Enable a job so its trigger runs it again.

        Raises:
            SchedulerError: If the job is unknown.
        """
        job = self._get(name)
        job.enabled = True
        self._schedule(job)
        logger.info("Enabled scheduled job: %s", name)
        return job

    def stop_job(self, name: str) -> ScheduledJob:
        """Disable a job. A run in progress is allowed to finish.

        Raises:
            SchedulerError: If the job is unknown.
        """
        job = self._get(name)
        job.enabled = False
        self._unschedule(job)
        logger.info("Disabled scheduled job: %s", name)
        return job

    def list_jobs(self) -> list[ScheduledJob]:
        """List all registered jobs."""
        return list(self._jobs.values())

    def get_job_status(self, name: str | None = None) -> dict[str, Any]:
        """Get the status of one job, or of all jobs keyed by name.

        Raises:
            SchedulerError: If a named job is unknown.
        """
        jobs = [self._get(name)] if name is not None else self.list_jobs()
        for job in jobs:
            job.next_run = self._next_run(job)
        if name is not None:
            return jobs[0].to_dict()
        return {job.name: job.to_dict() for job in jobs}

    def _next_run(self, job: ScheduledJob) -> datetime | None:
        if self._scheduler is None or not job.enabled:
            return None
        scheduled = self._scheduler.get_job(job.name)
        return scheduled.next_run_time if scheduled is not None else None

    async def start(self) -> None:
        """Start the scheduler and schedule all enabled jobs."""
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        for job in self._jobs.values():
            if job.enabled:
                self._schedule(job)
        self._scheduler.start()

        logger.info(
            "Job scheduler started with %d jobs (timezone=%s)",
            len(self._jobs),
            self.timezone,
        )

    async def stop(self) -> None:
        """Stop the scheduler. Runs in progress are not interrupted."""
        if self._scheduler is None:
            return

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Job scheduler stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "is_running": self.is_running,
            "timezone": str(self.timezone),
            "job_count": len(self._jobs),
            "enabled_count": sum(1 for j in self._jobs.values() if j.enabled),
            "total_runs": sum(j.run_count for j in self._jobs.values()),
            "total_errors": sum(j.error_count for j in self._jobs.values()),
            "total_skips": sum(j.skip_count for j in self._jobs.values()),
        }
