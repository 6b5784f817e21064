# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Recurring report and maintenance jobs.

Each public coroutine is one named scheduler job:

- daily-reports: org-wide report for yesterday
- weekly-reports: org-wide report for the last seven full days, plus one
  report per opted-in user
- monthly-reports: same for the previous calendar month
- cleanup-old-data: deletes expired reports, events and ended sessions
- engagement-scores: stores per-user engagement scores as a custom report
- session-sweep: closes sessions idle past the inactivity timeout

Every report follows the generating -> completed | failed lifecycle on
its own, so one user's failure never stops the rest of a fan-out.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics.aggregator import AnalyticsAggregator
from fitpulse.domains.analytics.directory import NullUserDirectory, UserDirectory
from fitpulse.domains.analytics.periods import daily_window, monthly_window, weekly_window
from fitpulse.domains.analytics.reports import ReportService
from fitpulse.domains.analytics.schemas import DateRange
from fitpulse.domains.analytics.sessions import SessionTracker
from fitpulse.domains.analytics.store import EventStore
from fitpulse.infrastructure.database.models import AnalyticsReport, ReportType
from fitpulse.utils.datetime import ensure_utc, utc_now

if TYPE_CHECKING:
    from fitpulse.core.config.settings import Settings
    from fitpulse.infrastructure.background.scheduler import JobScheduler
    from fitpulse.infrastructure.database.connection import DatabaseManager

logger = logging.getLogger(__name__)

DAILY_REPORTS = "daily-reports"
WEEKLY_REPORTS = "weekly-reports"
MONTHLY_REPORTS = "monthly-reports"
CLEANUP_OLD_DATA = "cleanup-old-data"
ENGAGEMENT_SCORES = "engagement-scores"
SESSION_SWEEP = "session-sweep"

SCHEDULER_ACTOR = "scheduler"


class ReportJobs:
    """Job bodies for the report scheduler.

    Args:
        db_manager: Database manager for maintenance transactions.
        reports: Report service used to create and generate reports.
        settings: Application settings (cadences, limits, retention).
        aggregator: Aggregation engine used for engagement scores.
        directory: User directory providing report recipients.
        clock: Returns the current time. Injected for tests.
    """

    def __init__(
        self,
        db_manager: "DatabaseManager",
        reports: ReportService,
        settings: "Settings",
        aggregator: AnalyticsAggregator | None = None,
        directory: UserDirectory | None = None,
        store: EventStore | None = None,
        sessions: SessionTracker | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db_manager
        self._reports = reports
        self._settings = settings
        self._aggregator = aggregator or AnalyticsAggregator(tz=settings.scheduler.tzinfo)
        self._directory = directory or NullUserDirectory()
        self._store = store or EventStore()
        self._sessions = sessions or SessionTracker()
        self._clock = clock

    def _now(self, now: datetime | None) -> datetime:
        return ensure_utc(now) or self._clock()

    # =========================================================================
    # Reports
    # =========================================================================

    async def _generate(
        self,
        report_type: ReportType,
        window: DateRange,
        user_id: str | None = None,
    ) -> AnalyticsReport | None:
        try:
            return await self._reports.generate(
                report_type,
                window,
                user_id=user_id,
                generated_by=SCHEDULER_ACTOR,
            )
        except Exception as e:
            logger.error(
                "Could not generate %s report for %s: %s",
                report_type.value,
                user_id or "all users",
                e,
            )
            return None

    async def _fan_out(
        self,
        report_type: ReportType,
        window: DateRange,
        limit: int,
    ) -> list[AnalyticsReport]:
        reports = []
        org_report = await self._generate(report_type, window)
        if org_report is not None:
            reports.append(org_report)

        recipients = await self._directory.report_recipients(report_type.value, limit)
        for user_id in recipients[:limit]:
            report = await self._generate(report_type, window, user_id=user_id)
            if report is not None:
                reports.append(report)

        logger.info(
            "Generated %d %s reports for %s (%d recipients)",
            len(reports),
            report_type.value,
            window.start.date(),
            len(recipients),
        )
        return reports

    async def daily_reports(self, now: datetime | None = None) -> AnalyticsReport | None:
        """Org-wide report for the previous local day."""
        window = daily_window(self._now(now), self._settings.scheduler.tzinfo)
        return await self._generate(ReportType.DAILY, window)

    async def weekly_reports(self, now: datetime | None = None) -> list[AnalyticsReport]:
        """Weekly reports for the org and the first N opted-in users."""
        window = weekly_window(self._now(now), self._settings.scheduler.tzinfo)
        return await self._fan_out(
            ReportType.WEEKLY, window, self._settings.scheduler.weekly_user_limit
        )

    async def monthly_reports(self, now: datetime | None = None) -> list[AnalyticsReport]:
        """Monthly reports for the org and the first N opted-in users."""
        window = monthly_window(self._now(now), self._settings.scheduler.tzinfo)
        return await self._fan_out(
            ReportType.MONTHLY, window, self._settings.scheduler.monthly_user_limit
        )

    async def refresh_engagement_scores(self, now: datetime | None = None) -> AnalyticsReport | None:
        """Store current engagement scores as a custom report."""
        now = self._now(now)
        days = self._settings.scheduler.engagement_window_days
        window = DateRange(start=now - timedelta(days=days), end=now)

        async def _scores(db: AsyncSession, date_range: DateRange, user_id: str | None) -> dict[str, Any]:
            scores = await self._aggregator.engagement_scores(db, date_range)
            return {
                "summary": {
                    "users_scored": len(scores),
                    "window_days": days,
                    "date_range": date_range.to_dict(),
                },
                "scores": [score.to_dict() for score in scores],
            }

        try:
            return await self._reports.generate(
                ReportType.CUSTOM,
                window,
                name=f"Engagement scores {now.date()}",
                generated_by=SCHEDULER_ACTOR,
                builder=_scores,
            )
        except Exception as e:
            logger.error("Could not refresh engagement scores: %s", e)
            return None

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def cleanup_old_data(self, now: datetime | None = None) -> dict[str, int]:
        """Delete reports, events and ended sessions past retention."""
        now = self._now(now)
        retention = self._settings.retention

        async with self._db.session() as db:
            reports_deleted = await self._reports.cleanup_reports(
                db, now - timedelta(days=retention.report_days)
            )
            evicted = await self._store.evict_expired(
                db,
                now,
                event_retention=timedelta(days=retention.event_days),
                session_retention=timedelta(days=retention.session_days),
            )

        result = {"reports_deleted": reports_deleted, **evicted.to_dict()}
        logger.info("Cleanup finished: %s", result)
        return result

    async def sweep_sessions(self, now: datetime | None = None) -> int:
        """Close sessions idle longer than the inactivity timeout."""
        timeout = timedelta(minutes=self._settings.sessions.inactivity_timeout_minutes)
        async with self._db.session() as db:
            return await self._sessions.close_inactive_sessions(db, timeout, now=self._now(now))

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, scheduler: "JobScheduler") -> None:
        """Register every job on the scheduler with its configured cadence."""
        cadences = self._settings.scheduler
        scheduler.add_cron_job(DAILY_REPORTS, self.daily_reports, cadences.daily_cron)
        scheduler.add_cron_job(WEEKLY_REPORTS, self.weekly_reports, cadences.weekly_cron)
        scheduler.add_cron_job(MONTHLY_REPORTS, self.monthly_reports, cadences.monthly_cron)
        scheduler.add_cron_job(CLEANUP_OLD_DATA, self.cleanup_old_data, cadences.cleanup_cron)
        scheduler.add_cron_job(
            ENGAGEMENT_SCORES, self.refresh_engagement_scores, cadences.engagement_cron
        )
        scheduler.add_interval_job(
            SESSION_SWEEP,
            self.sweep_sessions,
            minutes=self._settings.sessions.sweep_interval_minutes,
        )
