# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Report lifecycle.

A report is created in ``generating`` status with a fixed date range and
then makes exactly one transition, to ``completed`` with its payload or to
``failed`` with an error message. Transitions are conditional UPDATEs on
``status = 'generating'`` so a terminal report can never move again.

Creation and completion run in separate transactions. Pollers therefore
see the ``generating`` row while the payload is being built.

Usage:
    service = ReportService(db_manager, aggregator)
    report = await service.generate(ReportType.DAILY, daily_window(now))
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from math import ceil
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from sqlalchemy import and_, delete, func, select, true, update
from sqlalchemy.ext.asyncio import AsyncSession

from fitpulse.domains.analytics.aggregator import AnalyticsAggregator
from fitpulse.domains.analytics.exceptions import (
    InvalidReportRequestError,
    ReportNotFoundError,
    ReportStateError,
)
from fitpulse.domains.analytics.schemas import DateRange
from fitpulse.infrastructure.database.connection import DatabaseError
from fitpulse.infrastructure.database.models import (
    AnalyticsReport,
    ReportFormat,
    ReportStatus,
    ReportType,
)
from fitpulse.utils.datetime import utc_now

if TYPE_CHECKING:
    from fitpulse.infrastructure.database.connection import DatabaseManager

logger = logging.getLogger(__name__)

# Builds a report payload for (db, date_range, user_id)
PayloadBuilder = Callable[[AsyncSession, DateRange, str | None], Awaitable[dict[str, Any]]]

# Hands a created report id to whatever runs it
Dispatcher = Callable[[str], Any]

MAX_PAGE_SIZE = 100


@dataclass
class ReportPage:
    """One page of report metadata."""

    items: list[AnalyticsReport] = field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0

    @property
    def pages(self) -> int:
        """Number of pages for the current total."""
        return ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary without report payloads."""
        return {
            "reports": [report.to_dict(include_data=False) for report in self.items],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "pages": self.pages,
            },
        }


def _parse_enum(enum_cls: type, value: Any, what: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidReportRequestError(
            f"Invalid {what} {value!r}; expected one of {allowed}"
        ) from e


def default_report_name(
    report_type: ReportType,
    date_range: DateRange,
    user_id: str | None = None,
) -> str:
    """Human readable report name."""
    name = f"{report_type.value.title()} report {date_range.start.date()} - {date_range.end.date()}"
    if user_id:
        name = f"{name} ({user_id})"
    return name


class ReportService:
    """Creates, runs and queries reports.

    Attributes:
        generated_by: Actor recorded on reports when the caller gives none.
    """

    def __init__(
        self,
        db_manager: "DatabaseManager",
        aggregator: AnalyticsAggregator | None = None,
        dispatcher: Dispatcher | None = None,
        generated_by: str = "system",
    ) -> None:
        """Initialize the report service.

        Args:
            db_manager: Database manager for the report transactions.
            aggregator: Aggregation engine providing the default payload.
            dispatcher: Runs a created report out of band. Defaults to a
                task on the running event loop.
            generated_by: Default actor recorded on reports.
        """
        self._db = db_manager
        self._aggregator = aggregator or AnalyticsAggregator()
        self._dispatcher = dispatcher
        self.generated_by = generated_by
        self._tasks: set[asyncio.Task[Any]] = set()

    def set_dispatcher(self, dispatcher: Dispatcher | None) -> None:
        """Replace the out-of-band runner used by request_report()."""
        self._dispatcher = dispatcher

    # =========================================================================
    # Record operations (caller owns the transaction)
    # =========================================================================

    async def create_report(
        self,
        db: AsyncSession,
        report_type: ReportType | str,
        date_range: DateRange,
        format: ReportFormat | str = ReportFormat.JSON,
        user_id: str | None = None,
        name: str | None = None,
        generated_by: str | None = None,
        metrics: Sequence[str] | None = None,
    ) -> AnalyticsReport:
        """Insert a report in ``generating`` status.

        Raises:
            InvalidReportRequestError: For an unknown type or format.
        """
        report_type = _parse_enum(ReportType, report_type, "report type")
        format = _parse_enum(ReportFormat, format, "report format")

        report = AnalyticsReport(
            report_type=report_type.value,
            report_name=name or default_report_name(report_type, date_range, user_id),
            user_id=user_id,
            date_start=date_range.start,
            date_end=date_range.end,
            metrics=list(metrics or []),
            format=format.value,
            status=ReportStatus.GENERATING.value,
            generated_by=generated_by or self.generated_by,
            created_at=utc_now(),
        )
        db.add(report)
        await db.flush()

        logger.info(
            "Created report: id=%s, type=%s, user=%s",
            report.id,
            report.report_type,
            user_id,
        )
        return report

    async def _transition(
        self,
        db: AsyncSession,
        report_id: str,
        values: dict[str, Any],
    ) -> bool:
        result = await db.execute(
            update(AnalyticsReport)
            .where(
                and_(
                    AnalyticsReport.id == report_id,
                    AnalyticsReport.status == ReportStatus.GENERATING.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def complete_report(
        self,
        db: AsyncSession,
        report_id: str,
        data: dict[str, Any],
        generated_at: datetime | None = None,
    ) -> bool:
        """Move a generating report to completed.

        Returns:
            False if the report was already terminal.
        """
        return await self._transition(
            db,
            report_id,
            {
                "status": ReportStatus.COMPLETED.value,
                "data": data,
                "generated_at": generated_at or utc_now(),
            },
        )

    async def fail_report(self, db: AsyncSession, report_id: str, error_message: str) -> bool:
        """Move a generating report to failed."""
        return await self._transition(
            db,
            report_id,
            {
                "status": ReportStatus.FAILED.value,
                "error_message": error_message[:2000],
                "generated_at": utc_now(),
            },
        )

    async def get_report(self, db: AsyncSession, report_id: str) -> AnalyticsReport:
        """Get a report by id.

        Raises:
            ReportNotFoundError: If no report has this id.
        """
        report = await db.get(AnalyticsReport, report_id, populate_existing=True)
        if report is None:
            raise ReportNotFoundError(f"Report {report_id} not found")
        return report

    async def list_reports(
        self,
        db: AsyncSession,
        report_type: ReportType | str | None = None,
        user_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ReportPage:
        """List report metadata, newest first."""
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        conditions = []
        if report_type is not None:
            conditions.append(
                AnalyticsReport.report_type
                == _parse_enum(ReportType, report_type, "report type").value
            )
        if user_id is not None:
            conditions.append(AnalyticsReport.user_id == user_id)
        where = and_(true(), *conditions)

        total = int(
            await db.scalar(select(func.count(AnalyticsReport.id)).where(where)) or 0
        )
        result = await db.execute(
            select(AnalyticsReport)
            .where(where)
            .order_by(AnalyticsReport.created_at.desc(), AnalyticsReport.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return ReportPage(items=list(result.scalars().all()), page=page, limit=limit, total=total)

    async def cleanup_reports(self, db: AsyncSession, older_than: datetime) -> int:
        """Delete reports created before ``older_than``.

        Returns:
            Number of deleted reports.
        """
        result = await db.execute(
            delete(AnalyticsReport)
            .where(AnalyticsReport.created_at < older_than)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info("Deleted %d reports created before %s", deleted, older_than.isoformat())
        return deleted

    # =========================================================================
    # Generation
    # =========================================================================

    async def run(self, report_id: str, builder: PayloadBuilder | None = None) -> ReportStatus:
        """Populate a generating report and record its terminal status.

        Any error while building or storing the payload marks the report
        failed. Cancellation marks it failed too and is then re-raised.

        Args:
            report_id: Report to generate.
            builder: Payload builder, defaults to the aggregator's report
                payload.

        Returns:
            The terminal status.

        Raises:
            ReportNotFoundError: If the report does not exist.
            ReportStateError: If the report is already terminal.
        """
        builder = builder or self._aggregator.report_payload

        async with self._db.session() as db:
            report = await self.get_report(db, report_id)
            if ReportStatus(report.status).is_terminal:
                raise ReportStateError(f"Report {report_id} is already {report.status}")
            date_range = DateRange(start=report.date_start, end=report.date_end)
            user_id = report.user_id

        try:
            async with self._db.session() as db:
                data = await builder(db, date_range, user_id)
            async with self._db.session() as db:
                await self.complete_report(db, report_id, data)
        except asyncio.CancelledError:
            await self._mark_failed(report_id, "Report generation was cancelled")
            raise
        except Exception as e:
            logger.error("Report %s failed: %s", report_id, e)
            await self._mark_failed(report_id, str(e) or type(e).__name__)
            return ReportStatus.FAILED

        logger.info("Report %s completed", report_id)
        return ReportStatus.COMPLETED

    async def _mark_failed(self, report_id: str, message: str) -> None:
        try:
            async with self._db.session() as db:
                await self.fail_report(db, report_id, message)
        except DatabaseError:
            logger.error("Could not mark report %s as failed", report_id)
            raise

    async def generate(
        self,
        report_type: ReportType | str,
        date_range: DateRange,
        format: ReportFormat | str = ReportFormat.JSON,
        user_id: str | None = None,
        name: str | None = None,
        generated_by: str | None = None,
        builder: PayloadBuilder | None = None,
    ) -> AnalyticsReport:
        """Create a report and generate it in the calling task.

        Returns:
            The report in its terminal state.
        """
        async with self._db.session() as db:
            report = await self.create_report(
                db,
                report_type,
                date_range,
                format=format,
                user_id=user_id,
                name=name,
                generated_by=generated_by,
            )
            report_id = report.id

        await self.run(report_id, builder=builder)

        async with self._db.session() as db:
            return await self.get_report(db, report_id)

    async def request_report(
        self,
        report_type: ReportType | str,
        date_range: DateRange,
        format: ReportFormat | str = ReportFormat.JSON,
        user_id: str | None = None,
        generated_by: str | None = None,
    ) -> AnalyticsReport:
        """Create a report and hand it to the dispatcher.

        Returns immediately with the report in ``generating`` status. If
        dispatching fails the report is marked failed and the error is
        re-raised.
        """
        async with self._db.session() as db:
            report = await self.create_report(
                db,
                report_type,
                date_range,
                format=format,
                user_id=user_id,
                generated_by=generated_by,
            )

        try:
            self._dispatch(report.id)
        except Exception as e:
            await self._mark_failed(report.id, f"Could not dispatch report: {e}")
            raise

        return report

    def _dispatch(self, report_id: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher(report_id)
            return
        task = asyncio.get_running_loop().create_task(self.run(report_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_pending(self) -> None:
        """Wait for reports dispatched to the local event loop."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
