# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Exceptions raised by the analytics domain.

Exception Hierarchy:
- AnalyticsError: Base exception for the analytics domain
  - InvalidEventError: Event draft is missing or has invalid required fields
  - BatchTooLargeError: Ingestion batch exceeds the configured maximum
  - IngestionError: Batch could not be written to the event store
  - InvalidPeriodError: Dashboard period or date range cannot be parsed
  - InvalidQueryError: Aggregation request names an unknown field
  - InvalidReportRequestError: Report request is not valid
  - ReportNotFoundError: Report id does not exist
  - ReportStateError: Report is not in a state that allows the transition
"""


class AnalyticsError(Exception):
    """Base exception for analytics domain errors."""

    pass


class InvalidEventError(AnalyticsError):
    """Raised when an event draft fails validation."""

    pass


class BatchTooLargeError(AnalyticsError):
    """Raised when an ingestion batch exceeds the configured maximum."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Batch of {size} events exceeds the limit of {limit}")
        self.size = size
        self.limit = limit


class IngestionError(AnalyticsError):
    """Raised when a batch cannot be written to the event store."""

    pass


class InvalidPeriodError(AnalyticsError):
    """Raised when a period shorthand or date range is invalid."""

    pass


class InvalidQueryError(AnalyticsError):
    """Raised when an aggregation request names an unknown group field."""

    pass


class InvalidReportRequestError(AnalyticsError):
    """Raised when a report request is not valid."""

    pass


class ReportNotFoundError(AnalyticsError):
    """Raised when a report is not found."""

    pass


class ReportStateError(AnalyticsError):
    """Raised when a report cannot make the requested status transition."""

    pass
