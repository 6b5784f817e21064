# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""structlog setup for the API process and the report workers.

Every module logs through ``logging.getLogger(__name__)``. setup_logging()
installs one root handler whose ProcessorFormatter runs those records
through the structlog chain, so records from the ingestion flush loop, the
scheduler and the Dramatiq actors all carry the same fields:

- ``service`` and ``environment`` from settings
- any context bound with bind_context() or log_context(), such as the
  request id, the scheduled job name or the report id

Development renders colored console lines; staging and production render
one JSON object per line.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from fitpulse.core.config.settings import Settings

SERVICE_NAME = "fitpulse-telemetry"

# Libraries that log every query, request or tick at INFO
QUIET_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
    "aiosqlite",
    "asyncio",
    "apscheduler.executors",
    "apscheduler.scheduler",
    "dramatiq",
)


def _service_fields(environment: str) -> Processor:
    def add_service_fields(
        logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_service_fields


def setup_logging(settings: "Settings") -> None:
    """Install the structlog pipeline on the root logger.

    Safe to call more than once; the previous root handlers are replaced.

    Args:
        settings: Supplies ``log_level``, ``environment`` and ``debug``.
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _service_fields(settings.environment),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Processor
    if settings.is_development or settings.debug:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        pre_chain.append(structlog.processors.dict_tracebacks)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for key-value style call sites."""
    return structlog.get_logger(name)


def bind_context(**fields: Any) -> None:
    """Attach fields to every record logged from the current context.

    The request middleware binds ``request_id``, ``method`` and ``path``
    here and calls clear_context() once the response is sent.
    """
    structlog.contextvars.bind_contextvars(**fields)


def clear_context() -> None:
    """Drop everything bound with bind_context()."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields for the duration of a block, restoring the previous values.

    Used around units of work that are not requests, such as one scheduled
    job run or one report generation.

    Example:
        >>> with log_context(job="daily-reports"):
        ...     logger.info("Running")  # record carries job=daily-reports
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield
