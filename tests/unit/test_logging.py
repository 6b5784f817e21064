# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the structlog setup."""

import json
import logging
from collections.abc import Iterator

import pytest

from fitpulse.core.config.settings import Settings
from fitpulse.utils.logging import bind_context, clear_context, log_context, setup_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    clear_context()


def _records(out: str) -> list[dict]:
    return [json.loads(line) for line in out.splitlines() if line.startswith("{")]


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_lines_carry_service_and_context(self, capsys, restore_root_logger) -> None:
        """Test that stdlib records are rendered as JSON with bound fields."""
        setup_logging(Settings(environment="staging", debug=False, log_level="INFO"))
        logger = logging.getLogger("fitpulse.test")

        bind_context(request_id="req-1")
        with log_context(job="daily-reports"):
            logger.info("Flushed %d events", 3)
        logger.info("After job")

        first, second = _records(capsys.readouterr().out)
        assert first["event"] == "Flushed 3 events"
        assert first["service"] == "fitpulse-telemetry"
        assert first["environment"] == "staging"
        assert first["request_id"] == "req-1"
        assert first["job"] == "daily-reports"
        assert first["level"] == "info"
        assert "job" not in second

    def test_noisy_libraries_are_raised_to_warning(self, restore_root_logger) -> None:
        """Test that library loggers stay quiet at DEBUG."""
        setup_logging(Settings(environment="development", log_level="DEBUG"))

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
