# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq broker for on-demand report generation.

The API creates a report row and sends its id to the ``reports`` queue;
a worker process picks it up and fills in the payload. Nothing reads
actor return values, so no results backend is configured.

``DRAMATIQ_TEST_MODE=true`` selects an in-memory StubBroker. No worker
consumes a stub broker, so the API generates reports in-process instead
(see ``BrokerManager.is_stub``).

Example:
    from fitpulse.infrastructure.background.broker import setup_dramatiq

    broker = setup_dramatiq()
"""

import logging
import os
from typing import TYPE_CHECKING, Any

import dramatiq
import redis
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker

from fitpulse.core.config import get_settings
from fitpulse.infrastructure.background.tracing import TracingMiddleware

if TYPE_CHECKING:
    from fitpulse.core.config.settings import Settings

logger = logging.getLogger(__name__)

TEST_MODE_ENV = "DRAMATIQ_TEST_MODE"
REDIS_NAMESPACE = "dramatiq"


class Queues:
    """Queue names."""

    REPORTS = "reports"

    ALL = (REPORTS,)


def is_test_mode() -> bool:
    """Whether the in-memory broker was requested through the environment."""
    return os.getenv(TEST_MODE_ENV, "false").lower() == "true"


class BrokerManager:
    """Owns the process-wide Dramatiq broker.

    Args:
        settings: Settings to read Redis and tracing options from. Defaults
            to get_settings() at setup time.
    """

    def __init__(self, settings: "Settings | None" = None) -> None:
        self._settings = settings
        self._broker: dramatiq.Broker | None = None

    @property
    def broker(self) -> dramatiq.Broker:
        """The configured broker.

        Raises:
            RuntimeError: If setup() has not run.
        """
        if self._broker is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return self._broker

    @property
    def is_initialized(self) -> bool:
        return self._broker is not None

    @property
    def is_stub(self) -> bool:
        """Whether messages stay in memory instead of going to Redis."""
        return isinstance(self._broker, StubBroker)

    def setup(self) -> dramatiq.Broker:
        """Create the broker once, declare the report queue and install it globally."""
        if self._broker is not None:
            return self._broker

        if is_test_mode():
            broker: dramatiq.Broker = StubBroker()
            broker.emit_after("process_boot")
            logger.info("Using in-memory StubBroker for report tasks")
        else:
            settings = self._settings or get_settings()
            broker = RedisBroker(url=settings.redis.url, namespace=REDIS_NAMESPACE)
            if settings.otel.enabled:
                broker.add_middleware(TracingMiddleware(f"{settings.otel.service_name}-worker"))
            logger.info(
                "Redis broker ready for report tasks (%s)",
                settings.redis.url.split("@")[-1],
            )

        for queue in Queues.ALL:
            broker.declare_queue(queue)
        dramatiq.set_broker(broker)
        self._broker = broker
        return broker

    def shutdown(self) -> None:
        """Close the broker connection."""
        if self._broker is None:
            return
        self._broker.close()
        self._broker = None
        logger.info("Broker shutdown complete")

    def get_queue_stats(self) -> dict[str, Any]:
        """Report backlog for the health endpoint.

        Redis brokers report, per queue, the messages waiting, the delayed
        messages and the dead-lettered ones.
        """
        if self._broker is None:
            return {"status": "not_initialized"}
        if not isinstance(self._broker, RedisBroker):
            return {"broker_type": "stub", "status": "healthy"}

        settings = self._settings or get_settings()
        try:
            client = redis.Redis.from_url(settings.redis.url)
            queues = {
                queue: {
                    "pending": client.llen(f"{REDIS_NAMESPACE}:{queue}"),
                    "delayed": client.llen(f"{REDIS_NAMESPACE}:{queue}.DQ"),
                    "dead": client.zcard(f"{REDIS_NAMESPACE}:{queue}.XQ"),
                }
                for queue in Queues.ALL
            }
        except redis.RedisError as e:
            return {"broker_type": "redis", "status": "error", "error": str(e)}
        return {"broker_type": "redis", "status": "healthy", "queues": queues}


_broker_manager: BrokerManager | None = None


def get_broker_manager() -> BrokerManager:
    """Get the process-wide broker manager."""
    global _broker_manager
    if _broker_manager is None:
        _broker_manager = BrokerManager()
    return _broker_manager


def setup_dramatiq() -> dramatiq.Broker:
    """Set up the broker. Must run before actors are declared."""
    return get_broker_manager().setup()


def get_broker() -> dramatiq.Broker:
    """Get the current broker.

    Raises:
        RuntimeError: If setup_dramatiq() has not run.
    """
    return get_broker_manager().broker


def shutdown_dramatiq() -> None:
    """Close and forget the broker. Called at application shutdown."""
    global _broker_manager
    if _broker_manager is not None:
        _broker_manager.shutdown()
        _broker_manager = None
