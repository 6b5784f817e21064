# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""OpenTelemetry setup for FitPulse.

Configures the OpenTelemetry SDK for tracing across the API and the
report workers. Tracing is off unless ``OTEL_ENABLED=true``.
"""

import logging
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

if TYPE_CHECKING:
    from fastapi import FastAPI

    from fitpulse.core.config.settings import OTelSettings

logger = logging.getLogger(__name__)


def setup_telemetry(settings: "OTelSettings") -> bool:
    """Setup OpenTelemetry tracing with an OTLP exporter.

    Args:
        settings: OpenTelemetry settings.

    Returns:
        True if a tracer provider was installed.

    Example:
        setup_telemetry(get_settings().otel)
    """
    if not settings.enabled:
        logger.debug("OpenTelemetry disabled")
        return False

    if not settings.exporter_otlp_endpoint:
        logger.info("No OTLP endpoint configured, using the noop tracer")
        return False

    resource = Resource.create({SERVICE_NAME: settings.service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(
        endpoint=settings.exporter_otlp_endpoint,
        insecure=settings.exporter_otlp_endpoint.startswith("http://"),
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    logger.info(
        "OpenTelemetry configured: service=%s, endpoint=%s",
        settings.service_name,
        settings.exporter_otlp_endpoint,
    )
    return True


def instrument_app(app: "FastAPI") -> None:
    """Create spans for every request handled by ``app``."""
    FastAPIInstrumentor.instrument_app(app)
    logger.info("FastAPI instrumentation enabled")
