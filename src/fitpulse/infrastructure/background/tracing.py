# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""OpenTelemetry tracing middleware for Dramatiq.

Propagates the trace context of the request that enqueued a message to the
worker that processes it, so report generation shows up under the API
request that asked for it.
"""

import logging
from typing import Any

import dramatiq
from dramatiq import Message, Middleware
from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)
propagator = TraceContextTextMapPropagator()


class TracingMiddleware(Middleware):
    """Creates a consumer span around every processed message.

    Usage:
        broker.add_middleware(TracingMiddleware())
    """

    TRACE_CONTEXT_KEY = "trace_context"

    def __init__(self, service_name: str = "fitpulse-worker") -> None:
        self.service_name = service_name
        self._spans: dict[str, Span] = {}

    def before_enqueue(self, broker: dramatiq.Broker, message: Message, delay: int | None) -> None:
        """Inject the current trace context into the message."""
        carrier: dict[str, str] = {}
        propagator.inject(carrier)
        if carrier:
            message.options[self.TRACE_CONTEXT_KEY] = carrier

    def before_process_message(self, broker: dramatiq.Broker, message: Message) -> None:
        """Start a span for the message."""
        carrier = message.options.get(self.TRACE_CONTEXT_KEY)
        context = propagator.extract(carrier) if carrier else None

        span = tracer.start_span(
            name=f"dramatiq.process.{message.actor_name}",
            kind=SpanKind.CONSUMER,
            context=context,
        )
        span.set_attribute("messaging.system", "dramatiq")
        span.set_attribute("messaging.destination", message.queue_name or "default")
        span.set_attribute("messaging.operation", "process")
        span.set_attribute("dramatiq.actor", message.actor_name)
        span.set_attribute("dramatiq.message_id", message.message_id)
        span.set_attribute("service.name", self.service_name)
        self._spans[message.message_id] = span

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
        *,
        result: Any = None,
        exception: BaseException | None = None,
    ) -> None:
        """End the span, recording a failure if there was one."""
        span = self._spans.pop(message.message_id, None)
        if span is None:
            return
        try:
            if exception is not None:
                span.set_status(Status(StatusCode.ERROR, str(exception)))
                span.record_exception(exception)
            else:
                span.set_status(Status(StatusCode.OK))
        finally:
            span.end()

    def after_skip_message(self, broker: dramatiq.Broker, message: Message) -> None:
        """End the span of a skipped message."""
        span = self._spans.pop(message.message_id, None)
        if span is not None:
            span.set_attribute("dramatiq.skipped", True)
            span.end()
