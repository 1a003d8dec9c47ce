"""OpenTelemetry tracing for backend requests.

A tracer provider is created lazily on first use. Spans are exported over
OTLP when tracing is enabled and an endpoint is configured; otherwise they are
recorded by the SDK but not exported anywhere.

Usage:
    ```python
    from campusfeed.telemetry import get_tracer, add_span_attributes

    tracer = get_tracer(__name__)

    with tracer.start_as_current_span("api.get") as span:
        add_span_attributes(span, {"endpoint": "/posts/"})
    ```

Environment Variables:
    - OTEL_SERVICE_NAME: Service name for traces (default: "campusfeed")
"""

from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode, Tracer
from opentelemetry.trace.span import Span

from campusfeed.config import settings
from campusfeed.logging import logger

_tracer_provider: TracerProvider | None = None
_initialized: bool = False


def initialize_telemetry() -> None:
    """Initialize the tracer provider once per process.

    Raises:
        ValueError: If the configured OTLP endpoint cannot be used
    """
    global _tracer_provider, _initialized

    if _initialized:
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "campusfeed")

    resource = Resource.create(
        {
            "service.name": service_name,
            "deployment.environment": settings.environment.value,
        }
    )
    _tracer_provider = TracerProvider(resource=resource)

    if settings.enable_tracing and settings.otlp_endpoint:
        try:
            exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
            _tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info(f"OTLP span exporter initialized ({settings.otlp_endpoint})")
        except Exception as e:
            logger.error(f"Failed to initialize OTLP exporter: {e}")
            raise ValueError(f"Invalid OTLP endpoint: {settings.otlp_endpoint}") from e

    trace.set_tracer_provider(_tracer_provider)
    _initialized = True
    logger.debug(f"Telemetry initialized for {service_name}")


def get_tracer(name: str) -> Tracer:
    """Get a tracer, initializing the provider on first call."""
    if not _initialized:
        initialize_telemetry()
    return trace.get_tracer(name)


def add_span_attributes(span: Span, attributes: dict[str, Any]) -> None:
    """Add attributes to a span, stringifying lists and dicts.

    ``None`` values are skipped because OpenTelemetry rejects them.
    """
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (list, dict)):
            value = str(value)
        span.set_attribute(key, value)


def record_exception_in_span(
    span: Span,
    exception: BaseException,
    set_status: bool = True,
) -> None:
    """Record an exception in a span and optionally mark it as an error."""
    span.record_exception(exception)
    if set_status:
        span.set_status(Status(StatusCode.ERROR, str(exception)))


def sync_logging_context_to_span(span: Span) -> None:
    """Copy request_id, user_id and operation from the logging context."""
    from campusfeed.logging import operation_var, request_id_var, user_id_var

    add_span_attributes(
        span,
        {
            "request_id": request_id_var.get(),
            "user_id": user_id_var.get(),
            "operation": operation_var.get(),
        },
    )


def shutdown_telemetry() -> None:
    """Flush pending spans and shut the provider down."""
    global _tracer_provider, _initialized

    if _tracer_provider and _initialized:
        _tracer_provider.shutdown()
        _initialized = False
        logger.debug("Telemetry shut down")


__all__ = [
    "initialize_telemetry",
    "shutdown_telemetry",
    "get_tracer",
    "add_span_attributes",
    "record_exception_in_span",
    "sync_logging_context_to_span",
]
