"""OpenTelemetry initialization and span helpers for the reminder service."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

TRACER_NAME = "medminder"

# Guard flag: True once the global TracerProvider has been installed.
# Prevents "Overriding of current TracerProvider is not allowed" warnings
# when init_telemetry() is called more than once in the same process.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "medminder") -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the reminder service.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Without it, the global no-op
    provider stays in place and every span is a silent no-op.

    Args:
        service_name: Value for the ``service.name`` resource attribute.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing existing provider")
        return trace.get_tracer(TRACER_NAME)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(TRACER_NAME)


def get_tracer() -> trace.Tracer:
    """Get the medminder tracer from the current provider."""
    return trace.get_tracer(TRACER_NAME)


def traced(span_name: str):  # noqa: ANN201
    """Decorate an async function so each call runs inside its own span.

    The tracer is looked up per call so a provider installed after import is
    still honoured. Exceptions are recorded on the span and re-raised.
    """

    def _decorator(func):  # noqa: ANN001, ANN202
        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with get_tracer().start_as_current_span(span_name):
                return await func(*args, **kwargs)

        return _wrapper

    return _decorator
