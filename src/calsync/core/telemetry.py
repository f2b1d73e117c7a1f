"""OpenTelemetry initialization and sync spans."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from calsync.errors import short_error_message

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"

# True once the global TracerProvider has been installed; a second install
# would trigger OTel's provider-override warning.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "calsync") -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider with
    an OTLP gRPC exporter on the first call; later calls reuse it. Without the
    variable a no-op tracer is returned.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug(
            "TracerProvider already initialized; reusing existing provider for service=%s",
            service_name,
        )
        return trace.get_tracer(service_name)

    # Exporter is only imported when an endpoint is configured.
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


@contextmanager
def sync_span(feed_id: str, *, mode: str) -> Iterator[trace.Span]:
    """Span around one sync invocation, named ``calsync.sync``.

    Exceptions are recorded on the span and its status set to ERROR before
    the exception propagates.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        "calsync.sync",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span.set_attribute("feed.id", feed_id)
        span.set_attribute("sync.mode", mode)
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, short_error_message(exc))
            span.record_exception(exc)
            raise
