"""OpenTelemetry tracing for rushvote.

Tracing switches on only when OTEL_EXPORTER_OTLP_ENDPOINT is set. Without it
``trace_span`` hands out a do-nothing span and nothing from opentelemetry is
imported, so the ``otel`` extra stays optional.

Round transitions and seal operations run inside spans; a rejected operation
(bad input, a lost race for the open round) is marked on the span as a
rejection rather than a failure.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from .errors import RushVoteError
from .version import __version__

logger = logging.getLogger(__name__)

OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
OTEL_SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "rushvote")

# Attribute namespace for everything this service records on spans
ATTRIBUTE_PREFIX = "rushvote."

_tracer = None


def is_telemetry_enabled() -> bool:
    return _tracer is not None


def setup_telemetry() -> bool:
    """Install the OTLP exporter and tracer.

    Returns:
        True if spans will be exported
    """
    global _tracer

    if _tracer is not None:
        return True
    if not OTEL_EXPORTER_OTLP_ENDPOINT:
        logger.info("Tracing disabled: OTEL_EXPORTER_OTLP_ENDPOINT not set")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as e:
        logger.warning("Tracing requested but the otel extra is not installed: %s", e)
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": OTEL_SERVICE_NAME, "service.version": __version__}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT))
    )
    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("rushvote")

    logger.info("Tracing to %s as %s", OTEL_EXPORTER_OTLP_ENDPOINT, OTEL_SERVICE_NAME)
    return True


def instrument_app(app: Any) -> None:
    """Instrument the FastAPI app and outgoing httpx calls (relay bus)."""
    if not is_telemetry_enabled():
        return

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    except ImportError:
        logger.warning("FastAPI/httpx instrumentation packages not available")
        return

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    logger.info("FastAPI and httpx instrumentation enabled")


class _NoOpSpan:
    """Span stand-in while tracing is off."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        pass


def _prefixed(attributes: dict[str, Any]) -> dict[str, Any]:
    return {
        f"{ATTRIBUTE_PREFIX}{key}": value
        for key, value in attributes.items()
        if value is not None
    }


@contextmanager
def trace_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Run the block inside a span named ``name``.

    Attributes are recorded under the ``rushvote.`` namespace; None values
    are skipped. A RushVoteError below 500 is recorded as a ``rejected``
    event with the error class; anything else marks the span as failed.
    Exceptions always propagate.
    """
    if _tracer is None:
        yield _NoOpSpan()
        return

    from opentelemetry.trace import Status, StatusCode

    with _tracer.start_as_current_span(
        name, record_exception=False, set_status_on_exception=False
    ) as span:
        span.set_attributes(_prefixed(attributes or {}))
        try:
            yield span
        except RushVoteError as e:
            if e.status_code >= 500:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, e.message))
            else:
                span.add_event(
                    "rejected",
                    _prefixed({"error": type(e).__name__, "reason": e.message}),
                )
            raise
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
