"""OpenTelemetry tracing for orchestration runs.

Tracing is optional. OpenTelemetry is imported lazily and every helper here
is a no-op until ``setup_telemetry(enabled=True)`` succeeds. The engine opens
a span for the run, one per stage and one per unit, so a deployment shows
up in Jaeger next to the services it deployed.

Usage:
    setup_telemetry(enabled=settings.otel_enabled, endpoint=settings.otel_endpoint)

    with traced_operation("deploy_unit", {"unit.id": "redis"}):
        await applier.apply(unit)
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from ..core.exceptions import OrchestratorError

if TYPE_CHECKING:
    from opentelemetry.sdk.trace.export import SpanExporter
    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

_initialized = False
_tracer: Tracer | None = None


def _exporter(endpoint: str | None, protocol: str) -> SpanExporter:
    """OTLP exporter for the endpoint, console exporter without one."""
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter

    if not endpoint:
        logger.info("No OTLP endpoint configured, spans go to the console")
        return ConsoleSpanExporter()

    try:
        if protocol == "http":
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        else:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning(f"OTLP {protocol} exporter not installed, spans go to the console")
        return ConsoleSpanExporter()

    logger.info(f"Exporting spans to {endpoint} over {protocol}")
    return OTLPSpanExporter(endpoint=endpoint)


def setup_telemetry(
    service_name: str = "deploy-orchestrator",
    endpoint: str | None = None,
    protocol: str = "grpc",
    enabled: bool = False,
) -> Tracer | None:
    """Configure tracing for this process.

    Calling it again after a successful setup returns the existing tracer.

    Args:
        service_name: Service name reported on every span
        endpoint: OTLP collector endpoint, console output when None
        protocol: 'grpc' or 'http'
        enabled: False returns immediately

    Returns:
        The tracer, or None when disabled or OpenTelemetry is not installed
    """
    global _initialized, _tracer

    if not enabled:
        logger.debug("Tracing disabled")
        return None
    if _initialized:
        return _tracer

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import SERVICE_NAME, Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning("Tracing requested but OpenTelemetry is missing: pip install '.[otel]'")
        return None

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    provider.add_span_processor(BatchSpanProcessor(_exporter(endpoint, protocol)))
    trace.set_tracer_provider(provider)

    # Probe, readiness and load-test requests become child spans
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
    except ImportError:
        logger.debug("httpx instrumentation not installed")

    _tracer = trace.get_tracer("orchestrator")
    _initialized = True
    logger.info(f"Tracing enabled for {service_name}")
    return _tracer


def get_tracer() -> Tracer | None:
    """The configured tracer, or None while tracing is off."""
    return _tracer


@contextmanager
def traced_operation(
    name: str, attributes: dict[str, Any] | None = None
) -> Generator[Span | None, None, None]:
    """Run a block inside a span named ``name``.

    Yields None when tracing is off. An exception escaping the block marks
    the span as failed before propagating.
    """
    if not _tracer:
        yield None
        return

    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _mark_failed(span, e)
            raise


def _mark_failed(span: Span, exception: Exception) -> None:
    from opentelemetry.trace import Status, StatusCode

    if isinstance(exception, OrchestratorError):
        span.set_attribute("error.code", exception.code)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def record_exception(exception: Exception) -> None:
    """Attach an exception to the current span, tagging its error code."""
    if not _initialized:
        return

    from opentelemetry import trace

    span = trace.get_current_span()
    span.record_exception(exception)
    if isinstance(exception, OrchestratorError):
        span.set_attribute("error.code", exception.code)


def shutdown_telemetry() -> None:
    """Flush pending spans and turn tracing off."""
    global _initialized, _tracer

    if not _initialized:
        return

    from opentelemetry import trace

    provider = trace.get_tracer_provider()
    if hasattr(provider, "shutdown"):
        provider.shutdown()
        logger.info("Tracing shut down")

    _initialized = False
    _tracer = None
