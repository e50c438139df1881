"""OpenTelemetry tracing initialization and span helpers."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from dosewatch.core.correlation import current_id

logger = logging.getLogger(__name__)

_TRACER_NAME = "dosewatch"

# True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call.  Otherwise the global no-op
    provider stays in place.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


class pipeline_span:
    """Create a span for one pipeline stage.

    Usable as a context manager or as a decorator on async functions.  The
    span is named ``dosewatch.<stage>`` and carries the active correlation id
    as the ``dosewatch.correlation_id`` attribute.  Exceptions are recorded on
    the span and re-raised.
    """

    def __init__(self, stage: str, **attributes: str | int | bool) -> None:
        self._stage = stage
        self._attributes = attributes
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(f"dosewatch.{self._stage}")
        correlation_id = current_id()
        if correlation_id:
            self._span.set_attribute("dosewatch.correlation_id", correlation_id)
        for key, value in self._attributes.items():
            self._span.set_attribute(f"dosewatch.{key}", value)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        stage = self._stage
        attributes = self._attributes

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            # Fresh instance per call so concurrent invocations keep separate span state.
            with pipeline_span(stage, **attributes):
                return await func(*args, **kwargs)

        return _wrapper
