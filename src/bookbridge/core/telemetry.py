"""OpenTelemetry initialization and span wrappers for engine operations."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "bookbridge"

# True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Otherwise the global no-op
    tracer is used.
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

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


class engine_span:
    """Create an OpenTelemetry span for an orchestrator operation.

    Can be used as a **context manager** or as a **decorator** on async functions::

        with engine_span("create_booking", tenant_id="salon-1"):
            ...

        @engine_span("health_check")
        async def health_check(...):
            ...

    The span is named ``bookbridge.<operation>``.  Exceptions are recorded on
    the span and the span status is set to ERROR before the exception is
    re-raised.
    """

    def __init__(self, operation: str, *, tenant_id: str | None = None) -> None:
        self._operation = operation
        self._tenant_id = tenant_id
        self._span_name = f"bookbridge.{operation}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        self._span.set_attribute("bookbridge.operation", self._operation)
        if self._tenant_id is not None:
            self._span.set_attribute("bookbridge.tenant_id", self._tenant_id)
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
        # Each invocation gets a fresh span instance; concurrent calls must not
        # share _span / _token state.
        operation = self._operation
        tenant_id = self._tenant_id

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with engine_span(operation, tenant_id=tenant_id):
                return await func(*args, **kwargs)

        return _wrapper
