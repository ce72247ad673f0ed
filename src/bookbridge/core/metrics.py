"""OpenTelemetry metrics instruments for the calendar engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  bookbridge.fanout.failures_total    Counter  (labels: operation, provider)
      Connections that failed or timed out inside a concurrent fan-out.

  bookbridge.bookings.total           Counter  (label: outcome)
      Booking attempts by outcome (success, conflict, auth, ...).

  bookbridge.provider.request_ms      Histogram (labels: provider, method)
      Latency of individual provider HTTP calls.

  bookbridge.token.refresh_total      Counter  (labels: provider, outcome)
      OAuth refresh-token exchanges by outcome (success, failure).
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "bookbridge"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _fanout_failures_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="bookbridge.fanout.failures_total",
        description="Connections that failed or timed out during a concurrent fan-out",
        unit="failures",
    )


def _bookings_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="bookbridge.bookings.total",
        description="Booking attempts by outcome",
        unit="bookings",
    )


def _provider_request_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="bookbridge.provider.request_ms",
        description="Latency of provider HTTP requests",
        unit="ms",
    )


def _token_refresh_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="bookbridge.token.refresh_total",
        description="OAuth refresh-token exchanges by outcome",
        unit="refreshes",
    )


class EngineMetrics:
    """Convenience wrapper around all engine metrics.

    Instruments are lazily created from the global MeterProvider on first
    use, so it is safe to construct this object before ``init_metrics`` is
    called (all recordings will be no-ops until a real provider is installed).
    """

    def __init__(self) -> None:
        self.__fanout_failures: metrics.Counter | None = None
        self.__bookings: metrics.Counter | None = None
        self.__request_ms: metrics.Histogram | None = None
        self.__token_refresh: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _fanout_failures(self) -> metrics.Counter:
        if self.__fanout_failures is None:
            self.__fanout_failures = _fanout_failures_total()
        return self.__fanout_failures

    @property
    def _bookings(self) -> metrics.Counter:
        if self.__bookings is None:
            self.__bookings = _bookings_total()
        return self.__bookings

    @property
    def _request_ms(self) -> metrics.Histogram:
        if self.__request_ms is None:
            self.__request_ms = _provider_request_ms()
        return self.__request_ms

    @property
    def _token_refresh(self) -> metrics.Counter:
        if self.__token_refresh is None:
            self.__token_refresh = _token_refresh_total()
        return self.__token_refresh

    # -- recording helpers ----------------------------------------------------

    def fanout_failure(self, *, operation: str, provider: str) -> None:
        """Record one failed or timed-out connection in a fan-out."""
        self._fanout_failures.add(1, {"operation": operation, "provider": provider})

    def booking(self, outcome: str) -> None:
        self._bookings.add(1, {"outcome": outcome})

    def record_provider_request(self, *, provider: str, method: str, latency_ms: float) -> None:
        self._request_ms.record(latency_ms, {"provider": provider, "method": method})

    def token_refresh(self, *, provider: str, outcome: str) -> None:
        self._token_refresh.add(1, {"provider": provider, "outcome": outcome})
