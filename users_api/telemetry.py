"""OpenTelemetry sinks and provider lifecycle for the users service.

The request path never touches the global OpenTelemetry providers. Callers
construct a :class:`TelemetrySink` explicitly and hand it to the user store
and the password verifier; the process entry point owns provider start-up and
shutdown through :func:`open_telemetry`.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import ContextManager, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.system_metrics import SystemMetricsInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation, View
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.util.types import AttributeValue

from .config import TelemetrySettings

logger = logging.getLogger("users_api.telemetry")

INSTRUMENTATION_NAME = "users_api"

PASSWORD_CHECK_LATENCY = "user.auth.password_check.latency"
PASSWORD_CHECK_ERRORS = "user.auth.password_check.errors"
HTTP_SERVER_DURATION = "http.server.request.duration"
# Emitted instead of HTTP_SERVER_DURATION, in milliseconds, unless the stable
# HTTP semantic conventions are opted into.
HTTP_SERVER_DURATION_MS = "http.server.duration"

# Seconds. The OpenTelemetry defaults are tuned for milliseconds.
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0)
LATENCY_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2000.0, 5000.0)

# Attribute allow-lists applied at aggregation time; anything else (user_id,
# client addresses, raw URLs) is dropped before it reaches an exporter.
PASSWORD_CHECK_ATTRIBUTE_KEYS = frozenset({"matched"})
HTTP_SERVER_ATTRIBUTE_KEYS = frozenset(
    {
        "http.request.method",
        "http.route",
        "http.response.status_code",
        "url.scheme",
        "network.protocol.version",
        "error.type",
    }
)
HTTP_SERVER_ATTRIBUTE_KEYS_MS = frozenset(
    {
        "http.method",
        "http.route",
        "http.status_code",
        "http.scheme",
        "http.flavor",
    }
)

# Process metrics exported alongside the service metrics. Both the older
# process.runtime.* keys and their replacements are listed; the instrumentor
# ignores keys it does not know.
RUNTIME_METRICS_CONFIG: Dict[str, Optional[List[str]]] = {
    "process.runtime.memory": ["rss", "vms"],
    "process.runtime.cpu.time": ["user", "system"],
    "process.runtime.gc_count": None,
    "process.runtime.thread_count": None,
    "process.cpu.time": ["user", "system"],
    "process.memory.usage": None,
    "process.thread.count": None,
}


class TelemetrySink(Protocol):
    """Destination for the spans and measurements emitted on the request path."""

    def record_latency(self, seconds: float, *, matched: bool) -> None: ...

    def increment_error_count(self) -> None: ...

    def start_span(
        self,
        name: str,
        attributes: Optional[Mapping[str, AttributeValue]] = None,
    ) -> ContextManager[trace.Span]: ...


class OpenTelemetrySink:
    """Telemetry sink backed by explicitly supplied OpenTelemetry providers."""

    def __init__(
        self,
        tracer_provider: trace.TracerProvider,
        meter_provider: metrics.MeterProvider,
        *,
        instrumentation_name: str = INSTRUMENTATION_NAME,
    ) -> None:
        self.tracer_provider = tracer_provider
        self.meter_provider = meter_provider
        self._tracer = tracer_provider.get_tracer(instrumentation_name)
        meter = meter_provider.get_meter(instrumentation_name)
        self._latency = meter.create_histogram(
            PASSWORD_CHECK_LATENCY,
            unit="s",
            description="Time spent comparing a submitted password against its stored hash",
        )
        self._errors = meter.create_counter(
            PASSWORD_CHECK_ERRORS,
            description="Password checks that failed because the stored hash was malformed",
        )

    def record_latency(self, seconds: float, *, matched: bool) -> None:
        self._latency.record(seconds, attributes={"matched": matched})

    def increment_error_count(self) -> None:
        self._errors.add(1)

    def start_span(
        self,
        name: str,
        attributes: Optional[Mapping[str, AttributeValue]] = None,
    ) -> ContextManager[trace.Span]:
        # Exceptions are recorded explicitly; a missing user is not a span error.
        return self._tracer.start_as_current_span(
            name,
            attributes=attributes,
            record_exception=False,
            set_status_on_exception=False,
        )


class NullTelemetrySink(OpenTelemetrySink):
    """Sink that discards everything, used when no telemetry is configured."""

    def __init__(self) -> None:
        super().__init__(trace.NoOpTracerProvider(), metrics.NoOpMeterProvider())


def record_error(span: trace.Span, exc: BaseException) -> None:
    """Attach ``exc`` to ``span`` and mark the span as failed."""

    span.record_exception(exc)
    span.set_status(trace.Status(trace.StatusCode.ERROR, type(exc).__name__))


def build_views() -> List[View]:
    return [
        View(
            instrument_name=PASSWORD_CHECK_LATENCY,
            aggregation=ExplicitBucketHistogramAggregation(boundaries=LATENCY_BUCKETS),
            attribute_keys=set(PASSWORD_CHECK_ATTRIBUTE_KEYS),
        ),
        View(
            instrument_name=HTTP_SERVER_DURATION,
            aggregation=ExplicitBucketHistogramAggregation(boundaries=LATENCY_BUCKETS),
            attribute_keys=set(HTTP_SERVER_ATTRIBUTE_KEYS),
        ),
        View(
            instrument_name=HTTP_SERVER_DURATION_MS,
            aggregation=ExplicitBucketHistogramAggregation(boundaries=LATENCY_BUCKETS_MS),
            attribute_keys=set(HTTP_SERVER_ATTRIBUTE_KEYS_MS),
        ),
    ]


def build_resource(settings: TelemetrySettings) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.service_name,
            SERVICE_VERSION: settings.service_version,
            "deployment.environment": settings.environment,
        }
    )


@dataclass
class TelemetryProviders:
    """The tracer and meter providers owned by one process."""

    tracer_provider: TracerProvider
    meter_provider: MeterProvider

    def sink(self) -> OpenTelemetrySink:
        return OpenTelemetrySink(self.tracer_provider, self.meter_provider)


def create_providers(
    settings: TelemetrySettings,
    *,
    span_exporters: Optional[Sequence[SpanExporter]] = None,
    metric_readers: Optional[Sequence[MetricReader]] = None,
) -> TelemetryProviders:
    """Build SDK providers from ``settings`` without registering them globally."""

    resource = build_resource(settings)
    exporters: List[SpanExporter] = list(span_exporters or [])
    readers: List[MetricReader] = list(metric_readers or [])

    if settings.enabled:
        if settings.otlp_endpoint:
            exporters.append(
                OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.insecure)
            )
            readers.append(
                PeriodicExportingMetricReader(
                    OTLPMetricExporter(endpoint=settings.otlp_endpoint, insecure=settings.insecure),
                    export_interval_millis=settings.export_interval_millis,
                )
            )
            logger.info("OTLP exporters configured for %s", settings.otlp_endpoint)
        if settings.console:
            exporters.append(ConsoleSpanExporter())
            readers.append(
                PeriodicExportingMetricReader(
                    ConsoleMetricExporter(),
                    export_interval_millis=settings.export_interval_millis,
                )
            )
    else:
        logger.info("Telemetry export disabled; spans and metrics will be dropped")

    tracer_provider = TracerProvider(resource=resource)
    for exporter in exporters:
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=readers,
        views=build_views(),
    )
    return TelemetryProviders(tracer_provider=tracer_provider, meter_provider=meter_provider)


def shutdown_providers(providers: TelemetryProviders, *, timeout: float) -> bool:
    """Flush and shut down ``providers``; return ``False`` if anything failed.

    Failures are logged rather than raised so that a broken collector never
    prevents the process from exiting.
    """

    timeout_millis = max(int(timeout * 1000), 1)
    clean = True

    try:
        if not providers.tracer_provider.force_flush(timeout_millis):
            logger.warning("Timed out flushing spans after %.1fs", timeout)
            clean = False
        providers.tracer_provider.shutdown()
    except Exception:
        logger.warning("Failed to shut down tracer provider", exc_info=True)
        clean = False

    try:
        providers.meter_provider.shutdown(timeout_millis=timeout_millis)
    except Exception:
        logger.warning("Failed to shut down meter provider", exc_info=True)
        clean = False

    return clean


def start_runtime_metrics(meter_provider: metrics.MeterProvider) -> SystemMetricsInstrumentor:
    """Export process CPU, memory, thread and GC metrics through ``meter_provider``."""

    instrumentor = SystemMetricsInstrumentor(config=RUNTIME_METRICS_CONFIG)
    instrumentor.instrument(meter_provider=meter_provider)
    return instrumentor


@contextmanager
def open_telemetry(
    settings: TelemetrySettings,
    *,
    span_exporters: Optional[Sequence[SpanExporter]] = None,
    metric_readers: Optional[Sequence[MetricReader]] = None,
) -> Iterator[TelemetryProviders]:
    """Own the telemetry providers for the duration of a ``with`` block."""

    providers = create_providers(
        settings,
        span_exporters=span_exporters,
        metric_readers=metric_readers,
    )
    logger.info(
        "Telemetry initialised for %s %s (%s)",
        settings.service_name,
        settings.service_version,
        settings.environment,
    )
    runtime = None
    if settings.enabled and settings.runtime_metrics:
        runtime = start_runtime_metrics(providers.meter_provider)
    try:
        yield providers
    finally:
        if runtime is not None:
            runtime.uninstrument()
        shutdown_providers(providers, timeout=settings.shutdown_timeout)


__all__ = [
    "HTTP_SERVER_ATTRIBUTE_KEYS",
    "HTTP_SERVER_ATTRIBUTE_KEYS_MS",
    "HTTP_SERVER_DURATION",
    "HTTP_SERVER_DURATION_MS",
    "LATENCY_BUCKETS",
    "LATENCY_BUCKETS_MS",
    "NullTelemetrySink",
    "OpenTelemetrySink",
    "PASSWORD_CHECK_ERRORS",
    "PASSWORD_CHECK_LATENCY",
    "TelemetryProviders",
    "TelemetrySink",
    "build_resource",
    "build_views",
    "create_providers",
    "open_telemetry",
    "record_error",
    "shutdown_providers",
    "start_runtime_metrics",
]
