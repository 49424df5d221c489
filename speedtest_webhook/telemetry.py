"""
OpenTelemetry provider bootstrap.

Builds the tracer and meter providers with OTLP exporters pointed at the
configured endpoint, registers them as the process-wide defaults and hands
back a TelemetryProvider whose shutdown() is the single teardown path.
"""

import threading
from importlib.metadata import PackageNotFoundError, version as pkg_version

from grpc import Compression as GrpcCompression
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
    OTLPMetricExporter as GrpcMetricExporter,
)
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter as GrpcSpanExporter,
)
from opentelemetry.exporter.otlp.proto.http import Compression as HttpCompression
from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
    OTLPMetricExporter as HttpMetricExporter,
)
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
    OTLPSpanExporter as HttpSpanExporter,
)
from opentelemetry.sdk.metrics import (
    Counter,
    Histogram,
    MeterProvider,
    ObservableCounter,
    ObservableGauge,
    ObservableUpDownCounter,
    UpDownCounter,
)
from opentelemetry.sdk.metrics.export import (
    AggregationTemporality,
    MetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from speedtest_webhook.config import Settings
from speedtest_webhook.logging_utils import logger

TRACER_NAME = "speedtest-webhook/tracer"
METER_NAME = "speedtest-webhook/meter"

_DELTA_TEMPORALITY = {
    Counter: AggregationTemporality.DELTA,
    UpDownCounter: AggregationTemporality.CUMULATIVE,
    Histogram: AggregationTemporality.DELTA,
    ObservableCounter: AggregationTemporality.DELTA,
    ObservableUpDownCounter: AggregationTemporality.CUMULATIVE,
    ObservableGauge: AggregationTemporality.CUMULATIVE,
}

_provider = None


class TelemetryError(RuntimeError):
    pass


class TelemetryShutdownError(TelemetryError):
    """Every failure collected while tearing the providers down."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("telemetry shutdown failed: " + "; ".join(repr(e) for e in self.errors))


class TelemetryProvider:
    def __init__(self, tracer_provider: TracerProvider, meter_provider: MeterProvider):
        self.tracer_provider = tracer_provider
        self.meter_provider = meter_provider
        self._lock = threading.Lock()
        self._shut_down = False

    def tracer(self) -> trace.Tracer:
        return self.tracer_provider.get_tracer(TRACER_NAME)

    def meter(self) -> metrics.Meter:
        return self.meter_provider.get_meter(METER_NAME)

    def shutdown(self, timeout: float = 10.0) -> None:
        """Flush buffered telemetry and release the exporters.

        Only the first call does anything. Both providers are always shut
        down; failures from either are raised together as a
        TelemetryShutdownError.
        """
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True

        timeout_millis = timeout * 1000
        errors = []

        try:
            if not self.tracer_provider.force_flush(timeout_millis):
                errors.append(TimeoutError(f"span flush did not finish within {timeout}s"))
            self.tracer_provider.shutdown()
        except Exception as e:
            errors.append(e)

        try:
            self.meter_provider.shutdown(timeout_millis=timeout_millis)
        except Exception as e:
            errors.append(e)

        if errors:
            raise TelemetryShutdownError(errors)
        logger.info("telemetry_shutdown_complete")


def _service_version() -> str:
    try:
        return pkg_version("speedtest-webhook")
    except PackageNotFoundError:
        return "unknown"


def create_resource(settings: Settings) -> Resource:
    return Resource.create({
        SERVICE_NAME: settings.OTEL_SERVICE_NAME,
        SERVICE_VERSION: _service_version(),
    })


def build_exporters(settings: Settings) -> tuple[SpanExporter, MetricExporter]:
    """OTLP span and metric exporters for the configured protocol."""
    headers = settings.otlp_headers() or None
    gzip = settings.OTEL_EXPORTER_OTLP_COMPRESSION == "gzip"
    temporality = (
        _DELTA_TEMPORALITY
        if settings.OTEL_EXPORTER_OTLP_METRICS_TEMPORALITY_PREFERENCE == "delta"
        else None
    )
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT

    if settings.OTEL_EXPORTER_OTLP_PROTOCOL == "http/protobuf":
        base = endpoint.rstrip("/")
        compression = HttpCompression.Gzip if gzip else HttpCompression.NoCompression
        span_exporter = HttpSpanExporter(
            endpoint=f"{base}/v1/traces",
            headers=headers,
            compression=compression,
        )
        metric_exporter = HttpMetricExporter(
            endpoint=f"{base}/v1/metrics",
            headers=headers,
            compression=compression,
            preferred_temporality=temporality,
        )
    else:
        compression = GrpcCompression.Gzip if gzip else GrpcCompression.NoCompression
        insecure = settings.OTEL_EXPORTER_OTLP_INSECURE
        span_exporter = GrpcSpanExporter(
            endpoint=endpoint,
            insecure=insecure,
            headers=headers,
            compression=compression,
        )
        metric_exporter = GrpcMetricExporter(
            endpoint=endpoint,
            insecure=insecure,
            headers=headers,
            compression=compression,
            preferred_temporality=temporality,
        )

    return span_exporter, metric_exporter


def setup_telemetry(
    settings: Settings,
    span_exporter: SpanExporter | None = None,
    metric_exporter: MetricExporter | None = None,
) -> TelemetryProvider:
    """
    Create and register the process-wide tracer and meter providers.

    Args:
        settings: Application settings carrying the exporter configuration
        span_exporter: Overrides the OTLP span exporter
        metric_exporter: Overrides the OTLP metric exporter

    Raises:
        TelemetryError: If the providers were already set up in this process
    """
    global _provider

    if _provider is not None:
        raise TelemetryError("telemetry providers are already initialised")

    if span_exporter is None or metric_exporter is None:
        default_span_exporter, default_metric_exporter = build_exporters(settings)
        span_exporter = span_exporter or default_span_exporter
        metric_exporter = metric_exporter or default_metric_exporter

    resource = create_resource(settings)

    tracer_provider = TracerProvider(resource=resource, shutdown_on_exit=False)
    tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))

    reader = PeriodicExportingMetricReader(
        exporter=metric_exporter,
        export_interval_millis=settings.OTEL_METRIC_EXPORT_INTERVAL,
    )
    meter_provider = MeterProvider(
        resource=resource, metric_readers=[reader], shutdown_on_exit=False
    )

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)

    _provider = TelemetryProvider(tracer_provider, meter_provider)
    logger.info(
        "telemetry_initialised",
        extra={
            "service_name": settings.OTEL_SERVICE_NAME,
            "otlp_endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            "otlp_protocol": settings.OTEL_EXPORTER_OTLP_PROTOCOL,
        },
    )
    return _provider
