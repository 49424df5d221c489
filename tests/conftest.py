import socket

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    InMemoryMetricReader,
    MetricExporter,
    MetricExportResult,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from speedtest_webhook import telemetry
from speedtest_webhook.config import Settings
from speedtest_webhook.main import create_app
from speedtest_webhook.metrics import SpeedtestInstruments, create_instruments
from speedtest_webhook.telemetry import METER_NAME, TRACER_NAME


EXAMPLE_PAYLOAD = {
    "result_id": 123,
    "serverId": 456,
    "serverName": "Test Server",
    "isp": "Example ISP",
    "ping": 25.5,
    "download": 100000000,
    "upload": 50000000,
}


class RecordingHistogram:
    """Stands in for an OpenTelemetry histogram and keeps every recording."""

    def __init__(self):
        self.recordings = []

    def record(self, amount, attributes=None, context=None):
        self.recordings.append((amount, dict(attributes or {})))


class StubMetricExporter(MetricExporter):
    def __init__(self, fail_shutdown=False):
        super().__init__()
        self.exported = []
        self.fail_shutdown = fail_shutdown

    def export(self, metrics_data, timeout_millis=10_000, **kwargs):
        self.exported.append(metrics_data)
        return MetricExportResult.SUCCESS

    def force_flush(self, timeout_millis=10_000):
        return True

    def shutdown(self, timeout_millis=30_000, **kwargs):
        if self.fail_shutdown:
            raise RuntimeError("metric exporter unavailable")

    def metric_names(self):
        names = set()
        for metrics_data in self.exported:
            for resource_metrics in metrics_data.resource_metrics:
                for scope_metrics in resource_metrics.scope_metrics:
                    names.update(m.name for m in scope_metrics.metrics)
        return names


class FailingSpanExporter(InMemorySpanExporter):
    def shutdown(self):
        super().shutdown()
        raise RuntimeError("span exporter unavailable")


@pytest.fixture
def example_payload():
    return dict(EXAMPLE_PAYLOAD)


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter):
    provider = TracerProvider(shutdown_on_exit=False)
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader):
    return MeterProvider(metric_readers=[metric_reader], shutdown_on_exit=False)


@pytest.fixture
def app(tracer_provider, meter_provider):
    instruments = create_instruments(meter_provider.get_meter(METER_NAME))
    return create_app(
        tracer_provider.get_tracer(TRACER_NAME),
        instruments,
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def fake_instruments():
    return SpeedtestInstruments(
        ping=RecordingHistogram(),
        download=RecordingHistogram(),
        upload=RecordingHistogram(),
    )


@pytest.fixture
def histogram_points(metric_reader):
    """Returns a lookup of the data points collected for a metric name."""

    def _points(name):
        data = metric_reader.get_metrics_data()
        if data is None:
            return []
        points = []
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points

    return _points


@pytest.fixture
def handler_spans(span_exporter):
    def _spans():
        return [s for s in span_exporter.get_finished_spans() if s.name == "handleWebhookRequest"]

    return _spans


@pytest.fixture
def fresh_telemetry(monkeypatch):
    """Allows setup_telemetry to run again inside a single test process."""
    monkeypatch.setattr(telemetry, "_provider", None)


@pytest.fixture
def settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    return Settings(
        STW_SERVER_PORT=free_port(),
        STW_SERVER_HOST="127.0.0.1",
        STW_SHUTDOWN_GRACE_PERIOD=1.0,
        STW_TELEMETRY_SHUTDOWN_TIMEOUT=5.0,
        OTEL_EXPORTER_OTLP_ENDPOINT="http://localhost:4317",
    )


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def stub_metric_exporter():
    return StubMetricExporter()


@pytest.fixture
def failing_metric_exporter():
    return StubMetricExporter(fail_shutdown=True)


@pytest.fixture
def failing_span_exporter():
    return FailingSpanExporter()


@pytest.fixture
def unused_port():
    return free_port()
