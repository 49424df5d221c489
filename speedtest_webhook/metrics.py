from dataclasses import dataclass

from opentelemetry.metrics import Histogram, Meter

from speedtest_webhook.models import WebhookPayload

PING_HISTOGRAM = "speedtest.ping"
DOWNLOAD_HISTOGRAM = "speedtest.download"
UPLOAD_HISTOGRAM = "speedtest.upload"


class InstrumentCreationError(RuntimeError):
    pass


@dataclass(frozen=True)
class SpeedtestInstruments:
    """The three histograms a speedtest result is recorded into.

    Each field only needs ``record(amount, attributes=...)``, so tests can
    substitute in-memory recorders.
    """

    ping: Histogram
    download: Histogram
    upload: Histogram

    def record(self, payload: WebhookPayload) -> dict[str, str]:
        attributes = payload.metric_attributes()
        self.ping.record(payload.ping, attributes=attributes)
        self.download.record(payload.download, attributes=attributes)
        self.upload.record(payload.upload, attributes=attributes)
        return attributes


def _histogram(meter: Meter, name: str, description: str, unit: str) -> Histogram:
    try:
        return meter.create_histogram(name, unit=unit, description=description)
    except Exception as e:
        raise InstrumentCreationError(f"failed to create {name} histogram: {e}") from e


def create_instruments(meter: Meter) -> SpeedtestInstruments:
    return SpeedtestInstruments(
        ping=_histogram(meter, PING_HISTOGRAM, "Ping latency", "ms"),
        download=_histogram(meter, DOWNLOAD_HISTOGRAM, "Download speed", "bps"),
        upload=_histogram(meter, UPLOAD_HISTOGRAM, "Upload speed", "bps"),
    )
