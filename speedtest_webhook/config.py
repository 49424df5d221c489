from typing import Literal

from opentelemetry.util.re import parse_env_headers
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    STW_SERVER_PORT: int = Field(ge=1, le=65535)
    STW_SERVER_HOST: str = "0.0.0.0"
    STW_SHUTDOWN_GRACE_PERIOD: float = Field(default=5.0, gt=0)
    STW_TELEMETRY_SHUTDOWN_TIMEOUT: float = Field(default=10.0, gt=0)
    LOG_LEVEL: str = "INFO"

    OTEL_SERVICE_NAME: str = "speedtest-webhook"
    OTEL_EXPORTER_OTLP_ENDPOINT: str = Field(min_length=1)
    OTEL_EXPORTER_OTLP_API_KEY: str = ""
    OTEL_EXPORTER_OTLP_HEADERS: str = ""
    OTEL_EXPORTER_OTLP_PROTOCOL: Literal["grpc", "http/protobuf"] = "grpc"
    OTEL_EXPORTER_OTLP_COMPRESSION: Literal["none", "gzip"] = "none"
    OTEL_EXPORTER_OTLP_INSECURE: bool | None = None
    OTEL_EXPORTER_OTLP_METRICS_TEMPORALITY_PREFERENCE: Literal["cumulative", "delta"] = "cumulative"
    OTEL_METRIC_EXPORT_INTERVAL: int = Field(default=60000, gt=0)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator(
        "OTEL_EXPORTER_OTLP_PROTOCOL",
        "OTEL_EXPORTER_OTLP_COMPRESSION",
        "OTEL_EXPORTER_OTLP_METRICS_TEMPORALITY_PREFERENCE",
        "LOG_LEVEL",
        mode="before",
    )
    @classmethod
    def _normalise_case(cls, value, info):
        if not isinstance(value, str):
            return value
        value = value.strip()
        return value.upper() if info.field_name == "LOG_LEVEL" else value.lower()

    def otlp_headers(self) -> dict[str, str]:
        """Exporter headers from OTEL_EXPORTER_OTLP_HEADERS plus the api-key.

        Parsed the way the OTLP exporters parse their own environment:
        values are percent-decoded and keys lower-cased.
        """
        headers = dict(parse_env_headers(self.OTEL_EXPORTER_OTLP_HEADERS, liberal=True))
        if self.OTEL_EXPORTER_OTLP_API_KEY:
            headers["api-key"] = self.OTEL_EXPORTER_OTLP_API_KEY
        return headers


def load_settings() -> Settings:
    return Settings()
