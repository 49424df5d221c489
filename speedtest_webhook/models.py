import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class PayloadDecodeError(ValueError):
    """Raised when a webhook body cannot be decoded into a WebhookPayload."""


class WebhookPayload(BaseModel):
    """Speedtest result as delivered by the speedtest tracker webhook.

    Every field is optional: absent or null values fall back to zero/empty.
    """

    model_config = ConfigDict(
        populate_by_name=True, frozen=True, extra="ignore", allow_inf_nan=False
    )

    result_id: int = Field(default=0, ge=INT64_MIN, le=INT64_MAX)
    site_name: str = ""
    service: str = ""
    server_name: str = Field(default="", alias="serverName")
    server_id: int = Field(default=0, alias="serverId", ge=INT64_MIN, le=INT64_MAX)
    isp: str = ""
    ping: float = 0.0
    download: float = 0.0
    upload: float = 0.0
    packet_loss: float = Field(default=0.0, alias="packetLoss")
    speedtest_url: str = ""
    url: str = ""

    @model_validator(mode="before")
    @classmethod
    def _match_keys_case_insensitively(cls, data):
        # An exact key wins over one that only differs in case.
        if not isinstance(data, dict):
            return data
        known = {}
        for name, field in cls.model_fields.items():
            key = field.alias or name
            known[key.lower()] = key
        matched = {}
        for key, value in data.items():
            wire_key = known.get(key.lower(), key) if isinstance(key, str) else key
            if wire_key != key and wire_key in data:
                continue
            matched[wire_key] = value
        return matched

    @field_validator("*", mode="before")
    @classmethod
    def _null_as_default(cls, value, info):
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    def metric_attributes(self) -> dict[str, str]:
        return {
            "server.id": str(self.server_id),
            "server.name": self.server_name,
            "isp": self.isp,
        }

    def event_attributes(self) -> dict:
        return {
            "result_id": self.result_id,
            "site_name": self.site_name,
            "service": self.service,
            "server.name": self.server_name,
            "server.id": self.server_id,
            "isp": self.isp,
            "ping": self.ping,
            "download.bps": self.download,
            "upload.bps": self.upload,
            "packet.loss": self.packet_loss,
            "speedtest.url": self.speedtest_url,
        }


def _reject_constant(name):
    raise ValueError(f"non-standard JSON literal {name}")


def decode_payload(body: bytes) -> WebhookPayload:
    """Decode a raw request body.

    Fails on malformed JSON (including NaN and Infinity literals), on
    non-finite or out-of-range numbers and on values that cannot be
    converted to the field's type. Missing fields are never an error.
    """
    try:
        data = json.loads(body, parse_constant=_reject_constant)
    except ValueError as e:
        raise PayloadDecodeError(f"invalid JSON: {e}") from e

    if data is None:
        return WebhookPayload()

    try:
        return WebhookPayload.model_validate(data)
    except ValidationError as e:
        raise PayloadDecodeError(f"invalid payload: {e}") from e
