from fastapi import Request, Response
from fastapi.responses import PlainTextResponse
from opentelemetry.trace import Span, Status, StatusCode, Tracer
from starlette.requests import ClientDisconnect

from speedtest_webhook.logging_utils import logger
from speedtest_webhook.metrics import SpeedtestInstruments
from speedtest_webhook.models import PayloadDecodeError, decode_payload

SPAN_NAME = "handleWebhookRequest"
RESULT_EVENT = "speedtest.result"


def _record_error(span: Span, error: Exception) -> None:
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))


class WebhookHandler:
    """Turns one speedtest webhook call into histogram recordings and a span event."""

    def __init__(self, tracer: Tracer, instruments: SpeedtestInstruments):
        self.tracer = tracer
        self.instruments = instruments

    async def handle(self, request: Request) -> Response:
        with self.tracer.start_as_current_span(SPAN_NAME) as span:
            try:
                body = await request.body()
            except ClientDisconnect as e:
                _record_error(span, e)
                request.state.webhook_log_extras = {"result": "read_error"}
                return PlainTextResponse("Error reading request body\n", status_code=500)

            try:
                payload = decode_payload(body)
            except PayloadDecodeError as e:
                _record_error(span, e)
                request.state.webhook_log_extras = {"result": "decode_error"}
                return PlainTextResponse("Error parsing JSON payload\n", status_code=400)

            logger.info(
                "speedtest_result_received",
                extra={"server_id": payload.server_id, "result_id": payload.result_id},
            )

            self.instruments.record(payload)
            span.add_event(RESULT_EVENT, attributes=payload.event_attributes())

            request.state.webhook_log_extras = {
                "result": "recorded",
                "result_id": payload.result_id,
                "server_id": payload.server_id,
            }
            return PlainTextResponse("Webhook received and processed.\n")
