import asyncio
import sys
import time
import uuid

from fastapi import FastAPI, Request, Response
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.trace import Tracer
from pydantic import ValidationError

from speedtest_webhook.config import Settings, load_settings
from speedtest_webhook.logging_utils import logger, setup_logger
from speedtest_webhook.metrics import SpeedtestInstruments, create_instruments
from speedtest_webhook.server import ServerLifecycle
from speedtest_webhook.telemetry import setup_telemetry
from speedtest_webhook.webhook import WebhookHandler


def create_app(
    tracer: Tracer,
    instruments: SpeedtestInstruments,
    tracer_provider=None,
    meter_provider=None,
) -> FastAPI:
    app = FastAPI()
    handler = WebhookHandler(tracer, instruments)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        start_time = time.time()
        request_id = str(uuid.uuid4())

        request.state.request_id = request_id

        response = await call_next(request)

        process_time = (time.time() - start_time) * 1000

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round(process_time, 2)
        }

        if hasattr(request.state, "webhook_log_extras"):
            log_data.update(request.state.webhook_log_extras)

        logger.info("request_processed", extra=log_data)
        return response

    @app.post("/webhook")
    async def webhook(request: Request) -> Response:
        return await handler.handle(request)

    FastAPIInstrumentor.instrument_app(
        app, tracer_provider=tracer_provider, meter_provider=meter_provider
    )
    return app


async def run(
    settings: Settings,
    stop_event: asyncio.Event | None = None,
    span_exporter=None,
    metric_exporter=None,
) -> None:
    """Bootstrap telemetry, create instruments, serve until stopped.

    Telemetry is always shut down on the way out. Errors from serving and
    from the telemetry shutdown are both surfaced.
    """
    telemetry = setup_telemetry(settings, span_exporter, metric_exporter)

    errors = []
    try:
        instruments = create_instruments(telemetry.meter())
        app = create_app(
            telemetry.tracer(),
            instruments,
            tracer_provider=telemetry.tracer_provider,
            meter_provider=telemetry.meter_provider,
        )
        lifecycle = ServerLifecycle(
            app,
            port=settings.STW_SERVER_PORT,
            host=settings.STW_SERVER_HOST,
            grace_period=settings.STW_SHUTDOWN_GRACE_PERIOD,
            stop_event=stop_event,
        )
        await lifecycle.serve()
    except Exception as e:
        errors.append(e)
    finally:
        try:
            telemetry.shutdown(settings.STW_TELEMETRY_SHUTDOWN_TIMEOUT)
        except Exception as e:
            errors.append(e)

    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise ExceptionGroup("speedtest webhook exited with errors", errors)


def main() -> None:
    try:
        settings = load_settings()
    except ValidationError as e:
        logger.error("invalid_configuration", extra={"error": str(e)})
        sys.exit(1)

    setup_logger(level=settings.LOG_LEVEL)
    setup_logger("uvicorn", level=settings.LOG_LEVEL)

    try:
        asyncio.run(run(settings))
    except Exception:
        logger.exception("server_exited_with_error")
        sys.exit(1)

    logger.info("server_gracefully_stopped")
