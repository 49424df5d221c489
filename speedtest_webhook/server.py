"""
HTTP server lifecycle.

Binds the listener, serves the application with uvicorn on a background task
and drives graceful shutdown from a single stop event:

    STARTING -> RUNNING -> DRAINING -> STOPPED

SIGINT/SIGTERM set the stop event unless one is injected by the caller.
Once it is set the listener is closed and in-flight requests get
``grace_period`` seconds before their tasks are cancelled.
"""

import asyncio
import contextlib
import signal
import socket
from enum import Enum

import uvicorn

from speedtest_webhook.logging_utils import logger

DEFAULT_GRACE_PERIOD = 5.0
TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ServerStartupError(RuntimeError):
    pass


class LifecycleState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class _Server(uvicorn.Server):
    # Signals are owned by ServerLifecycle; uvicorn would otherwise re-raise
    # them once serve() returns and skip the telemetry flush.
    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ServerLifecycle:
    def __init__(
        self,
        app,
        port: int,
        host: str = "0.0.0.0",
        grace_period: float = DEFAULT_GRACE_PERIOD,
        stop_event: asyncio.Event | None = None,
    ):
        self.app = app
        self.host = host
        self.requested_port = port
        self.grace_period = grace_period
        self.state = LifecycleState.STARTING
        self._stop_event = stop_event
        self._owns_signals = stop_event is None
        self._socket = None
        self._port = None
        self._running = asyncio.Event()

    @property
    def port(self) -> int | None:
        return self._port

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_running(self) -> None:
        await self._running.wait()

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.requested_port))
        except OSError as e:
            sock.close()
            raise ServerStartupError(
                f"could not listen on {self.host}:{self.requested_port}: {e}"
            ) from e
        sock.set_inheritable(True)
        return sock

    def _on_signal(self, signum: int) -> None:
        logger.info("shutdown_signal_received", extra={"signal": signal.Signals(signum).name})
        self._stop_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in TERMINATION_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in TERMINATION_SIGNALS:
            loop.remove_signal_handler(sig)

    async def _wait_started(self, server: uvicorn.Server, serve_task: asyncio.Task) -> None:
        while not server.started:
            if serve_task.done():
                serve_task.result()
                raise ServerStartupError("server exited before it started serving")
            await asyncio.sleep(0.05)

    async def serve(self) -> None:
        """Serve until the stop event is set, then drain and close."""
        loop = asyncio.get_running_loop()
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        if self._owns_signals:
            self._install_signal_handlers(loop)

        serve_task = None
        try:
            self._socket = self._bind()
            self._port = self._socket.getsockname()[1]
            config = uvicorn.Config(
                self.app,
                log_config=None,
                access_log=False,
                timeout_graceful_shutdown=self.grace_period,
            )
            server = _Server(config)
            serve_task = asyncio.create_task(server.serve(sockets=[self._socket]))

            await self._wait_started(server, serve_task)
            self.state = LifecycleState.RUNNING
            self._running.set()
            logger.info("server_started", extra={"host": self.host, "port": self.port})

            stop_task = asyncio.create_task(self._stop_event.wait())
            done, _ = await asyncio.wait(
                {serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if stop_task in done:
                logger.info("server_shutting_down", extra={"grace_period": self.grace_period})
                self.state = LifecycleState.DRAINING
                server.should_exit = True
            else:
                stop_task.cancel()

            await serve_task
            logger.info("server_stopped")
        finally:
            if serve_task is not None and not serve_task.done():
                serve_task.cancel()
            if self._owns_signals:
                self._remove_signal_handlers(loop)
            if self._socket is not None:
                self._socket.close()
            self.state = LifecycleState.STOPPED
