"""Listener lifecycle: serve until signalled, then drain within a deadline."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import signal
import socket
from typing import Iterator, Optional

import structlog
import uvicorn

from ..common.settings import BridgeSettings

LOGGER = structlog.get_logger("dynobridge.server")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ListenerError(RuntimeError):
    """The listener could not be bound or stopped without a shutdown request."""


class LifecycleState(str, enum.Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to :class:`BridgeServer`."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        raise ListenerError(f"could not bind {host}:{port}: {exc}") from exc
    sock.set_inheritable(True)
    return sock


class BridgeServer:
    """Runs the ASGI app under uvicorn with a bounded graceful shutdown.

    States move ``STARTING -> SERVING -> DRAINING -> STOPPED``. A stop request
    (SIGINT, SIGTERM or :meth:`shutdown`) closes the listener and gives
    in-flight requests ``shutdown_timeout_seconds`` to finish before uvicorn
    cancels them. If the server stops on its own instead, :meth:`run` raises
    :class:`ListenerError`.
    """

    def __init__(self, app, settings: BridgeSettings, *, install_signal_handlers: bool = True) -> None:
        self._settings = settings
        self._install_signal_handlers = install_signal_handlers
        config = uvicorn.Config(
            app,
            host=settings.host,
            port=settings.port,
            log_config=None,
            access_log=False,
            lifespan="on",
            timeout_keep_alive=60,
            timeout_graceful_shutdown=settings.shutdown_timeout_seconds,
        )
        self._server = _Server(config)
        self._stop_requested: Optional[asyncio.Event] = None
        self._socket: Optional[socket.socket] = None
        self.state = LifecycleState.STARTING

    @property
    def port(self) -> Optional[int]:
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    @property
    def started(self) -> bool:
        return self._server.started

    def shutdown(self) -> None:
        """Request a graceful drain; safe to call from a signal handler."""

        if self._stop_requested is not None:
            self._stop_requested.set()

    def _handle_signal(self, signum: int) -> None:
        LOGGER.info("Received shutdown signal", signal=signal.Signals(signum).name)
        self.shutdown()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self.state = LifecycleState.STARTING
        self._stop_requested = asyncio.Event()
        self._socket = bind_socket(self._settings.host, self._settings.port)

        installed: list[int] = []
        if self._install_signal_handlers:
            for signum in HANDLED_SIGNALS:
                loop.add_signal_handler(signum, self._handle_signal, signum)
                installed.append(signum)

        serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        stop_task = asyncio.create_task(self._stop_requested.wait())
        started_task = asyncio.create_task(self._wait_started(serve_task))
        try:
            await started_task
            if self._server.started:
                self.state = LifecycleState.SERVING
                LOGGER.info("Listening", host=self._settings.host, port=self.port)

            done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if serve_task in done:
                exc = serve_task.exception()
                if exc is not None:
                    raise ListenerError(f"listener failed: {exc}") from exc
                if not self._server.started:
                    raise ListenerError("server failed to start")
                raise ListenerError("listener stopped without a shutdown request")

            self.state = LifecycleState.DRAINING
            LOGGER.info("Draining connections", timeout_seconds=self._settings.shutdown_timeout_seconds)
            self._server.should_exit = True
            await serve_task
            LOGGER.info("Server stopped")
        finally:
            for task in (stop_task, started_task):
                task.cancel()
            if not serve_task.done():
                self._server.force_exit = True
                serve_task.cancel()
                await asyncio.gather(serve_task, return_exceptions=True)
            for signum in installed:
                loop.remove_signal_handler(signum)
            self._socket.close()
            self.state = LifecycleState.STOPPED

    async def _wait_started(self, serve_task: asyncio.Task) -> None:
        while not self._server.started and not serve_task.done():
            await asyncio.sleep(0.05)
