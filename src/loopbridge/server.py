"""Loopback HTTP control server.

Runs a small FastAPI app on 127.0.0.1 that the agent polls for queued
messages and posts results back to, so the controller never has to make an
outbound connection. The app is served by uvicorn as a task on the caller's
event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
import os
import secrets
import socket
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any, TypeVar

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from loopbridge.config import get_version
from loopbridge.errors import PortRangeExhaustedError
from loopbridge.message_queue import MessageQueue
from loopbridge.models.messages import BridgeMessage
from loopbridge.routes import TOKEN_HEADER, router

logger = logging.getLogger(__name__)

DEFAULT_PORT = 7890
PORT_RANGE_SIZE = 10

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": f"Content-Type, {TOKEN_HEADER}",
}

ResultCallback = Callable[[BridgeMessage], None]
ShutdownCallback = Callable[[], None]

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Port selection
# ---------------------------------------------------------------------------


def port_candidates(start: int, size: int = PORT_RANGE_SIZE) -> list[int]:
    """Return the contiguous candidate range ``[start, start + size)``."""
    return list(range(start, start + size))


def select_port(candidates: Sequence[int], bind: Callable[[int], T]) -> tuple[int, T]:
    """Return the first candidate that *bind* accepts, with what it returned.

    Candidates are tried strictly in order, so a blocked port always leads to
    the same choice. ``OSError`` from *bind* moves on to the next candidate.

    Raises:
        PortRangeExhaustedError: every candidate failed to bind.
    """
    if not candidates:
        raise ValueError("No candidate ports given")
    for port in candidates:
        try:
            return port, bind(port)
        except OSError as e:
            logger.debug(f"Port {port} unavailable ({e}), trying next")
    raise PortRangeExhaustedError(candidates[0], candidates[-1])


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a TCP socket to ``(host, port)`` without listening yet."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


async def _http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if isinstance(exc.detail, dict):
        body = {"ok": False, **exc.detail}
    else:
        error = "Not found" if exc.status_code == 404 else exc.detail
        body = {"ok": False, "error": error}
    return JSONResponse(body, status_code=exc.status_code)


def create_app(server: ControlServer) -> FastAPI:
    """Create the FastAPI app served by *server*."""
    app = FastAPI(
        title="loopbridge control server",
        version=get_version(),
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.control_server = server

    @app.middleware("http")
    async def cors(request: Request, call_next: Callable[..., Any]) -> Response:
        # Preflight never needs a token
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.include_router(router)
    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the embedding program."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


# ---------------------------------------------------------------------------
# ControlServer
# ---------------------------------------------------------------------------


class ControlServer:
    """Authenticated loopback control surface owning the outgoing queue."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        preferred_port: int = DEFAULT_PORT,
        port_range_size: int = PORT_RANGE_SIZE,
        config: dict[str, Any] | None = None,
        config_path: Path | None = None,
    ) -> None:
        self._host = host
        self._preferred_port = preferred_port
        self._port_range_size = port_range_size
        self._token = secrets.token_hex(16)
        self._queue = MessageQueue()
        self._result_callbacks: list[ResultCallback] = []
        self._shutdown_callbacks: list[ShutdownCallback] = []
        self._config: dict[str, Any] = dict(config or {})
        self._config_path = config_path
        self._port = 0
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self.app = create_app(self)

    @property
    def token(self) -> str:
        return self._token

    def get_token(self) -> str:
        return self._token

    @property
    def port(self) -> int:
        """Bound port, or 0 when not running."""
        return self._port

    @property
    def host(self) -> str:
        return self._host

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    # ── lifecycle ───────────────────────────────────────────────

    async def start(self, preferred_port: int | None = None) -> int:
        """Bind and start serving; return the bound port.

        Tries ``preferred_port`` and the following ports of the range in
        order. Raises ``PortRangeExhaustedError`` if none can be bound.
        """
        if self._server is not None:
            return self._port

        first = preferred_port if preferred_port is not None else self._preferred_port
        candidates = port_candidates(first, self._port_range_size)
        port, sock = select_port(candidates, functools.partial(bind_socket, self._host))

        log_level = "debug" if logger.isEnabledFor(logging.DEBUG) else "warning"
        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level=log_level,
            access_log=False,
            lifespan="off",
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if task.done():
                sock.close()
                exc = task.exception()
                raise OSError(f"Control server failed to start on port {port}") from exc
            await asyncio.sleep(0.01)

        self._server = server
        self._serve_task = task
        self._port = port
        logger.info(f"Control server started on http://{self._host}:{port}")
        return port

    async def stop(self) -> None:
        """Close the listener and drop queued messages and callbacks.

        Safe to call more than once.
        """
        server, task = self._server, self._serve_task
        self._server = None
        self._serve_task = None
        if server is not None and task is not None:
            server.should_exit = True
            try:
                await task
            except Exception:
                logger.exception("Control server exited with an error")
            logger.info(f"Control server on port {self._port} stopped")
        self._queue.clear()
        self._result_callbacks.clear()
        self._shutdown_callbacks.clear()
        self._port = 0

    # ── queue ───────────────────────────────────────────────────

    def enqueue(self, message: BridgeMessage) -> None:
        """Queue *message* for the agent's next poll."""
        self._queue.enqueue(message)
        logger.debug(f"Message enqueued: {message.type.value}")

    def drain(self) -> list[BridgeMessage]:
        return self._queue.drain()

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    # ── callbacks ───────────────────────────────────────────────

    def on_result(self, callback: ResultCallback) -> None:
        """Register a handler for inbound results.

        Handlers run in registration order for every valid result.
        """
        self._result_callbacks.append(callback)

    def on_shutdown(self, callback: ShutdownCallback) -> None:
        """Register a handler for ``POST /shutdown``."""
        self._shutdown_callbacks.append(callback)

    def dispatch_result(self, message: BridgeMessage) -> None:
        for callback in list(self._result_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception(f"Result callback failed for {message.type.value}")

    def request_shutdown(self) -> None:
        for callback in list(self._shutdown_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Shutdown callback failed")

    # ── config ──────────────────────────────────────────────────

    def set_config(self, config: dict[str, Any], persist: bool = False) -> None:
        """Replace the config; with *persist*, also write it to ``config_path``."""
        self._config = dict(config)
        if persist and self._config_path is not None:
            self._config_path.write_text(
                json.dumps(self._config, indent=2) + "\n", encoding="utf-8"
            )
