"""Controller-side bridge client.

Prefers the loopback HTTP control server and falls back to the filesystem
mailbox when no port in the range can be bound. Requests are correlated
with results by plan id; each request has its own timeout.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loopbridge.config import CONFIG_FILENAME, Settings, get_version, load_settings
from loopbridge.errors import (
    DisconnectedError,
    DuplicateRequestError,
    NotConnectedError,
    PortRangeExhaustedError,
    RequestTimeoutError,
)
from loopbridge.file_transport import FileTransport
from loopbridge.models.credentials import Credential
from loopbridge.models.messages import (
    BridgeMessage,
    ControllerReadyPayload,
    MessageType,
    SessionResult,
    create_message,
)
from loopbridge.paths import get_bridge_dir, remove_credential, write_credential
from loopbridge.server import ControlServer

logger = logging.getLogger(__name__)

TransportKind = Literal["http", "file"]


@dataclass
class PendingRequest:
    plan_id: str
    future: asyncio.Future[SessionResult]
    timeout: float
    timeout_handle: asyncio.TimerHandle


class BridgeClient:
    """Sends session requests to the agent and resolves them with its results."""

    def __init__(self, project_root: Path | str, settings: Settings | None = None) -> None:
        self._project_root = Path(project_root)
        self._settings = settings if settings is not None else load_settings(self._project_root)
        self._bridge_dir = get_bridge_dir(self._project_root, self._settings.bridge_dir)
        self._transport: TransportKind | None = None
        self._server: ControlServer | None = None
        self._file_transport: FileTransport | None = None
        self._pending: dict[str, PendingRequest] = {}

    async def __aenter__(self) -> BridgeClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def bridge_dir(self) -> Path:
        return self._bridge_dir

    @property
    def transport(self) -> TransportKind | None:
        return self._transport

    def get_transport(self) -> TransportKind | None:
        return self._transport

    @property
    def is_connected(self) -> bool:
        return self._transport is not None

    @property
    def port(self) -> int | None:
        """Bound control server port; ``None`` unless the transport is HTTP."""
        if self._server is None:
            return None
        return self._server.port

    @property
    def server(self) -> ControlServer | None:
        return self._server

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── lifecycle ───────────────────────────────────────────────

    async def connect(self) -> None:
        """Bring up a transport. A second call is a no-op."""
        if self._transport is not None:
            return

        server = ControlServer(
            host=self._settings.host,
            preferred_port=self._settings.bridge_port,
            port_range_size=self._settings.port_range_size,
            config={"baseUrl": self._settings.base_url} if self._settings.base_url else None,
            config_path=self._project_root / CONFIG_FILENAME,
        )
        try:
            port = await server.start()
        except (PortRangeExhaustedError, OSError) as e:
            logger.warning(f"HTTP transport unavailable ({e}), using file transport")
            await self._connect_file()
            return

        self._server = server
        self._transport = "http"
        try:
            write_credential(
                self._bridge_dir,
                Credential(port=port, token=server.token, pid=os.getpid()),
            )
        except OSError as e:
            logger.warning(f"Could not write credential file: {e}")
        server.on_result(self._handle_message)
        server.enqueue(self._ready_message("http"))
        logger.info(f"Bridge connected over HTTP on port {port}")

    async def _connect_file(self) -> None:
        transport = FileTransport(
            self._bridge_dir, poll_interval=self._settings.file_poll_interval
        )
        await transport.connect()
        transport.on_message(self._handle_message)
        self._file_transport = transport
        self._transport = "file"
        transport.send(self._ready_message("file"))
        logger.info(f"Bridge connected over file transport at {self._bridge_dir}")

    async def disconnect(self) -> None:
        """Tear down the transport and fail every pending request.

        Safe to call more than once.
        """
        if self._transport is None:
            return
        self._transport = None

        server, self._server = self._server, None
        file_transport, self._file_transport = self._file_transport, None
        if server is not None:
            await server.stop()
            # Only the HTTP side wrote bridge.json
            remove_credential(self._bridge_dir)
        if file_transport is not None:
            await file_transport.disconnect()

        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.timeout_handle.cancel()
            if not request.future.done():
                request.future.set_exception(DisconnectedError())
        if pending:
            logger.info(f"Disconnected with {len(pending)} pending request(s)")

    # ── requests ────────────────────────────────────────────────

    def send_request(
        self,
        plan_id: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> asyncio.Future[SessionResult]:
        """Send a ``start_session`` for *plan_id*; return a future for its result.

        Must be called from inside the event loop. The future fails with
        ``RequestTimeoutError`` if no result arrives within *timeout* seconds
        (``request_timeout`` by default) and with ``DisconnectedError`` if the
        client disconnects first.

        Raises:
            NotConnectedError: connect() has not been called.
            DuplicateRequestError: a request for *plan_id* is still pending.
        """
        if self._transport is None:
            raise NotConnectedError()
        if plan_id in self._pending:
            raise DuplicateRequestError(plan_id)
        if timeout is None:
            timeout = self._settings.request_timeout

        message = create_message(
            MessageType.START_SESSION, {**(payload or {}), "planId": plan_id}
        )

        loop = asyncio.get_running_loop()
        future: asyncio.Future[SessionResult] = loop.create_future()
        handle = loop.call_later(timeout, self._expire, plan_id, future)
        request = PendingRequest(plan_id, future, timeout, handle)
        self._pending[plan_id] = request
        future.add_done_callback(lambda f: self._forget(plan_id, f))

        try:
            self._transmit(message)
        except Exception:
            self._pending.pop(plan_id, None)
            handle.cancel()
            raise
        logger.info(f"Session requested for plan {plan_id} via {self._transport}")
        return future

    def _transmit(self, message: BridgeMessage) -> None:
        if self._server is not None:
            self._server.enqueue(message)
        elif self._file_transport is not None:
            self._file_transport.send(message)
        else:
            raise NotConnectedError()

    def _expire(self, plan_id: str, future: asyncio.Future[SessionResult]) -> None:
        request = self._pending.get(plan_id)
        if request is None or request.future is not future:
            return
        del self._pending[plan_id]
        if not future.done():
            logger.warning(f"Session for plan {plan_id} timed out after {request.timeout}s")
            future.set_exception(RequestTimeoutError(plan_id, request.timeout))

    def _forget(self, plan_id: str, future: asyncio.Future[SessionResult]) -> None:
        # Drop requests whose future the caller cancelled
        request = self._pending.get(plan_id)
        if request is not None and request.future is future and future.cancelled():
            del self._pending[plan_id]
            request.timeout_handle.cancel()

    # ── inbound ─────────────────────────────────────────────────

    def _ready_message(self, transport: TransportKind) -> BridgeMessage:
        return create_message(
            MessageType.CONTROLLER_READY,
            ControllerReadyPayload(controller_version=get_version(), transport=transport),
        )

    def _handle_message(self, message: BridgeMessage) -> None:
        if message.type is MessageType.SESSION_RESULT:
            result = SessionResult.model_validate(message.payload)
            request = self._pending.pop(result.plan_id, None)
            if request is None:
                logger.debug(f"Dropping result for unknown or expired plan {result.plan_id}")
                return
            request.timeout_handle.cancel()
            if not request.future.done():
                request.future.set_result(result)
            logger.info(
                f"Result for plan {result.plan_id}: {'passed' if result.passed else 'failed'}"
            )
        elif message.type is MessageType.AGENT_READY:
            version = message.payload.get("agentVersion")
            logger.info(f"Agent ready (version {version})")
        else:
            logger.debug(f"Ignoring {message.type.value} message from agent")
