"""Agent-side poller.

The agent cannot listen on a socket, so it periodically discovers the
control server, pulls queued messages from ``/poll`` and posts replies to
``/result``. Connectivity is exposed as a small state object that notifies
subscribers on transitions only.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx

from loopbridge.config import get_version
from loopbridge.discovery import Discovery
from loopbridge.models.credentials import CacheEntry
from loopbridge.models.messages import (
    AgentReadyPayload,
    BridgeMessage,
    MessageType,
    create_message,
    validate_message,
)
from loopbridge.routes import TOKEN_HEADER

logger = logging.getLogger(__name__)

MessageHandler = Callable[
    [BridgeMessage], "BridgeMessage | None | Awaitable[BridgeMessage | None]"
]

MAX_UNSENT = 100


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


StatusCallback = Callable[[ConnectionStatus, "int | None"], None]


class ConnectionState:
    """Current connectivity; subscribers hear about changes, not repeats."""

    def __init__(self) -> None:
        self._status = ConnectionStatus.DISCONNECTED
        self._port: int | None = None
        self._subscribers: list[StatusCallback] = []

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def mark_connected(self, port: int) -> bool:
        """Record a connection on *port*. Returns ``True`` if that changed anything."""
        if self._status is ConnectionStatus.CONNECTED and self._port == port:
            return False
        self._status = ConnectionStatus.CONNECTED
        self._port = port
        self._notify()
        return True

    def mark_disconnected(self) -> bool:
        if self._status is ConnectionStatus.DISCONNECTED:
            return False
        self._status = ConnectionStatus.DISCONNECTED
        self._port = None
        self._notify()
        return True

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self._status, self._port)
            except Exception:
                logger.exception("Connection status subscriber failed")


class _Unauthorized(Exception):
    pass


class AgentPoller:
    """Drives one discover / flush / poll / reply cycle per tick."""

    def __init__(
        self,
        handler: MessageHandler,
        discovery: Discovery,
        client: httpx.AsyncClient | None = None,
        poll_timeout: float = 3.0,
        agent_version: str | None = None,
    ) -> None:
        self._handler = handler
        self._discovery = discovery
        self._client = client if client is not None else httpx.AsyncClient()
        self._owns_client = client is None
        self._poll_timeout = poll_timeout
        self._agent_version = agent_version or get_version()
        self._unsent: deque[BridgeMessage] = deque(maxlen=MAX_UNSENT)
        self._in_flight = False
        self._running = False
        self.state = ConnectionState()

    @property
    def unsent_count(self) -> int:
        return len(self._unsent)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def aclose(self) -> None:
        self.stop()
        if self._owns_client:
            await self._client.aclose()

    # ── scheduling ──────────────────────────────────────────────

    async def run(self, interval: float = 3.0) -> None:
        """Tick every *interval* seconds until stop() is called."""
        self._running = True
        logger.info(f"Agent poller started (every {interval}s)")
        while self._running:
            await self.tick()
            await asyncio.sleep(interval)
        logger.info("Agent poller stopped")

    def stop(self) -> None:
        self._running = False

    async def tick(self) -> bool:
        """Run one cycle. Returns ``False`` if a previous cycle is still running."""
        if self._in_flight:
            logger.debug("Previous poll still in flight, skipping tick")
            return False
        self._in_flight = True
        try:
            await self._cycle()
        finally:
            self._in_flight = False
        return True

    # ── cycle ───────────────────────────────────────────────────

    async def _cycle(self) -> None:
        entry = await self._discovery.discover()
        if entry is None:
            self.state.mark_disconnected()
            return

        if not self.state.is_connected and not any(
            m.type is MessageType.AGENT_READY for m in self._unsent
        ):
            self._hold(
                create_message(
                    MessageType.AGENT_READY,
                    AgentReadyPayload(agent_version=self._agent_version),
                ),
                front=True,
            )

        try:
            await self._flush(entry)
            messages = await self._poll(entry)
            for message in messages:
                reply = await self._invoke(message)
                if reply is not None:
                    self._hold(reply)
            await self._flush(entry)
        except _Unauthorized:
            logger.warning(f"Token rejected by port {entry.port}, forgetting cached credential")
            self._discovery.invalidate()
            self.state.mark_disconnected()
            return
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Poll cycle against port {entry.port} failed: {e}")
            self.state.mark_disconnected()
            return

        self.state.mark_connected(entry.port)

    async def _poll(self, entry: CacheEntry) -> list[BridgeMessage]:
        response = await self._client.get(
            f"{self._discovery.base_url(entry.port)}/poll",
            headers={TOKEN_HEADER: entry.token},
            timeout=self._poll_timeout,
        )
        if response.status_code == 401:
            raise _Unauthorized()
        response.raise_for_status()
        data = response.json()
        raw_messages = data.get("messages", []) if isinstance(data, dict) else []

        messages = []
        for raw in raw_messages:
            result = validate_message(raw)
            if not result.valid or result.message is None:
                logger.warning(f"Skipping invalid message from poll: {result.error}")
                continue
            messages.append(result.message)
        return messages

    async def _invoke(self, message: BridgeMessage) -> BridgeMessage | None:
        try:
            reply: Any = self._handler(message)
            if inspect.isawaitable(reply):
                reply = await reply
        except Exception:
            logger.exception(f"Handler failed for {message.type.value} message")
            return None
        if reply is not None and not isinstance(reply, BridgeMessage):
            logger.warning(f"Handler returned {type(reply).__name__}, expected a message")
            return None
        return reply

    def _hold(self, message: BridgeMessage, front: bool = False) -> None:
        """Queue *message* for posting, dropping the oldest held reply when full."""
        if len(self._unsent) >= MAX_UNSENT:
            oldest = next(
                (m for m in self._unsent if m.type is not MessageType.AGENT_READY),
                self._unsent[0],
            )
            self._unsent.remove(oldest)
            logger.warning(
                f"Reply queue full ({MAX_UNSENT}), dropping oldest held {oldest.type.value}"
            )
        if front:
            self._unsent.appendleft(message)
        else:
            self._unsent.append(message)

    async def _flush(self, entry: CacheEntry) -> None:
        """Post queued replies in order; stops at the first transport failure."""
        url = f"{self._discovery.base_url(entry.port)}/result"
        while self._unsent:
            message = self._unsent[0]
            response = await self._client.post(
                url,
                json={"message": message.model_dump(mode="json")},
                headers={TOKEN_HEADER: entry.token},
                timeout=self._poll_timeout,
            )
            if response.status_code == 401:
                raise _Unauthorized()
            if response.status_code == 400:
                logger.warning(f"Controller rejected {message.type.value}: {response.text}")
                self._unsent.popleft()
                continue
            response.raise_for_status()
            self._unsent.popleft()
            logger.debug(f"Posted {message.type.value}")
