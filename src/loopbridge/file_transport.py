"""Filesystem mailbox transport.

Each message is one JSON file. The sender writes to its outbound directory
and the receiver scans its inbound directory, so the controller side writes
``outbox/`` and reads ``inbox/`` while the agent side does the opposite.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from loopbridge.errors import NotConnectedError
from loopbridge.models.messages import BridgeMessage, serialize_message, validate_message
from loopbridge.paths import get_inbox_dir, get_outbox_dir

logger = logging.getLogger(__name__)

MessageCallback = Callable[[BridgeMessage], None]


class FileTransport:
    """Exchanges messages through a pair of mailbox directories."""

    def __init__(
        self,
        bridge_dir: Path | str,
        poll_interval: float = 0.5,
        inbound: str = "inbox",
        outbound: str = "outbox",
    ) -> None:
        self._bridge_dir = Path(bridge_dir)
        self._inbound_dir = self._bridge_dir / inbound
        self._outbound_dir = self._bridge_dir / outbound
        self._poll_interval = poll_interval
        self._callbacks: list[MessageCallback] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._connected = False
        # Names of malformed files already reported, so each is logged once
        self._reported: set[str] = set()
        self._last_ns = 0

    @classmethod
    def agent_side(cls, bridge_dir: Path | str, poll_interval: float = 0.5) -> FileTransport:
        """Transport reading ``outbox/`` and writing ``inbox/``."""
        bridge_dir = Path(bridge_dir)
        return cls(
            bridge_dir,
            poll_interval=poll_interval,
            inbound=get_outbox_dir(bridge_dir).name,
            outbound=get_inbox_dir(bridge_dir).name,
        )

    @property
    def inbound_dir(self) -> Path:
        return self._inbound_dir

    @property
    def outbound_dir(self) -> Path:
        return self._outbound_dir

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ── lifecycle ───────────────────────────────────────────────

    async def connect(self) -> None:
        """Create both mailbox directories and start polling the inbound one."""
        if self._connected:
            return
        self._inbound_dir.mkdir(parents=True, exist_ok=True)
        self._outbound_dir.mkdir(parents=True, exist_ok=True)
        self._connected = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"File transport watching {self._inbound_dir}")

    async def disconnect(self) -> None:
        """Stop polling. Safe to call more than once."""
        self._connected = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
            logger.info("File transport stopped")

    # ── public API ──────────────────────────────────────────────

    def on_message(self, callback: MessageCallback) -> None:
        """Register a handler; handlers run in registration order."""
        self._callbacks.append(callback)

    def send(self, message: BridgeMessage) -> Path:
        """Write *message* to the outbound directory and return its path.

        The file appears under its final name in one atomic rename, and names
        sort in send order.
        """
        if not self._connected:
            raise NotConnectedError()
        # Strictly increasing so names sort in send order
        self._last_ns = max(time.time_ns(), self._last_ns + 1)
        name = f"{self._last_ns}-{uuid.uuid4().hex[:12]}.json"
        path = self._outbound_dir / name
        tmp = self._outbound_dir / f".{name}.tmp"
        tmp.write_text(serialize_message(message), encoding="utf-8")
        os.replace(tmp, path)
        logger.debug(f"Wrote {message.type.value} to {path.name}")
        return path

    async def poll_once(self) -> int:
        """Process every message currently in the inbound directory.

        Returns the number of messages dispatched and removed. Malformed or
        unreadable files, files whose handlers raised, and files that arrive
        before any handler is registered are left where they are.
        """
        try:
            names = sorted(
                entry.name
                for entry in os.scandir(self._inbound_dir)
                if entry.is_file() and entry.name.endswith(".json")
            )
        except FileNotFoundError:
            return 0

        dispatched = 0
        for name in names:
            path = self._inbound_dir / name
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as e:
                self._report_malformed(name, str(e))
                continue

            result = validate_message(text)
            if not result.valid or result.message is None:
                self._report_malformed(name, result.error)
                continue

            if not self._dispatch(result.message, name):
                continue

            try:
                path.unlink()
            except FileNotFoundError:
                pass
            dispatched += 1
        return dispatched

    # ── internals ───────────────────────────────────────────────

    def _report_malformed(self, name: str, reason: str | None) -> None:
        if name in self._reported:
            return
        self._reported.add(name)
        logger.warning(f"Skipping malformed message file {name}: {reason}")

    def _dispatch(self, message: BridgeMessage, name: str) -> bool:
        if not self._callbacks:
            # Nobody to hand it to yet, leave it for a later scan
            return False
        ok = True
        for callback in list(self._callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception(f"Message handler failed for {name}, keeping file")
                ok = False
        return ok

    async def _poll_loop(self) -> None:
        while self._connected:
            try:
                await self.poll_once()
            except OSError as e:
                logger.warning(f"Mailbox scan failed: {e}")
            except Exception:
                logger.exception("Mailbox poll failed")
            await asyncio.sleep(self._poll_interval)
