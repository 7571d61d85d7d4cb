"""FIFO of messages waiting for the agent to poll."""

from __future__ import annotations

import threading

from loopbridge.models.messages import BridgeMessage


class MessageQueue:
    """In-process FIFO mutated only by :meth:`enqueue` and :meth:`drain`.

    Draining takes every queued message at once, so a message is handed to
    exactly one poll response. The lock keeps that true if producers run on
    other threads than the server's event loop.
    """

    def __init__(self) -> None:
        self._items: list[BridgeMessage] = []
        self._lock = threading.Lock()

    def enqueue(self, message: BridgeMessage) -> None:
        with self._lock:
            self._items.append(message)

    def drain(self) -> list[BridgeMessage]:
        """Remove and return all queued messages in insertion order."""
        with self._lock:
            items, self._items = self._items, []
        return items

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
