"""Credentials identifying a live control server."""

from __future__ import annotations

import time
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class Credential(BaseModel):
    """What the controller publishes in ``bridge.json`` for out-of-band discovery."""

    model_config = ConfigDict(populate_by_name=True)

    port: int
    token: str
    pid: int
    started_at: datetime = Field(
        alias="startedAt", default_factory=lambda: datetime.now(timezone.utc)
    )


class CacheEntry(BaseModel):
    """An agent's remembered ``{port, token}`` pair."""

    model_config = ConfigDict(populate_by_name=True)

    port: int
    token: str
    discovered_at: float = Field(alias="discoveredAt", default_factory=time.time)

    def is_fresh(self, ttl: float, now: float | None = None) -> bool:
        if now is None:
            now = time.time()
        return now - self.discovered_at < ttl
