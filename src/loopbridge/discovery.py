"""Agent-side discovery of the controller's control server.

The agent knows only the candidate port range. It probes ``/health`` on each
port in order and remembers the first responder's ``{port, token}`` so later
cycles cost a single probe.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Protocol

import httpx
from pydantic import ValidationError

from loopbridge.models.credentials import CacheEntry

logger = logging.getLogger(__name__)


class DiscoveryCache(Protocol):
    def load(self) -> CacheEntry | None: ...

    def save(self, entry: CacheEntry) -> None: ...

    def clear(self) -> None: ...


class MemoryCache:
    """Cache held in process memory."""

    def __init__(self) -> None:
        self._entry: CacheEntry | None = None

    def load(self) -> CacheEntry | None:
        return self._entry

    def save(self, entry: CacheEntry) -> None:
        self._entry = entry

    def clear(self) -> None:
        self._entry = None


class FileCache:
    """Cache persisted as a small JSON file, surviving agent restarts."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    def load(self) -> CacheEntry | None:
        try:
            return CacheEntry.model_validate(
                json.loads(self._path.read_text(encoding="utf-8"))
            )
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.debug(f"Ignoring unreadable discovery cache {self._path}: {e}")
            return None

    def save(self, entry: CacheEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(entry.model_dump_json(by_alias=True), encoding="utf-8")

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass


class Discovery:
    """Finds the control server and caches its credential."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        start_port: int = 7890,
        range_size: int = 10,
        probe_timeout: float = 1.0,
        cache_ttl: float = 60.0,
        cache: DiscoveryCache | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._host = host
        self._ports = list(range(start_port, start_port + range_size))
        self._probe_timeout = probe_timeout
        self._cache_ttl = cache_ttl
        self._cache: DiscoveryCache = cache if cache is not None else MemoryCache()
        self._client = client
        self._owns_client = client is None
        self.probe_count = 0

    @property
    def ports(self) -> list[int]:
        return list(self._ports)

    def base_url(self, port: int) -> str:
        return f"http://{self._host}:{port}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def probe(self, port: int) -> str | None:
        """Health-probe *port*; return the server token or ``None``."""
        self.probe_count += 1
        try:
            response = await self._get_client().get(
                f"{self.base_url(port)}/health", timeout=self._probe_timeout
            )
            if response.status_code != 200:
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("ok") is not True:
            return None
        token = data.get("token")
        return token if isinstance(token, str) and token else None

    async def discover(self) -> CacheEntry | None:
        """Return the live server's ``{port, token}``, or ``None`` if none answers."""
        cached = self._cache.load()
        if cached is not None and cached.is_fresh(self._cache_ttl):
            token = await self.probe(cached.port)
            if token == cached.token:
                return cached
            logger.debug(f"Cached port {cached.port} no longer valid, rescanning")

        for port in self._ports:
            token = await self.probe(port)
            if token is None:
                continue
            entry = CacheEntry(port=port, token=token, discovered_at=time.time())
            self._cache.save(entry)
            logger.info(f"Discovered control server on port {port}")
            return entry

        logger.debug(f"No control server in ports {self._ports[0]}-{self._ports[-1]}")
        return None

    def invalidate(self) -> None:
        """Forget the cached credential so the next discover() rescans."""
        self._cache.clear()
