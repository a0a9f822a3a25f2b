"""Expiring key-value stores used by the KV conversation backend.

Both stores give per-key last-write-wins semantics and nothing more: there is
no locking and no compare-and-set.
"""
from __future__ import annotations

import heapq
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import ConfigError, PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    async def close(self) -> None:
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store with per-key expiry.

    Expired entries are dropped when read, and every write sweeps the ones
    whose deadline has passed. ``clock`` must be monotonic.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._deadlines: List[Tuple[float, str]] = []

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        now = self._clock()
        self._sweep(now)
        expires_at = now + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)
        if expires_at is not None:
            heapq.heappush(self._deadlines, (expires_at, key))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def _sweep(self, now: float) -> None:
        while self._deadlines and self._deadlines[0][0] <= now:
            expires_at, key = heapq.heappop(self._deadlines)
            entry = self._data.get(key)
            # A rewritten key leaves a stale deadline behind; only the current one counts.
            if entry is not None and entry[1] == expires_at:
                del self._data[key]

    def __len__(self) -> int:
        return len(self._data)


class RedisKeyValueStore(KeyValueStore):
    """Thin wrapper over ``redis.asyncio`` using ``SET ... EX``."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._client.get(key)
        except RedisError as e:
            raise PersistenceError(f"Redis GET failed for {key}: {e}") from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds or None)
        except RedisError as e:
            raise PersistenceError(f"Redis SET failed for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise PersistenceError(f"Redis DEL failed for {key}: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


def create_kv_store(url: str) -> KeyValueStore:
    """Build a store from a URL: ``memory://`` or ``redis://`` / ``rediss://``."""
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    if scheme == "memory":
        return InMemoryKeyValueStore()
    if scheme in {"redis", "rediss", "unix"}:
        logger.info("Using Redis key-value store at %s", url.split("@")[-1])
        return RedisKeyValueStore.from_url(url)
    raise ConfigError(f"Unsupported key-value store URL: {url!r}")
