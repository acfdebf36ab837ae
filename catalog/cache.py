"""Cache adapters for query results.

Two backends share the same async ``get``/``set`` surface:

* ``MemoryCache``: per-process, bounded, per-entry TTL (cachetools TLRUCache).
* ``RedisCache``: shared across processes, JSON values with ``SET ... EX``.

Both raise ``CacheError`` on I/O failure; callers treat that as a miss.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from cachetools import TLRUCache
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .settings import Settings

Records = List[Dict[str, Any]]


class CacheError(Exception):
    """Any cache I/O failure (timeout, connection, decode)."""


class Cache(Protocol):
    async def get(self, key: str) -> Optional[Records]: ...

    async def set(self, key: str, value: Records, ttl_seconds: int) -> None: ...


def _expires_at(_key: str, value: Tuple[int, Records], now: float) -> float:
    return now + value[0]


class MemoryCache:
    """In-process cache with a TTL per entry and LRU eviction past ``maxsize``."""

    def __init__(
        self, maxsize: int = 1024, timer: Callable[[], float] = time.monotonic
    ) -> None:
        self._store: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=timer)
        self._hits = 0
        self._misses = 0

    async def get(self, key: str) -> Optional[Records]:
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return [dict(r) for r in entry[1]]

    async def set(self, key: str, value: Records, ttl_seconds: int) -> None:
        self._store[key] = (ttl_seconds, [dict(r) for r in value])

    def clear(self) -> None:
        self._store.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._store),
            "maxsize": int(self._store.maxsize),
            "hits": self._hits,
            "misses": self._misses,
        }


class RedisCache:
    """Redis-backed cache storing each result list as a JSON string."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(
            Redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                health_check_interval=30,
            )
        )

    async def get(self, key: str) -> Optional[Records]:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise CacheError(f"redis get failed key={key}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise CacheError(f"undecodable cache entry key={key}") from exc

    async def set(self, key: str, value: Records, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, json.dumps(value), ex=ttl_seconds)
        except RedisError as exc:
            raise CacheError(f"redis set failed key={key}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def build_cache(settings: Settings) -> MemoryCache | RedisCache:
    """Pick the cache backend named by ``CACHE_BACKEND``."""
    if settings.CACHE_BACKEND == "redis":
        return RedisCache.from_url(settings.REDIS_URL)
    return MemoryCache(maxsize=settings.CACHE_MAXSIZE)
