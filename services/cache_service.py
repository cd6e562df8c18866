"""
Cache service with in-memory fallback
Redis optional (redis.asyncio), connected through the singleflight gate
"""
import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cachetools import TLRUCache
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from services.errors import ResourceUnavailableError, SingleflightSetupError
from services.singleflight import ConnectionManager

logger = logging.getLogger(__name__)

PRICE_TTL_SECONDS = 15 * 60


@dataclass
class CacheEntry:
    key: str
    serialized_value: str
    ttl_seconds: int
    expires_at: float

    def to_wire(self) -> Dict[str, Any]:
        return {"key": self.key, "serializedValue": self.serialized_value, "ttlSeconds": self.ttl_seconds}


def _entry_expiry(_key, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl_seconds


class MemoryCache:
    """In-memory cache with per-entry TTL (passive expiry)"""

    def __init__(self, maxsize: int = 10_000, timer=time.monotonic):
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._cache.get(key)

    def set(self, entry: CacheEntry) -> bool:
        with self._lock:
            self._cache[entry.key] = entry
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> bool:
        with self._lock:
            self._cache.clear()
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._cache.expire()
            return {"active_entries": len(self._cache), "type": "memory"}


class CacheService:
    """
    Unified cache: Redis when configured and reachable at connect(), memory otherwise.

    Once a backend is chosen, operation errors are not masked: an unreachable
    Redis surfaces as ResourceUnavailableError so the caller can decide.
    """

    def __init__(self, redis_url: Optional[str] = None, default_ttl: int = PRICE_TTL_SECONDS, op_timeout: float = 1.0):
        self.default_ttl = int(default_ttl)
        self.op_timeout = op_timeout
        self.memory_cache = MemoryCache()
        self._redis_url = redis_url
        self._redis: Optional[ConnectionManager] = None
        if redis_url:
            self._redis = ConnectionManager("cache", self._open_redis, closer=self._close_redis, timeout=5.0)
        self.backend = "memory"

    async def _open_redis(self):
        client = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        return client

    @staticmethod
    async def _close_redis(client) -> None:
        await client.aclose()

    async def connect(self) -> str:
        """Pick the backend. Falls back to memory if Redis cannot be reached now."""
        if self._redis is None:
            self.backend = "memory"
        else:
            try:
                await self._redis.acquire()
                self.backend = "redis"
            except SingleflightSetupError as e:
                logger.warning(f"Redis unreachable, using memory cache: {e}")
                self.backend = "memory"
        logger.info(f"CacheService ready. backend={self.backend}")
        return self.backend

    def make_entry(self, key: str, value: Any, ttl: Optional[int] = None) -> CacheEntry:
        ttl_seconds = max(1, int(ttl if ttl is not None else self.default_ttl))
        return CacheEntry(
            key=key,
            serialized_value=json.dumps(value, default=str),
            ttl_seconds=ttl_seconds,
            expires_at=time.time() + ttl_seconds,
        )

    async def _redis_call(self, op: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.op_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise ResourceUnavailableError("cache", f"redis {op} failed: {type(e).__name__}: {e}") from e

    async def get_json(self, key: str) -> Optional[Any]:
        if self.backend == "redis":
            client = await self._redis.acquire()
            raw = await self._redis_call("get", client.get(key))
            return json.loads(raw) if raw else None
        entry = self.memory_cache.get(key)
        return json.loads(entry.serialized_value) if entry else None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> CacheEntry:
        entry = self.make_entry(key, value, ttl)
        if self.backend == "redis":
            client = await self._redis.acquire()
            await self._redis_call("setex", client.setex(key, entry.ttl_seconds, entry.serialized_value))
        else:
            self.memory_cache.set(entry)
        return entry

    async def delete(self, key: str) -> bool:
        if self.backend == "redis":
            client = await self._redis.acquire()
            return bool(await self._redis_call("delete", client.delete(key)))
        return self.memory_cache.delete(key)

    async def is_connected(self) -> bool:
        if self.backend != "redis":
            return True
        try:
            client = await self._redis.acquire()
            return bool(await self._redis_call("ping", client.ping()))
        except ResourceUnavailableError:
            return False

    def get_stats(self) -> Dict[str, Any]:
        if self.backend == "redis":
            return {"type": "redis", "state": self._redis.state.value}
        return self.memory_cache.get_stats()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
