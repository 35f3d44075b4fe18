"""
Cache store implementations for the response cache.

Every store speaks the same small contract (get/set/delete/scan/stats/flush)
so the middleware and admin plane never know which backend is in use.
Values are JSON-serialized on the way in and decoded on the way out.
"""

import fnmatch
import inspect
import json
import threading
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import redis.asyncio as redis
from pydantic import BaseModel
from redis.exceptions import RedisError

from shared.errors import StoreUnavailable
from shared.logging import get_logger


TTL_NO_EXPIRY = -1
TTL_MISSING = -2

SCAN_BATCH_SIZE = 500

# Absent-key marker for callers that may cache JSON null
MISSING = object()

Producer = Callable[[], Union[Any, Awaitable[Any]]]


class StatsSnapshot(BaseModel):
    """Point-in-time read of the store's own bookkeeping."""

    hits: int = 0
    misses: int = 0
    hit_ratio: float = 0.0
    key_count: int = 0
    memory_usage_human: str = "0B"
    connections: int = 0


def hit_ratio(hits: int, misses: int) -> float:
    """Hit percentage rounded to two decimals, 0 when nothing was read."""
    total = hits + misses
    if total == 0:
        return 0.0
    return round(hits / total * 100, 2)


def format_bytes(size: int) -> str:
    """Render a byte count the way Redis renders used_memory_human."""
    if size < 1024:
        return f"{size}B"
    value = float(size)
    for unit in ("K", "M", "G"):
        value /= 1024
        if value < 1024 or unit == "G":
            break
    return f"{value:.2f}{unit}"


class CacheStore(ABC):
    """TTL-aware key/value store used by the response cache."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value, or default when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> bool:
        """Store value under key for ttl seconds, overwriting any previous entry."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove key. Returns True if something was deleted."""

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Return True if key holds a live entry."""

    @abstractmethod
    async def ttl_remaining(self, key: str) -> int:
        """Seconds left, -1 for no expiry, -2 when absent."""

    @abstractmethod
    async def clear_by_pattern(self, pattern: str) -> int:
        """Delete every key matching the glob pattern and return how many went."""

    @abstractmethod
    async def flush(self) -> bool:
        """Delete every key owned by this store."""

    @abstractmethod
    async def _collect_stats(self) -> Dict[str, Any]:
        """Raw counters: hits, misses, key_count, memory_usage_human, connections."""

    async def ping(self) -> bool:
        """Return True if the backing store answers."""
        return True

    async def close(self) -> None:
        """Release backend resources."""

    async def stats(self) -> StatsSnapshot:
        """Aggregate statistics with the derived hit ratio."""
        raw = await self._collect_stats()
        hits = int(raw.get("hits", 0))
        misses = int(raw.get("misses", 0))
        return StatsSnapshot(
            hits=hits,
            misses=misses,
            hit_ratio=hit_ratio(hits, misses),
            key_count=int(raw.get("key_count", 0)),
            memory_usage_human=str(raw.get("memory_usage_human", "0B")),
            connections=int(raw.get("connections", 0)),
        )

    async def remember(self, key: str, producer: Producer, ttl: int) -> Any:
        """
        Cache-aside helper.

        Returns the cached value when present; otherwise calls producer (sync
        or async), stores its result and returns it. producer is never called
        on a hit.
        """
        cached = await self.get(key, MISSING)
        if cached is not MISSING:
            return cached

        value = producer()
        if inspect.isawaitable(value):
            value = await value

        await self.set(key, value, ttl)
        return value

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, separators=(",", ":"), default=str)


class MemoryCacheStore(CacheStore):
    """In-process store with the same semantics as the Redis store."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        """Return the entry if present and not expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        expires_at = entry[1]
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    def _purge_expired(self) -> None:
        for key in list(self._entries):
            self._live_entry(key)

    async def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return default
            self._hits += 1
            payload = entry[0]
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        payload = self._encode(value)
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        with self._lock:
            self._entries[key] = (payload, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            if self._live_entry(key) is None:
                return False
            del self._entries[key]
            return True

    async def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def ttl_remaining(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return TTL_MISSING
            if entry[1] is None:
                return TTL_NO_EXPIRY
            return max(0, int(round(entry[1] - self._clock())))

    async def clear_by_pattern(self, pattern: str) -> int:
        with self._lock:
            self._purge_expired()
            matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in matched:
                del self._entries[key]
        return len(matched)

    async def flush(self) -> bool:
        with self._lock:
            self._entries.clear()
        return True

    async def _collect_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._purge_expired()
            size = sum(len(key) + len(payload) for key, (payload, _) in self._entries.items())
            return {
                "hits": self._hits,
                "misses": self._misses,
                "key_count": len(self._entries),
                "memory_usage_human": format_bytes(size),
                "connections": 1,
            }


class RedisCacheStore(CacheStore):
    """Redis-backed store. All keys live under a namespace prefix."""

    def __init__(
        self,
        redis_url: str,
        prefix: str = "meter_api:",
        *,
        socket_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.socket_timeout = socket_timeout
        self.logger = get_logger("cache.store.redis")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _strip_prefix(self, key: str) -> str:
        return key[len(self.prefix):] if key.startswith(self.prefix) else key

    @asynccontextmanager
    async def _command(self, operation: str):
        """Yield a client and translate transport failures into StoreUnavailable."""
        try:
            yield await self._get_redis()
        except (RedisError, OSError) as exc:
            self.logger.error("Cache store command failed", operation=operation, error=str(exc))
            raise StoreUnavailable(str(exc) or "Cache store unavailable", details={"operation": operation}) from exc

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._command("get") as client:
            raw = await client.get(self._make_key(key))

        if raw is None:
            return default

        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning("Failed to decode cached value", key=key)
            return default

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        payload = self._encode(value)
        async with self._command("set") as client:
            if ttl and ttl > 0:
                result = await client.setex(self._make_key(key), ttl, payload)
            else:
                result = await client.set(self._make_key(key), payload)

        self.logger.debug("Cached value", key=key, ttl=ttl)
        return bool(result)

    async def delete(self, key: str) -> bool:
        async with self._command("delete") as client:
            deleted = await client.delete(self._make_key(key))
        return deleted > 0

    async def has(self, key: str) -> bool:
        async with self._command("exists") as client:
            return await client.exists(self._make_key(key)) > 0

    async def ttl_remaining(self, key: str) -> int:
        async with self._command("ttl") as client:
            return int(await client.ttl(self._make_key(key)))

    async def clear_by_pattern(self, pattern: str) -> int:
        deleted = 0
        async with self._command("clear_pattern") as client:
            batch = []
            async for full_key in client.scan_iter(match=self._make_key(pattern), count=SCAN_BATCH_SIZE):
                batch.append(full_key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)

        if deleted:
            self.logger.info("Cleared cache pattern", pattern=pattern, keys_count=deleted)
        return deleted

    async def flush(self) -> bool:
        await self.clear_by_pattern("*")
        return True

    async def _collect_stats(self) -> Dict[str, Any]:
        async with self._command("stats") as client:
            info = await client.info()
            key_count = 0
            async for _ in client.scan_iter(match=self._make_key("*"), count=SCAN_BATCH_SIZE):
                key_count += 1

        return {
            "hits": info.get("keyspace_hits", 0),
            "misses": info.get("keyspace_misses", 0),
            "key_count": key_count,
            "memory_usage_human": info.get("used_memory_human", "0B"),
            "connections": info.get("connected_clients", 0),
        }

    async def ping(self) -> bool:
        try:
            async with self._command("ping") as client:
                return bool(await client.ping())
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache connection closed")


def create_store(backend: str, redis_url: str, prefix: str, socket_timeout: float = 5.0) -> CacheStore:
    """Build the configured store backend."""
    if backend == "memory":
        return MemoryCacheStore()
    if backend == "redis":
        return RedisCacheStore(redis_url, prefix, socket_timeout=socket_timeout)
    raise ValueError(f"Unknown cache backend: {backend!r}")
