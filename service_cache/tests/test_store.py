"""
Unit tests for the cache store backends.
"""

import fnmatch
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shared.errors import StoreUnavailable
from service_cache.app.caching.store import (
    MISSING,
    MemoryCacheStore,
    RedisCacheStore,
    TTL_MISSING,
    TTL_NO_EXPIRY,
    create_store,
    format_bytes,
    hit_ratio,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def scan_over(keys):
    """Async scan_iter replacement filtering keys by glob."""

    async def scan_iter(match="*", count=None):
        for key in keys:
            if fnmatch.fnmatchcase(key, match):
                yield key

    return scan_iter


class TestHelpers:
    """Hit ratio and memory formatting."""

    def test_hit_ratio_rounds_to_two_decimals(self):
        assert hit_ratio(5, 1) == 83.33
        assert hit_ratio(1, 9) == 10.0

    def test_hit_ratio_without_reads_is_zero(self):
        assert hit_ratio(0, 0) == 0.0

    def test_format_bytes(self):
        assert format_bytes(512) == "512B"
        assert format_bytes(2048) == "2.00K"
        assert format_bytes(3 * 1024 * 1024) == "3.00M"


class TestMemoryCacheStore:
    """Test cases for MemoryCacheStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return MemoryCacheStore(clock=clock)

    @pytest.mark.asyncio
    async def test_set_then_get_returns_value(self, store):
        payload = {"data": [{"id": 1, "serial": "M-001"}], "total": 1}

        assert await store.set("api:meters", payload, 300) is True
        assert await store.get("api:meters") == payload

    @pytest.mark.asyncio
    async def test_get_missing_key(self, store):
        assert await store.get("api:meters") is None

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, store, clock):
        await store.set("api:meters:balance", {"balance": 12.5}, 60)

        clock.advance(59)
        assert await store.get("api:meters:balance") == {"balance": 12.5}

        clock.advance(1)
        assert await store.get("api:meters:balance") is None
        assert await store.has("api:meters:balance") is False

    @pytest.mark.asyncio
    async def test_set_overwrites(self, store):
        await store.set("k", {"v": 1}, 60)
        await store.set("k", {"v": 2}, 60)

        assert await store.get("k") == {"v": 2}

    @pytest.mark.asyncio
    async def test_ttl_remaining(self, store, clock):
        await store.set("timed", [1, 2], 60)
        await store.set("forever", [3], 0)

        clock.advance(20)

        assert await store.ttl_remaining("timed") == 40
        assert await store.ttl_remaining("forever") == TTL_NO_EXPIRY
        assert await store.ttl_remaining("absent") == TTL_MISSING

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.set("k", 1, 60)

        assert await store.delete("k") is True
        assert await store.delete("k") is False
        assert await store.has("k") is False

    @pytest.mark.asyncio
    async def test_clear_by_pattern_deletes_only_matches(self, store):
        await store.set("api:meters", [], 300)
        await store.set("api:meters:5", {}, 300)
        await store.set("user:u1:api:meters:limit=10", [], 300)
        await store.set("api:tariffs", [], 3600)

        deleted = await store.clear_by_pattern("*api:meters*")

        assert deleted == 3
        assert await store.has("api:tariffs") is True
        assert await store.has("api:meters:5") is False

    @pytest.mark.asyncio
    async def test_clear_by_pattern_without_matches(self, store):
        await store.set("api:tariffs", [], 3600)

        assert await store.clear_by_pattern("*api:payments*") == 0

    @pytest.mark.asyncio
    async def test_flush_removes_everything(self, store):
        await store.set("a", 1, 60)
        await store.set("b", 2, 60)

        assert await store.flush() is True
        assert (await store.stats()).key_count == 0

    @pytest.mark.asyncio
    async def test_remember_calls_producer_once(self, store):
        calls = []

        def producer():
            calls.append(1)
            return {"tariffs": ["standard"]}

        first = await store.remember("api:tariffs", producer, 3600)
        second = await store.remember("api:tariffs", producer, 3600)

        assert first == second == {"tariffs": ["standard"]}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_remember_accepts_async_producer(self, store):
        producer = AsyncMock(return_value={"balance": 3})

        assert await store.remember("api:meters:7:balance", producer, 60) == {"balance": 3}
        assert await store.remember("api:meters:7:balance", producer, 60) == {"balance": 3}
        producer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remember_skips_producer_on_hit(self, store):
        await store.set("k", {"cached": True}, 60)
        producer = MagicMock()

        assert await store.remember("k", producer, 60) == {"cached": True}
        producer.assert_not_called()

    @pytest.mark.asyncio
    async def test_cached_null_is_distinguishable_from_absent(self, store):
        await store.set("api:meters:7:credits", None, 60)

        assert await store.get("api:meters:7:credits", MISSING) is None
        assert await store.get("api:meters:8:credits", MISSING) is MISSING

    @pytest.mark.asyncio
    async def test_remember_treats_cached_null_as_hit(self, store):
        producer = MagicMock(return_value=None)

        assert await store.remember("api:meters:7:credits", producer, 60) is None
        assert await store.remember("api:meters:7:credits", producer, 60) is None
        producer.assert_called_once()

    @pytest.mark.asyncio
    async def test_stats_hit_ratio(self, store):
        await store.set("k", 1, 60)
        for _ in range(5):
            await store.get("k")
        await store.get("missing")

        stats = await store.stats()

        assert stats.hits == 5
        assert stats.misses == 1
        assert stats.hit_ratio == 83.33
        assert stats.key_count == 1
        assert stats.connections == 1

    @pytest.mark.asyncio
    async def test_stats_without_reads(self, store):
        stats = await store.stats()

        assert stats.hit_ratio == 0.0
        assert stats.memory_usage_human == "0B"


class TestRedisCacheStore:
    """Test cases for RedisCacheStore with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.setex = AsyncMock(return_value=True)
        client.delete = AsyncMock(side_effect=lambda *keys: len(keys))
        client.exists = AsyncMock(return_value=0)
        client.ttl = AsyncMock(return_value=-2)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def store(self, client):
        return RedisCacheStore("redis://localhost:6379/1", "meter_api:", client=client)

    @pytest.mark.asyncio
    async def test_set_uses_prefix_and_setex(self, store, client):
        assert await store.set("api:meters", {"a": 1}, 300) is True

        client.setex.assert_awaited_once_with("meter_api:api:meters", 300, '{"a":1}')

    @pytest.mark.asyncio
    async def test_set_without_ttl_uses_plain_set(self, store, client):
        await store.set("api:meters", [1], 0)

        client.set.assert_awaited_once_with("meter_api:api:meters", "[1]")
        client.setex.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, store, client):
        client.get.return_value = '{"total":2}'

        assert await store.get("api:meters") == {"total": 2}
        client.get.assert_awaited_once_with("meter_api:api:meters")

    @pytest.mark.asyncio
    async def test_get_with_corrupt_value_is_a_miss(self, store, client):
        client.get.return_value = "{not json"

        assert await store.get("api:meters") is None

    @pytest.mark.asyncio
    async def test_get_default_for_absent_and_null(self, store, client):
        assert await store.get("api:meters", MISSING) is MISSING

        client.get.return_value = "null"
        assert await store.get("api:meters", MISSING) is None

    @pytest.mark.asyncio
    async def test_connection_failure_raises_store_unavailable(self, store, client):
        client.get.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(StoreUnavailable) as exc_info:
            await store.get("api:meters")

        assert exc_info.value.status_code == 503
        assert exc_info.value.details == {"operation": "get"}

    @pytest.mark.asyncio
    async def test_clear_by_pattern_scopes_to_prefix(self, store, client):
        client.scan_iter = scan_over([
            "meter_api:api:meters",
            "meter_api:user:u1:api:meters:limit=10",
            "meter_api:api:tariffs",
            "other_app:api:meters",
        ])

        deleted = await store.clear_by_pattern("*api:meters*")

        assert deleted == 2
        client.delete.assert_awaited_once_with(
            "meter_api:api:meters",
            "meter_api:user:u1:api:meters:limit=10",
        )

    @pytest.mark.asyncio
    async def test_clear_by_pattern_deletes_in_batches(self, store, client):
        client.scan_iter = scan_over([f"meter_api:api:meters:{i}" for i in range(1200)])

        deleted = await store.clear_by_pattern("api:meters:*")

        assert deleted == 1200
        assert client.delete.await_count == 3

    @pytest.mark.asyncio
    async def test_stats_from_info(self, store, client):
        client.info = AsyncMock(return_value={
            "keyspace_hits": 5,
            "keyspace_misses": 1,
            "used_memory_human": "1.50M",
            "connected_clients": 3,
        })
        client.scan_iter = scan_over(["meter_api:a", "meter_api:b", "other:c"])

        stats = await store.stats()

        assert stats.hit_ratio == 83.33
        assert stats.key_count == 2
        assert stats.memory_usage_human == "1.50M"
        assert stats.connections == 3

    @pytest.mark.asyncio
    async def test_ttl_and_exists(self, store, client):
        client.exists.return_value = 1
        client.ttl.return_value = 42

        assert await store.has("api:meters") is True
        assert await store.ttl_remaining("api:meters") == 42
        client.ttl.assert_awaited_once_with("meter_api:api:meters")

    @pytest.mark.asyncio
    async def test_ping_reports_failure(self, store, client):
        client.ping.side_effect = RedisConnectionError("down")

        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, store, client):
        await store.close()

        client.aclose.assert_awaited_once()


class TestCreateStore:
    """Backend selection."""

    def test_memory_backend(self):
        assert isinstance(create_store("memory", "redis://unused", "p:"), MemoryCacheStore)

    def test_redis_backend(self):
        store = create_store("redis", "redis://localhost:6379/1", "meter_api:", socket_timeout=2.0)

        assert isinstance(store, RedisCacheStore)
        assert store.prefix == "meter_api:"
        assert store.socket_timeout == 2.0

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store("memcached", "redis://unused", "p:")
