import json

import pytest

from services.cache_service import CacheService, MemoryCache


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_memory_entry_expires_after_its_ttl():
    clock = Clock()
    memory = MemoryCache(timer=clock)
    service = CacheService()
    memory.set(service.make_entry("fund:scheme_code:119551", {"value": 23.45}, ttl=60))

    clock.now += 59
    assert memory.get("fund:scheme_code:119551") is not None
    clock.now += 2
    assert memory.get("fund:scheme_code:119551") is None


def test_entries_have_independent_ttls():
    clock = Clock()
    memory = MemoryCache(timer=clock)
    service = CacheService()
    memory.set(service.make_entry("short", 1, ttl=10))
    memory.set(service.make_entry("long", 2, ttl=3600))

    clock.now += 11
    assert memory.get("short") is None
    assert memory.get("long") is not None
    assert memory.get_stats()["active_entries"] == 1


def test_entry_wire_shape():
    entry = CacheService(default_ttl=900).make_entry("fund:isin:INF209K01157", {"scheme_code": "119551"})
    assert entry.to_wire() == {
        "key": "fund:isin:INF209K01157",
        "serializedValue": json.dumps({"scheme_code": "119551"}),
        "ttlSeconds": 900,
    }


def test_ttl_is_always_bounded():
    entry = CacheService().make_entry("k", "v", ttl=0)
    assert entry.ttl_seconds == 1


@pytest.mark.asyncio
async def test_memory_backend_roundtrip():
    cache = CacheService()
    assert await cache.connect() == "memory"

    await cache.set_json("fund:scheme_code:119551", {"name": "XYZ Fund", "value": 23.45}, ttl=60)
    assert await cache.get_json("fund:scheme_code:119551") == {"name": "XYZ Fund", "value": 23.45}
    assert await cache.delete("fund:scheme_code:119551") is True
    assert await cache.get_json("fund:scheme_code:119551") is None
    assert await cache.is_connected() is True
    assert cache.get_stats()["type"] == "memory"


@pytest.mark.asyncio
async def test_unreachable_redis_falls_back_to_memory_at_connect():
    cache = CacheService(redis_url="redis://127.0.0.1:1/0")
    assert await cache.connect() == "memory"

    await cache.set_json("k", {"a": 1})
    assert await cache.get_json("k") == {"a": 1}
    await cache.close()
