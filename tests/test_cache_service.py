from __future__ import annotations

import asyncio

from linkbot.impl.cache_service import MemoryCacheService, NullCacheService, build_cache


def test_memory_cache_ttl() -> None:
    now = [100.0]
    cache = MemoryCacheService(clock=lambda: now[0])

    async def runner() -> None:
        await cache.set("a", ["1"], 60)
        await cache.set("b", "forever")
        assert await cache.get("a") == ["1"]

        now[0] += 60
        assert await cache.get("a") is None
        assert await cache.get("b") == "forever"

        await cache.delete("b")
        assert await cache.get("b") is None

    asyncio.run(runner())


def test_null_cache_always_misses() -> None:
    cache = NullCacheService()

    async def runner() -> None:
        await cache.set("a", ["1"], 60)
        assert await cache.get("a") is None

    asyncio.run(runner())


def test_build_cache() -> None:
    assert isinstance(build_cache(True), MemoryCacheService)
    assert build_cache(False).name == "disabled"
