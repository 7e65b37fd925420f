from __future__ import annotations

import asyncio

from chatrelay.cache import MemoryCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("k", "v", ttl_s=5)
    assert cache.get("k") == "v"
    clock.now += 5.5
    assert cache.get("k") is None
    assert len(cache) == 0


def test_zero_ttl_never_expires():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("k", "v")
    clock.now += 10_000
    assert cache.get("k") == "v"


def test_wrap_loads_once_and_skips_none():
    cache = MemoryCache()
    calls = []

    def loader():
        calls.append(1)
        return {"id": 1}

    assert cache.wrap("k", 60, loader) == {"id": 1}
    assert cache.wrap("k", 60, loader) == {"id": 1}
    assert len(calls) == 1

    assert cache.wrap("missing", 60, lambda: None) is None
    assert cache.get("missing") is None


def test_wrap_async_and_delete():
    cache = MemoryCache()

    async def loader():
        return ("a", "b")

    assert asyncio.run(cache.wrap_async("models", 15, loader)) == ("a", "b")
    assert cache.get("models") == ("a", "b")
    cache.delete("models")
    assert cache.get("models") is None
