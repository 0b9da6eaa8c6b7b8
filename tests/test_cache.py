"""Tests for the TTL cache."""

import asyncio

import pytest

from superkagi.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def test_concurrent_misses_share_one_load():
    cache = TTLCache(60)
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return ["tool"]

    results = await asyncio.gather(*(cache.get_or_load("tools", loader) for _ in range(5)))

    assert calls == 1
    assert results == [["tool"]] * 5
    assert cache.stats() == {"entries": 1, "in_flight": 0}


async def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    values = iter(["first", "second"])

    async def loader():
        return next(values)

    assert await cache.get_or_load("k", loader) == "first"
    clock.now += 5
    assert await cache.get_or_load("k", loader) == "first"
    clock.now += 6
    assert cache.get("k") is None
    assert await cache.get_or_load("k", loader) == "second"


async def test_failures_are_not_cached():
    cache = TTLCache(60)
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("upstream down")
        return "ok"

    with pytest.raises(RuntimeError):
        await cache.get_or_load("k", flaky)
    assert await cache.get_or_load("k", flaky) == "ok"
    assert attempts == 2


async def test_joined_callers_see_the_failure():
    cache = TTLCache(60)

    async def failing():
        await asyncio.sleep(0.01)
        raise RuntimeError("nope")

    results = await asyncio.gather(
        cache.get_or_load("k", failing), cache.get_or_load("k", failing), return_exceptions=True
    )
    assert all(isinstance(r, RuntimeError) for r in results)


async def test_cancelled_first_caller_does_not_cancel_the_shared_load():
    cache = TTLCache(60)
    release = asyncio.Event()

    async def loader():
        await release.wait()
        return ["tools"]

    first = asyncio.create_task(cache.get_or_load("tools", loader))
    await asyncio.sleep(0)
    second = asyncio.create_task(cache.get_or_load("tools", loader))
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    release.set()

    assert await second == ["tools"]
    assert cache.get("tools") == ["tools"]
    assert cache.stats()["in_flight"] == 0


def test_invalidate_and_ttl_validation():
    cache = TTLCache(60)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.invalidate()
    assert cache.get("b") is None

    with pytest.raises(ValueError):
        TTLCache(0)
