"""
Tests for TTLCache concurrency correctness.

Validates:
1. Concurrent misses on one key share a single fetch
2. Entries expire after the TTL
3. A caller that gives up does not poison the shared fetch
"""
import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ttl_cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_singleflight_per_key():
    calls = {"a": 0, "b": 0}

    def fetcher_for(key):
        async def fetch():
            calls[key] += 1
            await asyncio.sleep(0.05)
            return {"key": key}
        return fetch

    async def scenario():
        cache = TTLCache(ttl=10.0)
        tasks = [cache.get_or_fetch("a", fetcher_for("a")) for _ in range(10)]
        tasks += [cache.get_or_fetch("b", fetcher_for("b")) for _ in range(5)]
        return await asyncio.gather(*tasks)

    results = asyncio.run(scenario())
    assert calls == {"a": 1, "b": 1}
    assert all(r == {"key": "a"} for r in results[:10])
    assert all(r == {"key": "b"} for r in results[10:])


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl=5.0, clock=clock)
    cache.set("k", [1, 2])
    assert cache.get("k") == [1, 2]
    clock.now = 4.9
    assert cache.get("k") == [1, 2]
    clock.now = 5.0
    assert cache.get("k") is None
    assert len(cache) == 0


def test_clear_and_invalidate():
    cache = TTLCache(ttl=60.0)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.clear()
    assert cache.get("b") is None


def test_failed_fetch_is_not_cached():
    attempts = {"n": 0}

    async def flaky():
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise RuntimeError("Fetch failed")
        return "ok"

    async def scenario():
        cache = TTLCache(ttl=10.0)
        with pytest.raises(RuntimeError):
            await cache.get_or_fetch("k", flaky)
        return await cache.get_or_fetch("k", flaky)

    assert asyncio.run(scenario()) == "ok"
    assert attempts["n"] == 2


def test_timed_out_caller_leaves_fetch_usable():
    calls = {"n": 0}

    async def slow():
        calls["n"] += 1
        await asyncio.sleep(0.1)
        return "value"

    async def scenario():
        cache = TTLCache(ttl=10.0)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.get_or_fetch("k", slow), timeout=0.01)
        return await cache.get_or_fetch("k", slow)

    assert asyncio.run(scenario()) == "value"
    assert calls["n"] == 1
