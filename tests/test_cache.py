"""Unit tests for the TTL cache."""

from __future__ import annotations

import asyncio

import pytest
from bitbucket_review.cache import (
    CACHE_TTL_SECONDS,
    CacheKind,
    TTLCache,
    cache_key,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
def test_get_returns_value_within_ttl() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    key = cache_key(CacheKind.REPOSITORY, "acme", "rocket")
    cache.set(key, {"name": "rocket"}, ttl_seconds=10.0)

    clock.now += 10.0

    assert cache.get(key) == {"name": "rocket"}


@pytest.mark.unit
def test_get_drops_expired_entry() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    key = cache_key(CacheKind.BRANCHES, "acme", "rocket")
    cache.set(key, ["main"], ttl_seconds=10.0)

    clock.now += 10.5

    assert cache.get(key) is None
    assert len(cache) == 0


@pytest.mark.unit
def test_entry_expires_after_real_wait() -> None:
    cache = TTLCache()
    key = cache_key(CacheKind.PULL_REQUEST, "acme", "rocket", 7)
    cache.set(key, "payload", ttl_seconds=0.1)

    asyncio.run(asyncio.sleep(0.15))

    assert cache.get(key) is None


@pytest.mark.unit
def test_set_overwrites_existing_entry() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    key = cache_key(CacheKind.COMMITS, "acme", "rocket", "main", 50)
    cache.set(key, "old", ttl_seconds=5.0)
    clock.now += 4.0
    cache.set(key, "new", ttl_seconds=5.0)
    clock.now += 4.0

    assert cache.get(key) == "new"


@pytest.mark.unit
def test_invalidate_removes_matching_prefix_only() -> None:
    cache = TTLCache()
    cache.set(cache_key(CacheKind.PULL_REQUESTS, "acme", "rocket", ("OPEN",)), [1])
    cache.set(cache_key(CacheKind.PULL_REQUESTS, "acme", "rocket", ("MERGED",)), [2])
    cache.set(cache_key(CacheKind.PULL_REQUESTS, "acme", "rocketship", ("OPEN",)), [3])
    cache.set(cache_key(CacheKind.REPOSITORY, "acme", "rocket"), {})

    removed = cache.invalidate(CacheKind.PULL_REQUESTS, "acme", "rocket")

    assert removed == 2
    assert cache.get(cache_key(CacheKind.PULL_REQUESTS, "acme", "rocketship", ("OPEN",))) == [3]
    assert cache.get(cache_key(CacheKind.REPOSITORY, "acme", "rocket")) == {}


@pytest.mark.unit
def test_delete_reports_presence() -> None:
    cache = TTLCache()
    key = cache_key(CacheKind.TOKEN_VALIDATION, "dev@example.com")
    cache.set(key, True)

    assert cache.delete(key) is True
    assert cache.delete(key) is False


@pytest.mark.unit
def test_sweep_and_lazy_expiry_agree() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    fresh = cache_key(CacheKind.REPOSITORY, "acme", "fresh")
    stale = cache_key(CacheKind.REPOSITORY, "acme", "stale")
    cache.set(fresh, "fresh", ttl_seconds=100.0)
    cache.set(stale, "stale", ttl_seconds=1.0)
    clock.now += 2.0

    assert cache.sweep() == 1
    assert cache.get(stale) is None
    assert cache.get(fresh) == "fresh"


@pytest.mark.unit
def test_background_sweeper_removes_expired_entries() -> None:
    async def scenario() -> int:
        cache = TTLCache(sweep_interval_seconds=0.01)
        cache.set(cache_key(CacheKind.BRANCHES, "acme", "rocket"), [], ttl_seconds=0.0)
        cache.start_sweeper()
        await asyncio.sleep(0.05)
        remaining = len(cache)
        await cache.close()
        return remaining

    assert asyncio.run(scenario()) == 0


@pytest.mark.unit
def test_close_clears_entries_and_stops_sweeper() -> None:
    async def scenario() -> TTLCache:
        cache = TTLCache()
        cache.set(cache_key(CacheKind.REPOSITORY, "acme", "rocket"), {})
        cache.start_sweeper()
        await cache.close()
        return cache

    cache = asyncio.run(scenario())
    assert len(cache) == 0


@pytest.mark.unit
def test_ttl_table_covers_every_kind() -> None:
    assert set(CACHE_TTL_SECONDS) == set(CacheKind)
    assert CACHE_TTL_SECONDS[CacheKind.TOKEN_VALIDATION] == 3600.0
    assert CACHE_TTL_SECONDS[CacheKind.PULL_REQUEST] == 60.0
