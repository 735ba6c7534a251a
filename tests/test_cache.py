"""Expiring cache: TTL, hit counting, sweep and capacity eviction."""

import asyncio

import pytest

from core.cache import ExpiringCache


def test_get_returns_stored_value_and_counts_hits(clock):
    cache = ExpiringCache("test", default_ttl=60, clock=clock)
    cache.set("a", {"value": 1})

    assert cache.get("a") == {"value": 1}
    assert cache.get("a") == {"value": 1}
    assert cache.get_stats()["total_hits"] == 2


def test_missing_key_returns_default(clock):
    cache = ExpiringCache("test", clock=clock)
    assert cache.get("nope") is None
    assert cache.get("nope", "fallback") == "fallback"


def test_entry_is_fresh_at_ttl_and_stale_after(clock):
    cache = ExpiringCache("test", default_ttl=10, clock=clock)
    cache.set("a", "v")

    clock.advance(10)
    assert cache.get("a") == "v"

    clock.advance(0.001)
    assert cache.get("a") is None
    # the stale read evicted the entry
    assert len(cache) == 0


def test_per_entry_ttl_overrides_default(clock):
    cache = ExpiringCache("test", default_ttl=3600, clock=clock)
    cache.set("short", 1, ttl=5)
    cache.set("long", 2)

    clock.advance(6)
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_negative_ttl_is_rejected(clock):
    cache = ExpiringCache("test", clock=clock)
    with pytest.raises(ValueError):
        cache.set("a", 1, ttl=-1)


def test_overwrite_resets_hits_and_ttl(clock):
    cache = ExpiringCache("test", default_ttl=10, clock=clock)
    cache.set("a", 1)
    cache.get("a")
    clock.advance(8)

    cache.set("a", 2)
    assert cache.get_stats()["total_hits"] == 0

    clock.advance(8)
    # 16 s after the first set but only 8 s after the overwrite
    assert cache.sweep() == 0
    assert cache.get("a") == 2


def test_has_does_not_count_a_hit(clock):
    cache = ExpiringCache("test", default_ttl=10, clock=clock)
    cache.set("a", 1)

    assert cache.has("a")
    assert "a" in cache
    assert cache.get_stats()["total_hits"] == 0

    clock.advance(11)
    assert not cache.has("a")


def test_delete_and_clear(clock):
    cache = ExpiringCache("test", clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.clear()
    assert len(cache) == 0


def test_sweep_evicts_only_stale_entries(clock):
    cache = ExpiringCache("test", default_ttl=10, clock=clock)
    cache.set("old-1", 1)
    cache.set("old-2", 2)
    clock.advance(5)
    cache.set("new", 3)

    clock.advance(6)
    assert cache.sweep() == 2
    assert len(cache) == 1
    assert cache.get("new") == 3


def test_max_entries_evicts_entry_closest_to_expiry(clock):
    cache = ExpiringCache("test", default_ttl=100, max_entries=2, clock=clock)
    cache.set("soon", 1, ttl=5)
    cache.set("later", 2, ttl=50)
    cache.set("latest", 3, ttl=80)

    assert len(cache) == 2
    assert not cache.has("soon")
    assert cache.has("later")
    assert cache.has("latest")


def test_stats_report_size_hits_and_oldest_age(clock):
    cache = ExpiringCache("analysis_cache", default_ttl=100, clock=clock)
    cache.set("a", 1)
    clock.advance(30)
    cache.set("b", 2)
    cache.get("a")
    cache.get("a")
    cache.get("b")

    stats = cache.get_stats()
    assert stats["name"] == "analysis_cache"
    assert stats["size"] == 2
    assert stats["total_hits"] == 3
    assert stats["avg_hit_count"] == 1.5
    assert stats["oldest_entry_age"] == 30


def test_empty_stats(clock):
    stats = ExpiringCache("test", clock=clock).get_stats()
    assert stats["size"] == 0
    assert stats["avg_hit_count"] == 0.0
    assert stats["oldest_entry_age"] is None


@pytest.mark.asyncio
async def test_background_sweeper_evicts_stale_entries(clock):
    cache = ExpiringCache("test", default_ttl=1, sweep_interval=0.01, clock=clock)
    cache.set("a", 1)
    clock.advance(2)

    await cache.start()
    try:
        for _ in range(50):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await cache.stop()

    assert len(cache) == 0
