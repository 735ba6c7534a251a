"""Cache-aside and timing wrappers."""

import asyncio

import pytest

from core.cache import ExpiringCache
from core.instrumentation import with_cache, with_timing


@pytest.mark.asyncio
async def test_with_cache_invokes_operation_once(recorder):
    cache = ExpiringCache("analysis_cache", default_ttl=60)
    calls = []

    async def compute():
        calls.append(1)
        return {"category": "Task"}

    first = await with_cache("k", compute, cache, recorder=recorder)
    second = await with_cache("k", compute, cache, recorder=recorder)

    assert first == second == {"category": "Task"}
    assert len(calls) == 1
    assert recorder.count("cache_miss") == 1
    assert recorder.count("cache_hit") == 1
    assert recorder.get_metrics("cache_hit")[0].tags == {"key": "k", "cache": "analysis_cache"}


@pytest.mark.asyncio
async def test_with_cache_caches_falsy_results(recorder):
    cache = ExpiringCache("test", default_ttl=60)
    calls = []

    async def compute():
        calls.append(1)
        return None

    await with_cache("k", compute, cache, recorder=recorder)
    await with_cache("k", compute, cache, recorder=recorder)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_with_cache_uses_explicit_ttl(clock, recorder):
    cache = ExpiringCache("test", default_ttl=3600, clock=clock)

    async def compute():
        return "v"

    await with_cache("k", compute, cache, ttl=5, recorder=recorder)
    clock.advance(6)
    assert not cache.has("k")


@pytest.mark.asyncio
async def test_with_cache_does_not_store_failures(recorder):
    cache = ExpiringCache("test", default_ttl=60)

    async def fail():
        raise RuntimeError("collaborator down")

    with pytest.raises(RuntimeError, match="collaborator down"):
        await with_cache("k", fail, cache, recorder=recorder)

    assert not cache.has("k")
    assert recorder.count("cache_error") == 1
    assert recorder.count("cache_miss") == 0


@pytest.mark.asyncio
async def test_concurrent_misses_may_both_compute(recorder):
    cache = ExpiringCache("test", default_ttl=60)
    calls = []

    async def compute():
        calls.append(1)
        await asyncio.sleep(0.01)
        return len(calls)

    await asyncio.gather(
        with_cache("k", compute, cache, recorder=recorder),
        with_cache("k", compute, cache, recorder=recorder),
    )
    assert len(calls) == 2
    assert cache.has("k")


@pytest.mark.asyncio
async def test_with_timing_records_duration(recorder):
    async def work():
        await asyncio.sleep(0.01)
        return 42

    result = await with_timing(work, "claude_analysis_duration", {"category": "Task"},
                               recorder=recorder)

    assert result == 42
    [metric] = recorder.get_metrics("claude_analysis_duration")
    assert metric.value >= 5
    assert metric.tags == {"category": "Task"}


@pytest.mark.asyncio
async def test_with_timing_records_error_and_reraises(recorder):
    async def fail():
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await with_timing(fail, "sheets_batch_processing", recorder=recorder)

    assert recorder.count("sheets_batch_processing") == 0
    assert recorder.count("sheets_batch_processing_error") == 1


@pytest.mark.asyncio
async def test_wrappers_compose(recorder):
    cache = ExpiringCache("test", default_ttl=60)

    async def compute():
        return "fresh"

    for _ in range(2):
        result = await with_timing(
            lambda: with_cache("k", compute, cache, recorder=recorder),
            "lookup_duration",
            recorder=recorder,
        )
        assert result == "fresh"

    assert recorder.count("lookup_duration") == 2
    assert recorder.count("cache_hit") == 1
