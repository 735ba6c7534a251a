"""Cache-aside and timing wrappers for async operations.

Both helpers observe and re-raise: neither catches-and-hides a failure.

Usage:
    result = await with_timing(
        lambda: with_cache(key, fetch, cache, ttl=60, recorder=recorder),
        "lookup_duration",
        recorder=recorder,
    )
"""

import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from core.cache import ExpiringCache
from core.logging import get_logger, log_execution_time
from core.metrics import PerformanceRecorder

logger = get_logger(__name__)

T = TypeVar("T")

SLOW_OPERATION_THRESHOLD_MS = 5000.0

_MISSING = object()


async def with_cache(key: str, operation: Callable[[], Awaitable[T]],
                     cache: ExpiringCache, ttl: Optional[float] = None,
                     recorder: Optional[PerformanceRecorder] = None) -> T:
    """Return the cached value for ``key`` or compute, store and return it.

    Concurrent misses on the same key may each invoke ``operation``; the last
    result stored wins. Failures are not cached.
    """
    cached = cache.get(key, _MISSING)
    if cached is not _MISSING:
        if recorder is not None:
            recorder.record("cache_hit", 1, {"key": key, "cache": cache.name})
        return cached

    try:
        result = await operation()
    except Exception:
        if recorder is not None:
            recorder.record("cache_error", 1, {"key": key, "cache": cache.name})
        raise

    cache.set(key, result, ttl)
    if recorder is not None:
        recorder.record("cache_miss", 1, {"key": key, "cache": cache.name})
    return result


async def with_timing(operation: Callable[[], Awaitable[T]], metric_name: str,
                      tags: Optional[Dict[str, Any]] = None,
                      recorder: Optional[PerformanceRecorder] = None) -> T:
    """Record the wall-clock duration (ms) of ``operation`` under ``metric_name``.

    Failures are recorded as ``<metric_name>_error`` and re-raised unchanged.
    """
    start = time.perf_counter()
    try:
        result = await operation()
    except BaseException:
        duration_ms = (time.perf_counter() - start) * 1000
        if recorder is not None:
            recorder.record(f"{metric_name}_error", duration_ms, tags)
        raise

    duration_ms = (time.perf_counter() - start) * 1000
    if recorder is not None:
        recorder.record(metric_name, duration_ms, tags)
    log_execution_time(logger, metric_name, duration_ms,
                       slow_threshold_ms=SLOW_OPERATION_THRESHOLD_MS)
    return result
