"""Health check utilities.

Provides uptime tracking, process resource usage and the cache/queue health
score for the /health and /performance endpoints.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, TYPE_CHECKING

import psutil

if TYPE_CHECKING:
    from core.cache import ExpiringCache
    from core.metrics import PerformanceRecorder
    from services.orchestration import BoundedRequestQueue

# Module-level startup time tracking
_startup_time: float = 0.0

# A queue longer than this counts as backed up
QUEUE_BACKLOG_THRESHOLD = 10


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_memory_mb() -> float:
    """Get current process memory usage in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def get_cpu_percent() -> float:
    """Get current process CPU usage percentage since the previous call."""
    return psutil.Process().cpu_percent(interval=None)


def cache_health(cache: "ExpiringCache", recorder: "PerformanceRecorder") -> float:
    """Hit rate of ``cache`` in the recorder's window; an idle cache scores 1."""
    hits = [m for m in recorder.get_metrics("cache_hit") if m.tags.get("cache") == cache.name]
    misses = [m for m in recorder.get_metrics("cache_miss") if m.tags.get("cache") == cache.name]
    total = len(hits) + len(misses)
    return len(hits) / total if total else 1.0


def queue_health(queue: "BoundedRequestQueue") -> float:
    return 1.0 if queue.queue_length < QUEUE_BACKLOG_THRESHOLD else 0.5


def get_performance_health(
    caches: Iterable["ExpiringCache"],
    queues: Iterable["BoundedRequestQueue"],
    recorder: "PerformanceRecorder",
    threshold: float = 0.7,
) -> Dict[str, Any]:
    """Combine cache and queue health into one score in [0, 1].

    Returns:
        Dict with healthy flag, score and the per-component stats
    """
    caches = list(caches)
    queues = list(queues)

    cache_scores = [cache_health(c, recorder) for c in caches]
    queue_scores = [queue_health(q) for q in queues]
    cache_score = sum(cache_scores) / len(cache_scores) if cache_scores else 1.0
    queue_score = sum(queue_scores) / len(queue_scores) if queue_scores else 1.0
    score = (cache_score + queue_score) / 2

    return {
        "healthy": score > threshold,
        "score": score,
        "cache_stats": {c.name: c.get_stats() for c in caches},
        "queue_stats": {q.name: q.get_stats() for q in queues},
        "monitor_stats": recorder.get_stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def get_health_status(performance: Dict[str, Any]) -> Dict[str, Any]:
    """Liveness payload for the /health endpoint."""
    return {
        "status": "healthy" if performance["healthy"] else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(get_memory_mb(), 1),
        "cpu_percent": round(get_cpu_percent(), 1),
        "score": round(performance["score"], 3),
    }
