"""In-process expiring cache with per-entry TTL and hit counting.

One instance exists per logical purpose (analysis results, sheet metadata,
webhook responses), each wired as a singleton by the container. Entries carry
their own TTL so producers with different freshness needs share one mechanism.
A background sweeper evicts stale entries so memory stays bounded independent
of read traffic.
"""

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """A cached value and its freshness bookkeeping."""
    value: V
    stored_at: float
    ttl: float
    hit_count: int = 0
    seq: int = 0

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_stale(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class ExpiringCache(Generic[V]):
    """Key/value store with per-entry TTL, hit counts and a background sweep.

    Expiry is tracked in a min-heap of ``(expires_at, seq, key)`` tuples. Heap
    items are invalidated lazily: an overwrite bumps the entry's ``seq`` so the
    old tuple no longer matches and is discarded when it reaches the top.
    """

    def __init__(self, name: str, default_ttl: float = 3600.0,
                 sweep_interval: float = 300.0,
                 max_entries: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize cache.

        Args:
            name: Logical purpose, used in logs and stats
            default_ttl: TTL in seconds when ``set`` is called without one
            sweep_interval: Seconds between background sweeps
            max_entries: Optional bound; the entry closest to expiry is evicted
            clock: Monotonic time source in seconds
        """
        self.name = name
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._expiry_heap: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    # =========================================================================
    # KEY OPERATIONS
    # =========================================================================

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        """Store a value, overwriting any existing entry and resetting hits."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl < 0:
            raise ValueError("ttl must be non-negative")

        entry = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl, seq=next(self._seq))
        self._entries[key] = entry
        heapq.heappush(self._expiry_heap, (entry.expires_at, entry.seq, key))
        log_cache_operation(logger, "set", key, cache=self.name, ttl=ttl)

        if self.max_entries is not None and len(self._entries) > self.max_entries:
            self._evict_soonest()
        self._maybe_compact()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value if fresh (counting a hit), else evict and return default."""
        entry = self._entries.get(key)
        if entry is None:
            log_cache_operation(logger, "get", key, hit=False, cache=self.name)
            return default

        if entry.is_stale(self._clock()):
            del self._entries[key]
            log_cache_operation(logger, "get", key, hit=False, cache=self.name, expired=True)
            return default

        entry.hit_count += 1
        log_cache_operation(logger, "get", key, hit=True, cache=self.name)
        return entry.value

    def has(self, key: str) -> bool:
        """Freshness check without counting a hit; stale entries are evicted."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_stale(self._clock()):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        """Remove a key. Returns whether it was present."""
        deleted = self._entries.pop(key, None) is not None
        log_cache_operation(logger, "delete", key, cache=self.name, deleted=deleted)
        return deleted

    def clear(self) -> None:
        """Remove every entry."""
        self._entries.clear()
        self._expiry_heap.clear()

    # =========================================================================
    # EXPIRY
    # =========================================================================

    def sweep(self) -> int:
        """Evict all stale entries. Returns the number evicted."""
        now = self._clock()
        evicted = 0
        heap = self._expiry_heap
        while heap and heap[0][0] < now:
            _, seq, key = heapq.heappop(heap)
            entry = self._entries.get(key)
            if entry is not None and entry.seq == seq and entry.is_stale(now):
                del self._entries[key]
                evicted += 1
        return evicted

    def _evict_soonest(self) -> None:
        """Evict the live entry with the earliest expiry."""
        heap = self._expiry_heap
        while heap:
            _, seq, key = heapq.heappop(heap)
            entry = self._entries.get(key)
            if entry is not None and entry.seq == seq:
                del self._entries[key]
                logger.debug("Cache entry evicted for capacity", cache=self.name, cache_key=key)
                return

    def _maybe_compact(self) -> None:
        """Rebuild the heap once superseded tuples outnumber live entries."""
        if len(self._expiry_heap) <= 2 * len(self._entries) + 64:
            return
        self._expiry_heap = [
            (entry.expires_at, entry.seq, key) for key, entry in self._entries.items()
        ]
        heapq.heapify(self._expiry_heap)

    # =========================================================================
    # BACKGROUND SWEEP
    # =========================================================================

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            logger.warning("Cache sweeper already running", cache=self.name)
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Cache sweeper started", cache=self.name,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the background sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cache sweeper stopped", cache=self.name)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                evicted = self.sweep()
                if evicted:
                    logger.debug("Cache sweep evicted entries", cache=self.name,
                                 evicted=evicted, size=len(self._entries))
            except Exception as e:
                logger.error("Cache sweep failed", cache=self.name, error=str(e))

    # =========================================================================
    # STATS
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Size, total and average hits, and age of the oldest entry in seconds."""
        entries = list(self._entries.values())
        total_hits = sum(entry.hit_count for entry in entries)
        now = self._clock()
        return {
            "name": self.name,
            "size": len(entries),
            "total_hits": total_hits,
            "avg_hit_count": total_hits / len(entries) if entries else 0.0,
            "oldest_entry_age": max(now - entry.stored_at for entry in entries) if entries else None,
        }
