"""Dead letter sink for requests dropped after exhausting their retries.

Optional: when disabled the queue still drops the request and records a
terminal-failure metric, but nothing is kept for inspection.

Usage:
    from services.orchestration.dead_letter import create_dead_letter_sink

    sink = create_dead_letter_sink(enabled=settings.dead_letter_enabled,
                                   capacity=settings.dead_letter_capacity)
    sink.add(DeadLetter.from_request("webhook", request, error))
"""

from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol

from core.logging import get_logger
from .models import DeadLetter

logger = get_logger(__name__)


class DeadLetterSinkProtocol(Protocol):
    """Protocol for dead letter sinks (enables duck typing)."""

    def add(self, entry: DeadLetter) -> bool:
        """Store a terminally failed request."""
        ...

    def entries(self, queue: Optional[str] = None) -> List[DeadLetter]:
        ...

    def clear(self, queue: Optional[str] = None) -> int:
        """Purge entries, optionally for one queue only. Returns the count."""
        ...

    def get_stats(self) -> Dict[str, Any]:
        ...

    @property
    def enabled(self) -> bool:
        ...


class NullDeadLetterLog:
    """No-op sink when dead letters are disabled (Null Object pattern)."""

    @property
    def enabled(self) -> bool:
        return False

    def add(self, entry: DeadLetter) -> bool:
        logger.debug("Dead letters disabled, dropping entry",
                     queue=entry.queue, request_id=entry.request_id)
        return True

    def entries(self, queue: Optional[str] = None) -> List[DeadLetter]:
        return []

    def clear(self, queue: Optional[str] = None) -> int:
        return 0

    def get_stats(self) -> Dict[str, Any]:
        return {"enabled": False, "size": 0}


class DeadLetterLog:
    """Bounded in-memory log of terminally failed requests, newest last."""

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self._entries: Deque[DeadLetter] = deque(maxlen=capacity)
        self._total = 0

    @property
    def enabled(self) -> bool:
        return True

    def add(self, entry: DeadLetter) -> bool:
        self._entries.append(entry)
        self._total += 1
        logger.info("Request added to dead letters",
                    entry_id=entry.id,
                    queue=entry.queue,
                    request_id=entry.request_id,
                    retries=entry.retries)
        return True

    def entries(self, queue: Optional[str] = None) -> List[DeadLetter]:
        return [e for e in self._entries if queue is None or e.queue == queue]

    def clear(self, queue: Optional[str] = None) -> int:
        if queue is None:
            cleared = len(self._entries)
            self._entries.clear()
        else:
            kept = [e for e in self._entries if e.queue != queue]
            cleared = len(self._entries) - len(kept)
            self._entries = deque(kept, maxlen=self.capacity)
        logger.info("Dead letters purged", queue=queue or "all", count=cleared)
        return cleared

    def get_stats(self) -> Dict[str, Any]:
        by_queue: Dict[str, int] = {}
        for entry in self._entries:
            by_queue[entry.queue] = by_queue.get(entry.queue, 0) + 1
        return {
            "enabled": True,
            "size": len(self._entries),
            "capacity": self.capacity,
            "total": self._total,
            "by_queue": by_queue,
        }


def create_dead_letter_sink(enabled: bool = True, capacity: int = 500) -> DeadLetterSinkProtocol:
    """Factory returning DeadLetterLog if enabled, NullDeadLetterLog otherwise."""
    if enabled:
        logger.info("Dead letters enabled", capacity=capacity)
        return DeadLetterLog(capacity)
    logger.debug("Dead letters disabled")
    return NullDeadLetterLog()
