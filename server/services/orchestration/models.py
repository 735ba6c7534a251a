"""Orchestration state models.

Queued requests, batched spreadsheet operations, retry policy and dead-letter
records. ``DeadLetter.to_dict`` and ``RetryPolicy.to_dict`` feed the
performance endpoints.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Priority(str, Enum):
    """Queue priority bands, highest first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Dispatch order for the queue's bands
PRIORITY_ORDER = (Priority.HIGH, Priority.MEDIUM, Priority.LOW)


class OperationKind(str, Enum):
    """Spreadsheet write operations accepted by the batcher."""
    APPEND = "append"   # merged into one multi-row append per destination
    UPDATE = "update"   # merged into one multi-range batch update
    CREATE = "create"   # executed individually


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class RetryPolicy:
    """Exponential backoff configuration.

    Delay before the k-th retry: min(base_delay * 2 ** k, max_delay)
    """
    base_delay: float = 1.0       # seconds
    max_delay: float = 60.0       # seconds
    multiplier: float = 2.0

    def calculate_delay(self, retries: int) -> float:
        """Delay before retry number ``retries`` (1-indexed, already incremented)."""
        delay = self.base_delay * (self.multiplier ** retries)
        return min(delay, self.max_delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "multiplier": self.multiplier,
        }


@dataclass
class QueuedRequest:
    """A unit of work for a BoundedRequestQueue.

    ``retries`` is only mutated by the queue's failure handler and never
    exceeds ``max_retries``.
    """
    payload: Any
    priority: Priority = Priority.MEDIUM
    max_retries: int = 3
    id: str = field(default_factory=lambda: _new_id("req"))
    enqueued_at: float = field(default_factory=time.time)
    retries: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        self.priority = Priority(self.priority)
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0 <= self.retries <= self.max_retries:
            raise ValueError("retries must be between 0 and max_retries")

    @property
    def attempt(self) -> int:
        """1-indexed attempt number of the next (or current) execution."""
        return self.retries + 1


@dataclass
class BatchedOperation:
    """A spreadsheet write waiting to be merged with others for one destination.

    ``options`` carries kind-specific extras (e.g. the title and headers of a
    spreadsheet to create).
    """
    destination_key: str
    kind: OperationKind
    values: List[List[Any]] = field(default_factory=list)
    range: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _new_id("op"))
    enqueued_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.kind = OperationKind(self.kind)


@dataclass
class DeadLetter:
    """A request dropped after exhausting its retry budget."""
    queue: str
    request_id: str
    priority: str
    error: str
    retries: int
    payload: Any = None
    id: str = field(default_factory=lambda: _new_id("dlq"))
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_request(cls, queue: str, request: QueuedRequest, error: BaseException) -> "DeadLetter":
        return cls(
            queue=queue,
            request_id=request.id,
            priority=request.priority.value,
            error=str(error) or type(error).__name__,
            retries=request.retries,
            payload=request.payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "request_id": self.request_id,
            "priority": self.priority,
            "error": self.error,
            "retries": self.retries,
            "created_at": self.created_at,
        }
