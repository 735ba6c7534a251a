"""Request orchestration package.

Coordinates calls to slow, rate-limited external collaborators:
- Priority queues with bounded concurrency and exponential-backoff retry
- Per-destination batching of spreadsheet writes
- Dead letters for requests that exhaust their retries
"""

from .models import (
    Priority,
    PRIORITY_ORDER,
    OperationKind,
    RetryPolicy,
    QueuedRequest,
    BatchedOperation,
    DeadLetter,
)
from .errors import (
    OrchestrationError,
    TransientError,
    PermanentError,
    CircuitOpenError,
    QueueStoppedError,
    TerminalFailure,
    is_transient,
)
from .request_queue import BoundedRequestQueue, mark_exception_retrieved
from .batcher import RequestBatcher, MergedBatch, PendingBatch
from .dead_letter import (
    DeadLetterLog,
    NullDeadLetterLog,
    DeadLetterSinkProtocol,
    create_dead_letter_sink,
)

__all__ = [
    # Models
    "Priority",
    "PRIORITY_ORDER",
    "OperationKind",
    "RetryPolicy",
    "QueuedRequest",
    "BatchedOperation",
    "DeadLetter",
    # Errors
    "OrchestrationError",
    "TransientError",
    "PermanentError",
    "CircuitOpenError",
    "QueueStoppedError",
    "TerminalFailure",
    "is_transient",
    # Queue
    "BoundedRequestQueue",
    "mark_exception_retrieved",
    # Batcher
    "RequestBatcher",
    "MergedBatch",
    "PendingBatch",
    # Dead letters
    "DeadLetterLog",
    "NullDeadLetterLog",
    "DeadLetterSinkProtocol",
    "create_dead_letter_sink",
]
