"""Per-destination batching of spreadsheet writes.

Operations are grouped by ``destination_key``. A group flushes when it holds
``batch_size`` operations or ``max_wait`` seconds after its oldest operation
arrived, whichever comes first. The whole group is handed to one executor call
(typically a submission to the sheets request queue), and every caller waiting
on that group receives the same outcome: no partial success within a flush.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.instrumentation import with_timing
from core.logging import get_logger
from core.metrics import PerformanceRecorder
from .models import BatchedOperation, OperationKind
from .request_queue import mark_exception_retrieved

logger = get_logger(__name__)

BatchExecutor = Callable[[str, List[BatchedOperation]], Awaitable[Any]]


@dataclass
class PendingBatch:
    """Unflushed operations for one destination."""
    destination_key: str
    opened_at: float = field(default_factory=time.monotonic)
    operations: List[BatchedOperation] = field(default_factory=list)
    futures: List[asyncio.Future] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None

    def __len__(self) -> int:
        return len(self.operations)


@dataclass
class MergedBatch:
    """A flushed group split into its combined external calls."""
    destination_key: str
    appends: List[BatchedOperation]
    updates: List[BatchedOperation]
    creates: List[BatchedOperation]

    @classmethod
    def from_operations(cls, destination_key: str,
                        operations: List[BatchedOperation]) -> "MergedBatch":
        return cls(
            destination_key=destination_key,
            appends=[op for op in operations if op.kind == OperationKind.APPEND],
            updates=[op for op in operations if op.kind == OperationKind.UPDATE],
            creates=[op for op in operations if op.kind == OperationKind.CREATE],
        )

    @property
    def append_range(self) -> str:
        """Appends share the range of the first append in the group."""
        return self.appends[0].range if self.appends else ""

    @property
    def append_rows(self) -> List[List[Any]]:
        return [row for op in self.appends for row in op.values]

    @property
    def update_data(self) -> List[Dict[str, Any]]:
        return [{"range": op.range, "values": op.values} for op in self.updates]

    @property
    def size(self) -> int:
        return len(self.appends) + len(self.updates) + len(self.creates)


class RequestBatcher:
    """Accumulates like-typed operations per destination and flushes them together."""

    def __init__(self, name: str, executor: BatchExecutor, batch_size: int = 10,
                 max_wait: float = 3.0, recorder: Optional[PerformanceRecorder] = None):
        """Initialize batcher.

        Args:
            name: Used as metric prefix (e.g. ``sheets``)
            executor: Async callable receiving (destination_key, operations)
            batch_size: Operations per destination that trigger an immediate flush
            max_wait: Seconds after the oldest pending operation before a flush
            recorder: Performance recorder
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self.name = name
        self.executor = executor
        self.batch_size = batch_size
        self.max_wait = max_wait
        self.recorder = recorder if recorder is not None else PerformanceRecorder()
        self._pending: Dict[str, PendingBatch] = {}
        self._flushing: Set[asyncio.Task] = set()
        self._flushes = 0
        self._flushed_operations = 0

    async def queue_operation(self, operation: BatchedOperation) -> Any:
        """Queue an operation and wait for its batch to execute."""
        return await self.submit(operation)

    def submit(self, operation: BatchedOperation) -> asyncio.Future:
        """Queue an operation without waiting. Returns the batch's future."""
        key = operation.destination_key
        batch = self._pending.get(key)
        if batch is None:
            batch = PendingBatch(destination_key=key)
            batch.timer = asyncio.get_running_loop().call_later(
                self.max_wait, self._on_max_wait, key, batch
            )
            self._pending[key] = batch

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(mark_exception_retrieved)
        batch.operations.append(operation)
        batch.futures.append(future)

        if len(batch) >= self.batch_size:
            self._flush(key)
        return future

    def _on_max_wait(self, key: str, batch: PendingBatch) -> None:
        if self._pending.get(key) is batch:
            self._flush(key)

    def _flush(self, key: str) -> Optional[asyncio.Task]:
        batch = self._pending.pop(key, None)
        if batch is None:
            return None
        if batch.timer is not None:
            batch.timer.cancel()

        task = asyncio.create_task(self._execute(batch))
        self._flushing.add(task)
        task.add_done_callback(self._flushing.discard)
        return task

    async def _execute(self, batch: PendingBatch) -> None:
        size = len(batch)
        waited = time.monotonic() - batch.opened_at
        logger.debug("Flushing batch", batcher=self.name,
                     destination=batch.destination_key, size=size,
                     waited_seconds=round(waited, 3))
        try:
            result = await with_timing(
                lambda: self.executor(batch.destination_key, batch.operations),
                f"{self.name}_batch_processing",
                {"batch_size": size},
                recorder=self.recorder,
            )
        except Exception as e:
            self.recorder.record(f"{self.name}_batch_error", 1)
            logger.error("Batch failed", batcher=self.name,
                         destination=batch.destination_key, size=size, error=str(e))
            for future in batch.futures:
                if not future.done():
                    future.set_exception(e)
        else:
            self.recorder.record(f"{self.name}_batch_success", size)
            for future in batch.futures:
                if not future.done():
                    future.set_result(result)
        finally:
            self._flushes += 1
            self._flushed_operations += size

    async def flush_all(self) -> None:
        """Flush every pending group now and wait for the flushes to finish."""
        for key in list(self._pending):
            self._flush(key)
        if self._flushing:
            await asyncio.gather(*list(self._flushing), return_exceptions=True)

    async def stop(self) -> None:
        """Flush what is pending so no accepted operation is silently lost."""
        await self.flush_all()
        logger.info("Batcher stopped", batcher=self.name, flushes=self._flushes)

    @property
    def pending_operations(self) -> int:
        return sum(len(batch) for batch in self._pending.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pending_groups": len(self._pending),
            "pending_operations": self.pending_operations,
            "flushing": len(self._flushing),
            "flushes": self._flushes,
            "flushed_operations": self._flushed_operations,
            "batch_size": self.batch_size,
            "max_wait": self.max_wait,
        }
