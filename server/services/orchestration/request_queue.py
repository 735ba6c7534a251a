"""Priority-ordered, retry-capable worker pool for external calls.

A supervisor task per queue waits for work, takes a slot from a semaphore gate
of size ``max_concurrent`` and starts the highest-priority, earliest request as
its own task. A finished request releases its slot so the next one is
dispatched immediately, without polling.

Ordering within a band is FIFO by enqueue time. A failed request that is
retried goes back to the *front* of its band once its backoff elapses so it is
not starved by fresh work of the same priority.

Subclasses implement ``process_request`` only:

    class WebhookQueue(BoundedRequestQueue):
        async def process_request(self, request):
            response = await self.client.post(request.payload["url"], ...)
            response.raise_for_status()
"""

import asyncio
from collections import deque
from typing import Any, Deque, Dict, Optional, Set

from core.logging import get_logger, log_queue_event
from core.metrics import PerformanceRecorder
from .dead_letter import DeadLetterSinkProtocol, NullDeadLetterLog
from .errors import QueueStoppedError, TerminalFailure, is_transient
from .models import PRIORITY_ORDER, DeadLetter, Priority, QueuedRequest, RetryPolicy

logger = get_logger(__name__)


def mark_exception_retrieved(future: asyncio.Future) -> None:
    """Done callback so fire-and-forget futures do not warn when they fail.

    Failures are already logged and recorded by whoever settles the future.
    """
    if not future.cancelled():
        future.exception()


class BoundedRequestQueue:
    """Executes at most ``max_concurrent`` requests at once with bounded retry."""

    def __init__(self, name: str, max_concurrent: int = 3,
                 timeout: Optional[float] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 recorder: Optional[PerformanceRecorder] = None,
                 dead_letters: Optional[DeadLetterSinkProtocol] = None):
        """Initialize queue.

        Args:
            name: Destination class (analysis, sheets, webhook); prefixes metrics
            max_concurrent: Maximum simultaneously executing requests
            timeout: Per-call timeout in seconds; a timeout counts as transient
            retry_policy: Backoff configuration
            recorder: Performance recorder for queue metrics
            dead_letters: Sink for requests dropped after exhausting retries
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

        self.name = name
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.recorder = recorder if recorder is not None else PerformanceRecorder()
        self.dead_letters = dead_letters if dead_letters is not None else NullDeadLetterLog()

        self._bands: Dict[Priority, Deque[QueuedRequest]] = {p: deque() for p in PRIORITY_ORDER}
        self._futures: Dict[str, asyncio.Future] = {}
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._gate = asyncio.Semaphore(max_concurrent)
        self._work_available = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._supervisor: Optional[asyncio.Task] = None
        self._running = False

        self._active = 0
        self._peak_active = 0
        self._processed = 0
        self._failed = 0
        self._retried = 0

    # =========================================================================
    # EXTERNAL CALL (override)
    # =========================================================================

    async def process_request(self, request: QueuedRequest) -> Any:
        """Perform the external call for ``request``. Raise to signal failure."""
        raise NotImplementedError

    def on_retry(self, request: QueuedRequest, error: BaseException, delay: float) -> None:
        """Hook called when a failed request is scheduled for retry."""

    def on_terminal_failure(self, request: QueuedRequest, error: BaseException) -> None:
        """Hook called when a request is dropped (retries exhausted or permanent)."""

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the supervisor task."""
        if self._running:
            return
        self._start_supervisor()
        logger.info("Request queue started", queue=self.name,
                    max_concurrent=self.max_concurrent, timeout=self.timeout)

    def _start_supervisor(self) -> None:
        self._running = True
        self._supervisor = asyncio.create_task(self._supervise())

    async def stop(self) -> None:
        """Stop dispatching, cancel in-flight work and pending retries.

        Requests that have not settled are failed with QueueStoppedError.
        """
        self._running = False

        if self._supervisor:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None

        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for band in self._bands.values():
            band.clear()
        for future in list(self._futures.values()):
            if not future.done():
                future.set_exception(QueueStoppedError(f"{self.name} queue stopped"))
        self._futures.clear()
        self._idle.set()
        logger.info("Request queue stopped", queue=self.name)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every accepted request has settled.

        Returns:
            True if the queue became idle, False on timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def add(self, request: QueuedRequest) -> asyncio.Future:
        """Insert a request and return immediately.

        Returns:
            Future resolved with the result of ``process_request`` or failed
            with the permanent error / TerminalFailure that dropped the request.
            Callers on detached paths may ignore it.
        """
        if request.id in self._futures:
            raise ValueError(f"Request {request.id} is already queued")

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(mark_exception_retrieved)
        self._futures[request.id] = future
        self._bands[request.priority].append(request)
        self._idle.clear()
        self._work_available.set()

        if not self._running:
            self._start_supervisor()

        self.recorder.record(f"{self.name}_queued", 1, {"priority": request.priority.value})
        log_queue_event(logger, self.name, "queued", request.id,
                        priority=request.priority.value, queue_length=self.queue_length)
        return future

    async def submit(self, payload: Any, priority: Priority = Priority.MEDIUM,
                     max_retries: int = 3) -> Any:
        """Enqueue ``payload`` and wait for its result."""
        return await self.add(QueuedRequest(payload=payload, priority=priority,
                                            max_retries=max_retries))

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def _supervise(self) -> None:
        """Dispatch loop: one slot from the gate per started request."""
        while self._running:
            await self._gate.acquire()
            try:
                request = await self._next_request()
            except BaseException:
                self._gate.release()
                raise
            task = asyncio.create_task(self._execute(request))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _next_request(self) -> QueuedRequest:
        while True:
            request = self._pop()
            if request is not None:
                return request
            self._work_available.clear()
            await self._work_available.wait()

    def _pop(self) -> Optional[QueuedRequest]:
        for priority in PRIORITY_ORDER:
            band = self._bands[priority]
            if band:
                return band.popleft()
        return None

    async def _execute(self, request: QueuedRequest) -> None:
        self._active += 1
        self._peak_active = max(self._peak_active, self._active)
        log_queue_event(logger, self.name, "dispatched", request.id,
                        attempt=request.attempt, active=self._active)
        try:
            if self.timeout is not None:
                result = await asyncio.wait_for(self.process_request(request), self.timeout)
            else:
                result = await self.process_request(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_failure(request, e)
        else:
            self._processed += 1
            self.recorder.record(f"{self.name}_processed", 1, {"attempt": str(request.attempt)})
            self._settle(request, result=result)
        finally:
            self._active -= 1
            self._gate.release()

    # =========================================================================
    # FAILURE HANDLING
    # =========================================================================

    def _handle_failure(self, request: QueuedRequest, error: Exception) -> None:
        request.last_error = str(error) or type(error).__name__
        transient = is_transient(error)

        if transient and request.retries < request.max_retries:
            request.retries += 1
            delay = self.retry_policy.calculate_delay(request.retries)
            self._retry_handles[request.id] = asyncio.get_running_loop().call_later(
                delay, self._requeue, request
            )
            self._retried += 1
            self.recorder.record(f"{self.name}_retry_scheduled", 1, {
                "attempt": str(request.retries),
                "delay": str(delay),
            })
            logger.warning("Request failed, retry scheduled",
                           queue=self.name, request_id=request.id,
                           retries=request.retries, max_retries=request.max_retries,
                           delay=delay, error=request.last_error)
            self.on_retry(request, error, delay)
            return

        self._failed += 1
        if transient:
            failure: Exception = TerminalFailure(self.name, request.id, request.retries, error)
            failure.__cause__ = error
            self.recorder.record(f"{self.name}_terminal_failure", 1,
                                 {"priority": request.priority.value})
            self.dead_letters.add(DeadLetter.from_request(self.name, request, error))
            logger.error("Request dropped after exhausting retries",
                         queue=self.name, request_id=request.id,
                         retries=request.retries, error=request.last_error)
        else:
            failure = error
            self.recorder.record(f"{self.name}_permanent_failure", 1,
                                 {"error": type(error).__name__})
            logger.warning("Request failed permanently",
                           queue=self.name, request_id=request.id,
                           error=request.last_error)

        self.on_terminal_failure(request, error)
        self._settle(request, error=failure)

    def _requeue(self, request: QueuedRequest) -> None:
        """Put a retried request back at the front of its band."""
        self._retry_handles.pop(request.id, None)
        if request.id not in self._futures:
            return
        self._bands[request.priority].appendleft(request)
        self._work_available.set()
        log_queue_event(logger, self.name, "requeued", request.id, retries=request.retries)

    def _settle(self, request: QueuedRequest, result: Any = None,
                error: Optional[BaseException] = None) -> None:
        future = self._futures.pop(request.id, None)
        if future is not None and not future.done():
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)
        if not self._futures:
            self._idle.set()

    # =========================================================================
    # STATS
    # =========================================================================

    @property
    def queue_length(self) -> int:
        return sum(len(band) for band in self._bands.values())

    @property
    def active(self) -> int:
        return self._active

    @property
    def settled(self) -> int:
        """Requests that finished, successfully or not."""
        return self._processed + self._failed

    @property
    def pending(self) -> int:
        """Accepted requests not yet settled (queued, in flight or awaiting retry)."""
        return len(self._futures)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "queue_length": self.queue_length,
            "bands": {p.value: len(self._bands[p]) for p in PRIORITY_ORDER},
            "processing": self._active,
            "max_concurrent": self.max_concurrent,
            "peak_concurrency": self._peak_active,
            "retry_pending": len(self._retry_handles),
            "processed": self._processed,
            "failed": self._failed,
            "retried": self._retried,
            "timeout": self.timeout,
            "retry_policy": self.retry_policy.to_dict(),
        }
