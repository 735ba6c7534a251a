"""Bounded request queue: priority, concurrency, retry and terminal failure."""

import asyncio
import time

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from services.orchestration import (
    BoundedRequestQueue,
    DeadLetterLog,
    PermanentError,
    Priority,
    QueuedRequest,
    QueueStoppedError,
    RetryPolicy,
    TerminalFailure,
    TransientError,
    is_transient,
)


class ScriptedQueue(BoundedRequestQueue):
    """Queue whose external call is a test-supplied coroutine function."""

    def __init__(self, handler, **kwargs):
        super().__init__("test", **kwargs)
        self.handler = handler

    async def process_request(self, request):
        return await self.handler(request)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://hooks.example.com/task")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


# =============================================================================
# RETRY POLICY / CLASSIFICATION
# =============================================================================

def test_backoff_doubles_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
    assert policy.calculate_delay(1) == 2.0
    assert policy.calculate_delay(2) == 4.0
    assert policy.calculate_delay(3) == 8.0
    assert policy.calculate_delay(10) == 60.0


def test_queued_request_validates_retries():
    with pytest.raises(ValueError):
        QueuedRequest(payload=None, max_retries=-1)
    with pytest.raises(ValueError):
        QueuedRequest(payload=None, max_retries=1, retries=2)
    assert QueuedRequest(payload=None, priority="high").priority is Priority.HIGH


@pytest.mark.parametrize("error, expected", [
    (TransientError("rate limited"), True),
    (PermanentError("bad payload"), False),
    (asyncio.TimeoutError(), True),
    (httpx.ConnectError("refused"), True),
    (_status_error(429), True),
    (_status_error(503), True),
    (_status_error(400), False),
    (_status_error(404), False),
    (HttpError(httplib2.Response({"status": "500"}), b""), True),
    (HttpError(httplib2.Response({"status": "403"}), b""), False),
    (ValueError("bug"), False),
])
def test_is_transient(error, expected):
    assert is_transient(error) is expected


# =============================================================================
# DISPATCH
# =============================================================================

@pytest.mark.asyncio
async def test_priority_order_with_fifo_within_band():
    started = asyncio.Event()
    release = asyncio.Event()
    order = []

    async def handler(request):
        if request.payload == "blocker":
            started.set()
            await release.wait()
        order.append(request.payload)
        return request.payload

    queue = ScriptedQueue(handler, max_concurrent=1)
    first = queue.add(QueuedRequest("blocker"))
    await started.wait()

    futures = [
        queue.add(QueuedRequest("low-1", priority=Priority.LOW)),
        queue.add(QueuedRequest("medium-1", priority=Priority.MEDIUM)),
        queue.add(QueuedRequest("high-1", priority=Priority.HIGH)),
        queue.add(QueuedRequest("medium-2", priority=Priority.MEDIUM)),
    ]
    assert queue.get_stats()["bands"] == {"high": 1, "medium": 2, "low": 1}

    release.set()
    await asyncio.gather(first, *futures)
    await queue.stop()

    assert order == ["blocker", "high-1", "medium-1", "medium-2", "low-1"]


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit():
    active = 0
    peak = 0

    async def handler(request):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return request.payload * 2

    queue = ScriptedQueue(handler, max_concurrent=3)
    results = await asyncio.gather(*(queue.add(QueuedRequest(i)) for i in range(10)))
    await queue.stop()

    assert results == [i * 2 for i in range(10)]
    assert peak == 3
    assert queue.get_stats()["peak_concurrency"] == 3
    assert queue.get_stats()["processed"] == 10


@pytest.mark.asyncio
async def test_submit_waits_for_result(recorder):
    async def handler(request):
        return f"done:{request.payload}"

    queue = ScriptedQueue(handler, recorder=recorder)
    assert await queue.submit("x", priority=Priority.HIGH) == "done:x"
    await queue.stop()

    assert recorder.count("test_queued") == 1
    assert recorder.count("test_processed") == 1


@pytest.mark.asyncio
async def test_duplicate_request_id_is_rejected():
    gate = asyncio.Event()

    async def handler(request):
        await gate.wait()

    queue = ScriptedQueue(handler)
    request = QueuedRequest("x")
    queue.add(request)
    with pytest.raises(ValueError):
        queue.add(request)

    gate.set()
    assert await queue.drain(timeout=1)
    await queue.stop()


# =============================================================================
# FAILURE HANDLING
# =============================================================================

@pytest.mark.asyncio
async def test_transient_failures_are_retried(recorder, fast_retry):
    attempts = []

    async def handler(request):
        attempts.append(request.attempt)
        if len(attempts) < 3:
            raise TransientError("temporarily unavailable")
        return "ok"

    queue = ScriptedQueue(handler, retry_policy=fast_retry, recorder=recorder)
    request = QueuedRequest("x", max_retries=3)
    result = await queue.add(request)
    await queue.stop()

    assert result == "ok"
    assert attempts == [1, 2, 3]
    assert request.retries == 2
    assert recorder.count("test_retry_scheduled") == 2
    assert queue.get_stats()["retried"] == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_terminal_failure(recorder, fast_retry):
    calls = []
    dead_letters = DeadLetterLog(capacity=10)

    async def handler(request):
        calls.append(1)
        raise TransientError("still down")

    queue = ScriptedQueue(handler, retry_policy=fast_retry, recorder=recorder,
                          dead_letters=dead_letters)
    request = QueuedRequest("x", max_retries=2)

    with pytest.raises(TerminalFailure) as exc_info:
        await queue.add(request)
    await queue.stop()

    assert len(calls) == 3
    assert exc_info.value.retries == 2
    assert isinstance(exc_info.value.cause, TransientError)
    assert recorder.count("test_terminal_failure") == 1

    [entry] = dead_letters.entries("test")
    assert entry.request_id == request.id
    assert entry.retries == 2


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(recorder, fast_retry):
    calls = []

    async def handler(request):
        calls.append(1)
        raise PermanentError("malformed payload")

    queue = ScriptedQueue(handler, retry_policy=fast_retry, recorder=recorder)
    with pytest.raises(PermanentError, match="malformed payload"):
        await queue.add(QueuedRequest("x", max_retries=3))
    await queue.stop()

    assert len(calls) == 1
    assert recorder.count("test_permanent_failure") == 1
    assert recorder.count("test_retry_scheduled") == 0


@pytest.mark.asyncio
async def test_timeout_counts_as_transient(fast_retry):
    async def handler(request):
        await asyncio.sleep(1)

    queue = ScriptedQueue(handler, timeout=0.01, retry_policy=fast_retry)
    with pytest.raises(TerminalFailure) as exc_info:
        await queue.add(QueuedRequest("x", max_retries=1))
    await queue.stop()

    assert isinstance(exc_info.value.cause, asyncio.TimeoutError)


@pytest.mark.asyncio
async def test_retried_request_returns_to_front_of_its_band():
    order = []

    async def handler(request):
        order.append(request.payload)
        if request.payload == "a" and request.retries == 0:
            raise TransientError("blip")
        if request.payload == "b":
            # hold the only slot until "a" is back in the queue behind c, d, e
            while queue.get_stats()["retry_pending"]:
                await asyncio.sleep(0.001)
        return request.payload

    queue = ScriptedQueue(handler, max_concurrent=1,
                          retry_policy=RetryPolicy(base_delay=0.001, max_delay=0.01))
    futures = [queue.add(QueuedRequest(name)) for name in "abcde"]
    await asyncio.gather(*futures)
    await queue.stop()

    assert order == ["a", "b", "a", "c", "d", "e"]


@pytest.mark.asyncio
async def test_retry_waits_grow_exponentially():
    attempted_at = []

    async def handler(request):
        attempted_at.append(time.monotonic())
        if len(attempted_at) < 3:
            raise TransientError("still warming up")
        return "ok"

    policy = RetryPolicy(base_delay=0.02, max_delay=1.0)
    queue = ScriptedQueue(handler, retry_policy=policy)
    assert await queue.add(QueuedRequest("x", max_retries=3)) == "ok"
    await queue.stop()

    gaps = [later - earlier for earlier, later in zip(attempted_at, attempted_at[1:])]
    for retry, gap in enumerate(gaps, start=1):
        expected = policy.base_delay * 2 ** retry
        assert expected * 0.9 <= gap < expected + 0.05
    assert gaps[1] > gaps[0] * 1.5


@pytest.mark.asyncio
async def test_failure_does_not_block_other_requests(fast_retry):
    async def handler(request):
        if request.payload == "bad":
            raise PermanentError("bad")
        return request.payload

    queue = ScriptedQueue(handler, max_concurrent=1, retry_policy=fast_retry)
    bad = queue.add(QueuedRequest("bad"))
    good = queue.add(QueuedRequest("good"))

    results = await asyncio.gather(bad, good, return_exceptions=True)
    await queue.stop()

    assert isinstance(results[0], PermanentError)
    assert results[1] == "good"


# =============================================================================
# LIFECYCLE
# =============================================================================

@pytest.mark.asyncio
async def test_stop_fails_unsettled_requests():
    never = asyncio.Event()
    started = asyncio.Event()

    async def handler(request):
        started.set()
        await never.wait()

    queue = ScriptedQueue(handler, max_concurrent=1)
    in_flight = queue.add(QueuedRequest("a"))
    waiting = queue.add(QueuedRequest("b"))
    await started.wait()

    await queue.stop()

    for future in (in_flight, waiting):
        with pytest.raises(QueueStoppedError):
            await future
    assert queue.queue_length == 0


@pytest.mark.asyncio
async def test_drain_times_out_while_work_is_pending():
    never = asyncio.Event()

    async def handler(request):
        await never.wait()

    queue = ScriptedQueue(handler)
    queue.add(QueuedRequest("a"))

    assert await queue.drain(timeout=0.02) is False
    await queue.stop()
    assert await queue.drain(timeout=0.02) is True
