"""Webhook queue, circuit breaker and service against a mock transport."""

import asyncio
import hashlib
import hmac
import json

import httpx
import pytest

from core.cache import ExpiringCache
from core.config import Settings
from services.orchestration import (
    CircuitOpenError,
    DeadLetterLog,
    PermanentError,
    Priority,
    TerminalFailure,
)
from services.webhooks import (
    CircuitBreaker,
    CircuitState,
    WebhookQueue,
    WebhookService,
    _priority_from_payload,
    create_circuit_breaker,
    sanitize_url,
)

TASK_URL = "https://hooks.example.com/task?token=secret"


def make_service(handler, recorder, fast_retry, breaker=None, urls=None, **settings_overrides):
    settings = Settings(
        _env_file=None,
        webhook_urls=urls or {"Task": TASK_URL, "Goal": "https://hooks.example.com/goal"},
        **settings_overrides,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    queue = WebhookQueue(client, circuit_breaker=breaker, retry_policy=fast_retry,
                         recorder=recorder, dead_letters=DeadLetterLog())
    cache = ExpiringCache("webhook_cache", default_ttl=180)
    return WebhookService(queue, cache, recorder, settings)


# =============================================================================
# HELPERS
# =============================================================================

def test_sanitize_url_drops_query_string():
    assert sanitize_url(TASK_URL) == "hooks.example.com/task"
    assert sanitize_url("not a url") == "invalid-url"


def test_priority_from_payload():
    assert _priority_from_payload({"priority": "HIGH"}) is Priority.HIGH
    assert _priority_from_payload({"priority": "urgent"}) is Priority.MEDIUM
    assert _priority_from_payload({}) is Priority.MEDIUM


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

def test_circuit_opens_after_threshold_and_half_opens_after_reset(clock):
    breaker = CircuitBreaker(threshold=2, reset_timeout=60, clock=clock)

    assert breaker.record_failure("u") is False
    assert breaker.allow("u")
    assert breaker.record_failure("u") is True
    assert breaker.state("u") is CircuitState.OPEN
    assert not breaker.allow("u")

    clock.advance(61)
    assert breaker.allow("u")
    assert breaker.state("u") is CircuitState.HALF_OPEN

    # a failed trial reopens immediately
    assert breaker.record_failure("u") is True
    assert not breaker.allow("u")

    clock.advance(61)
    assert breaker.allow("u")
    breaker.record_success("u")
    assert breaker.state("u") is CircuitState.CLOSED
    assert breaker.get_stats()["invalid-url"]["failure_count"] == 0


def test_success_resets_consecutive_failures(clock):
    breaker = CircuitBreaker(threshold=2, clock=clock)
    breaker.record_failure("u")
    breaker.record_success("u")
    assert breaker.record_failure("u") is False
    assert breaker.state("u") is CircuitState.CLOSED


def test_circuit_breaker_can_be_disabled():
    assert create_circuit_breaker(enabled=False) is None
    assert isinstance(create_circuit_breaker(threshold=3), CircuitBreaker)


# =============================================================================
# DELIVERY
# =============================================================================

@pytest.mark.asyncio
async def test_send_posts_payload_with_tracking_headers(recorder, fast_retry):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    service = make_service(handler, recorder, fast_retry)
    status = await service.send("Task", {"input": "call mom", "priority": "high"})
    await service.queue.stop()

    assert status == 200
    [request] = seen
    assert request.headers["X-Retry-Attempt"] == "0"
    assert request.headers["X-Request-ID"].startswith("req_")
    assert request.headers["User-Agent"].startswith("MindDump")

    body = json.loads(request.content)
    assert body["input"] == "call mom"
    assert body["metadata"]["category"] == "Task"
    assert body["metadata"]["version"] == "2.0"
    assert body["metadata"]["attempt"] == 1

    assert recorder.count("webhook_queued") == 1
    assert recorder.count("webhook_success") == 1
    assert recorder.get_metrics("webhook_success")[0].tags["url"] == "hooks.example.com/task"
    assert recorder.count("webhook_delivery_duration") == 1


@pytest.mark.asyncio
async def test_unknown_category_is_rejected(recorder, fast_retry):
    service = make_service(lambda r: httpx.Response(200), recorder, fast_retry)

    with pytest.raises(PermanentError):
        service.send("Nope", {"input": "x"})
    assert recorder.count("webhook_enqueue_error") == 1


@pytest.mark.asyncio
async def test_server_error_is_retried(recorder, fast_retry):
    statuses = iter([500, 200])
    attempts = []

    def handler(request):
        attempts.append(request.headers["X-Retry-Attempt"])
        return httpx.Response(next(statuses))

    service = make_service(handler, recorder, fast_retry)
    assert await service.send("Task", {"input": "x"}) == 200
    await service.queue.stop()

    assert attempts == ["0", "1"]
    assert recorder.count("webhook_failure") == 1
    assert recorder.count("webhook_retry_scheduled") == 1
    assert recorder.count("webhook_success") == 1


@pytest.mark.asyncio
async def test_client_error_is_not_retried(recorder, fast_retry):
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(404)

    service = make_service(handler, recorder, fast_retry)
    with pytest.raises(httpx.HTTPStatusError):
        await service.send("Task", {"input": "x"})
    await service.queue.stop()

    assert len(calls) == 1
    assert recorder.count("webhook_failure") == 1
    assert recorder.count("webhook_permanent_failure") == 1


@pytest.mark.asyncio
async def test_exhausted_retries_drop_the_delivery(recorder, fast_retry):
    service = make_service(lambda r: httpx.Response(503), recorder, fast_retry,
                           webhook_delivery={"Task": {"timeout": 5, "max_retries": 2}})

    with pytest.raises(TerminalFailure):
        await service.send("Task", {"input": "x"})
    await service.queue.stop()

    assert recorder.count("webhook_failure") == 3
    assert recorder.count("webhook_terminal_failure") == 1
    assert len(service.queue.dead_letters.entries("webhook")) == 1


@pytest.mark.asyncio
async def test_open_circuit_blocks_delivery(recorder, fast_retry, clock):
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(500)

    breaker = CircuitBreaker(threshold=2, reset_timeout=60, clock=clock)
    service = make_service(handler, recorder, fast_retry, breaker=breaker,
                           webhook_delivery={"Task": {"timeout": 5, "max_retries": 0}})

    for _ in range(2):
        with pytest.raises(TerminalFailure):
            await service.send("Task", {"input": "x"})

    with pytest.raises(CircuitOpenError):
        await service.send("Task", {"input": "x"})
    await service.queue.stop()

    assert len(calls) == 2
    assert recorder.count("webhook_circuit_breaker_opened") == 1
    assert recorder.count("webhook_circuit_breaker_blocked") == 1
    # the short-circuited request is not counted as another delivery failure
    assert recorder.count("webhook_failure") == 2


@pytest.mark.asyncio
async def test_ten_deliveries_run_five_at_a_time(recorder, fast_retry):
    active = 0
    peak = 0

    async def handler(request):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry)
    for i in range(10):
        service.send("Task", {"input": f"thought {i}"})

    result = await service.flush(timeout=5)
    await service.queue.stop()

    assert peak == 5
    assert result["remaining"] == 0
    assert recorder.count("webhook_success") == 10
    assert recorder.count("webhook_queue_flush") == 1


@pytest.mark.asyncio
async def test_send_thought_routes_by_category(recorder, fast_retry):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry)
    future = service.send_thought("  run 5k  ", {"category": "Goal", "urgency": "high"})
    await future
    await service.queue.stop()

    assert seen[0]["input"] == "run 5k"
    assert seen[0]["priority"] == "high"
    assert service.send_thought("x", {}) is None


@pytest.mark.asyncio
async def test_send_batch_reports_per_item_result(recorder, fast_retry):
    service = make_service(lambda r: httpx.Response(200), recorder, fast_retry)

    results = service.send_batch([
        {"category": "Task", "payload": {"input": "a"}},
        {"category": "Unknown", "payload": {"input": "b"}},
    ])
    await service.flush(timeout=5)
    await service.queue.stop()

    assert [r["success"] for r in results] == [True, False]


@pytest.mark.asyncio
async def test_validate_caches_only_successful_checks(recorder, fast_retry):
    calls = []
    goal_status = 500

    def handler(request):
        calls.append(str(request.url))
        if "goal" in str(request.url):
            return httpx.Response(goal_status)
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry)
    first = await service.validate()
    assert first["summary"] == {"total": 2, "successful": 1, "failed": 1}
    assert first["valid"] is False

    # the goal hook recovers; its failed result must not be served from cache
    goal_status = 200
    second = await service.validate()

    assert len(calls) == 3
    assert sum("goal" in url for url in calls) == 2
    assert second["summary"] == {"total": 2, "successful": 2, "failed": 0}
    task_first = next(r for r in first["results"] if r["category"] == "Task")
    task_second = next(r for r in second["results"] if r["category"] == "Task")
    assert task_second == task_first

    await service.validate()
    assert len(calls) == 3

@pytest.mark.asyncio
async def test_performance_stats(recorder, fast_retry):
    service = make_service(lambda r: httpx.Response(200), recorder, fast_retry)
    await service.send("Task", {"input": "x"})
    await service.queue.stop()

    stats = service.get_performance_stats()
    assert stats["metrics"]["successful"] == 1
    assert stats["success_rate"] == 1.0
    assert stats["health"]["status"] == "healthy"
    assert stats["queue_stats"]["max_concurrent"] == 5
    assert stats["queue_stats"]["retry_policy"]["base_delay"] == fast_retry.base_delay


# =============================================================================
# PER-CATEGORY DELIVERY
# =============================================================================

@pytest.mark.asyncio
async def test_retry_budget_follows_category(recorder, fast_retry):
    calls = {"task": 0, "goal": 0}

    def handler(request):
        calls["goal" if "goal" in str(request.url) else "task"] += 1
        return httpx.Response(503)

    service = make_service(handler, recorder, fast_retry, webhook_delivery={
        "Task": {"timeout": 5, "max_retries": 0},
        "Goal": {"timeout": 5, "max_retries": 3},
    })

    with pytest.raises(TerminalFailure) as task_failure:
        await service.send("Task", {"input": "a"})
    with pytest.raises(TerminalFailure) as goal_failure:
        await service.send("Goal", {"input": "b"})
    await service.queue.stop()

    assert calls == {"task": 1, "goal": 4}
    assert task_failure.value.retries == 0
    assert goal_failure.value.retries == 3


@pytest.mark.asyncio
async def test_slow_delivery_times_out_per_category(recorder, fast_retry):
    async def handler(request):
        await asyncio.sleep(0.5)
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry, webhook_delivery={
        "Task": {"timeout": 0.05, "max_retries": 1},
    })

    with pytest.raises(TerminalFailure) as failure:
        await service.send("Task", {"input": "x"})
    await service.queue.stop()

    assert isinstance(failure.value.cause, asyncio.TimeoutError)
    assert recorder.count("webhook_delivery_duration_error") == 2
    assert recorder.count("webhook_retry_scheduled") == 1


@pytest.mark.asyncio
async def test_sensitive_delivery_ignores_open_circuit(recorder, fast_retry, clock):
    calls = []

    def handler(request):
        calls.append(json.loads(request.content)["category"])
        return httpx.Response(200)

    breaker = CircuitBreaker(threshold=1, reset_timeout=60, clock=clock)
    breaker.record_failure(TASK_URL)
    service = make_service(handler, recorder, fast_retry, breaker=breaker,
                           urls={"Task": TASK_URL, "Sensitive": TASK_URL})

    with pytest.raises(CircuitOpenError):
        await service.send("Task", {"input": "x", "category": "Task"})
    assert await service.send("Sensitive", {"input": "y", "category": "Sensitive"}) == 200
    await service.queue.stop()

    assert calls == ["Sensitive"]
    # a sensitive success does not close the circuit for other categories
    assert breaker.state(TASK_URL) is CircuitState.OPEN


# =============================================================================
# SIGNING
# =============================================================================

@pytest.mark.asyncio
async def test_payload_is_signed_when_secret_configured(recorder, fast_retry):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry, webhook_secret="s3cret")
    await service.send("Task", {"input": "call mom"})
    await service.send("Task", {"input": "call mom"})
    await service.queue.stop()

    bodies = [json.loads(r.content) for r in seen]
    for request, body in zip(seen, bodies):
        signature = body.pop("signature")
        assert request.headers["X-Webhook-Signature"] == signature
        body.pop("metadata")
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        expected = "sha256=" + hmac.new(b"s3cret", canonical.encode(), hashlib.sha256).hexdigest()
        assert hmac.compare_digest(signature, expected)
        assert len(body["nonce"]) == 32

    assert bodies[0]["nonce"] != bodies[1]["nonce"]


@pytest.mark.asyncio
async def test_payload_is_unsigned_without_secret(recorder, fast_retry):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry)
    await service.send("Task", {"input": "x"})
    await service.queue.stop()

    body = json.loads(seen[0].content)
    assert "signature" not in body and "nonce" not in body
    assert "X-Webhook-Signature" not in seen[0].headers


# =============================================================================
# FLUSH
# =============================================================================

@pytest.mark.asyncio
async def test_flush_counts_in_flight_and_retried_deliveries(recorder, fast_retry):
    release = asyncio.Event()
    failed_once = set()

    async def handler(request):
        text = json.loads(request.content)["input"]
        await release.wait()
        if text == "retry" and text not in failed_once:
            failed_once.add(text)
            return httpx.Response(503)
        return httpx.Response(200)

    service = make_service(handler, recorder, fast_retry)
    for text in ("a", "b", "retry"):
        service.send("Task", {"input": text})
    await asyncio.sleep(0.01)
    assert service.queue.queue_length == 0
    assert service.queue.active == 3

    partial = await service.flush(timeout=0.05)
    assert partial == {"processed": 0, "remaining": 3}

    release.set()
    result = await service.flush(timeout=5)
    await service.queue.stop()

    assert result == {"processed": 3, "remaining": 0}
    assert recorder.count("webhook_retry_scheduled") == 1
