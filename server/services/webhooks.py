"""Webhook delivery through a bounded queue with per-URL circuit breaking.

Delivery is detached from the request/response cycle: ``WebhookService.send``
enqueues and returns immediately. Success and failure are only observable via
the performance recorder and the health surface.
"""

import asyncio
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from constants import USER_AGENT, WEBHOOK_QUEUE
from core.cache import ExpiringCache
from core.config import Settings
from core.instrumentation import with_timing
from core.logging import get_logger, log_api_call
from core.metrics import PerformanceRecorder
from services.orchestration import (
    BoundedRequestQueue,
    CircuitOpenError,
    PermanentError,
    Priority,
    QueuedRequest,
)

logger = get_logger(__name__)

VALIDATION_TIMEOUT = 5.0


def sanitize_url(url: str) -> str:
    """Host and path only, so query-string secrets never reach logs or metrics."""
    parsed = urlparse(url)
    if not parsed.hostname:
        return "invalid-url"
    return f"{parsed.hostname}{parsed.path}"


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class Circuit:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    next_attempt_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": self.next_attempt_time,
        }


class CircuitBreaker:
    """Per-destination breaker: opens after ``threshold`` consecutive failures.

    An open circuit rejects calls until ``reset_timeout`` has elapsed, then lets
    one trial through (half-open). A success closes it again.
    """

    def __init__(self, threshold: int = 5, reset_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._circuits: Dict[str, Circuit] = {}

    def allow(self, destination: str) -> bool:
        circuit = self._circuits.setdefault(destination, Circuit())
        if circuit.state == CircuitState.OPEN:
            if self._clock() >= circuit.next_attempt_time:
                circuit.state = CircuitState.HALF_OPEN
                return True
            return False
        return True

    def record_success(self, destination: str) -> None:
        circuit = self._circuits.get(destination)
        if circuit:
            circuit.state = CircuitState.CLOSED
            circuit.failure_count = 0
            circuit.last_failure_time = 0.0

    def record_failure(self, destination: str) -> bool:
        """Count a failure. Returns True when this failure opened the circuit."""
        circuit = self._circuits.setdefault(destination, Circuit())
        now = self._clock()
        circuit.failure_count += 1
        circuit.last_failure_time = now

        reopen = circuit.state == CircuitState.HALF_OPEN
        if reopen or (circuit.state == CircuitState.CLOSED and circuit.failure_count >= self.threshold):
            circuit.state = CircuitState.OPEN
            circuit.next_attempt_time = now + self.reset_timeout
            return True
        return False

    def state(self, destination: str) -> CircuitState:
        circuit = self._circuits.get(destination)
        return circuit.state if circuit else CircuitState.CLOSED

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {sanitize_url(url): circuit.to_dict() for url, circuit in self._circuits.items()}


# =============================================================================
# QUEUE
# =============================================================================

@dataclass
class WebhookDelivery:
    url: str
    category: str
    body: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None
    circuit_breaker: bool = True
    signature: Optional[str] = None


def sign_payload(secret: str, payload: Dict[str, Any]) -> str:
    """HMAC-SHA256 over the canonical JSON of ``payload``, as ``sha256=<hex>``."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hmac.new(secret.encode(), canonical.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookQueue(BoundedRequestQueue):
    """POSTs JSON payloads; 5 concurrent deliveries by default.

    Timeouts are per delivery (``WebhookDelivery.timeout``) since each
    category has its own budget.
    """

    def __init__(self, client: httpx.AsyncClient,
                 circuit_breaker: Optional[CircuitBreaker] = None, **kwargs):
        kwargs.setdefault("max_concurrent", 5)
        super().__init__(WEBHOOK_QUEUE, **kwargs)
        self.client = client
        self.circuit_breaker = circuit_breaker

    def _breaker_for(self, delivery: WebhookDelivery) -> Optional[CircuitBreaker]:
        return self.circuit_breaker if delivery.circuit_breaker else None

    async def process_request(self, request: QueuedRequest) -> int:
        delivery: WebhookDelivery = request.payload
        destination = sanitize_url(delivery.url)
        breaker = self._breaker_for(delivery)

        if breaker and not breaker.allow(delivery.url):
            self.recorder.record("webhook_circuit_breaker_blocked", 1, {"url": destination})
            raise CircuitOpenError(destination)

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Request-ID": request.id,
            "X-Retry-Attempt": str(request.retries),
        }
        if delivery.signature:
            headers["X-Webhook-Signature"] = delivery.signature

        async def _post() -> int:
            response = await self.client.post(
                delivery.url,
                json={
                    **delivery.body,
                    "metadata": {
                        **delivery.body.get("metadata", {}),
                        "id": request.id,
                        "attempt": request.attempt,
                    },
                },
                headers=headers,
            )
            response.raise_for_status()
            return response.status_code

        status_code = await with_timing(
            lambda: asyncio.wait_for(_post(), delivery.timeout),
            "webhook_delivery_duration",
            {"category": delivery.category, "attempt": request.attempt},
            recorder=self.recorder,
        )

        if breaker:
            breaker.record_success(delivery.url)
        self.recorder.record("webhook_success", 1, {
            "category": delivery.category,
            "url": destination,
            "attempt": str(request.attempt),
        })
        log_api_call(logger, "webhook", "deliver", True,
                     url=destination, request_id=request.id, status_code=status_code)
        return status_code

    def _record_delivery_failure(self, request: QueuedRequest, error: BaseException,
                                 attempt: int) -> None:
        delivery: WebhookDelivery = request.payload
        destination = sanitize_url(delivery.url)
        self.recorder.record("webhook_failure", 1, {
            "category": delivery.category,
            "url": destination,
            "attempt": str(attempt),
            "error": type(error).__name__,
        })
        breaker = self._breaker_for(delivery)
        if breaker and breaker.record_failure(delivery.url):
            self.recorder.record("webhook_circuit_breaker_opened", 1, {"url": destination})
            logger.warning("Webhook circuit breaker opened", url=destination)

    def on_retry(self, request: QueuedRequest, error: BaseException, delay: float) -> None:
        # retries was already incremented for the next attempt
        self._record_delivery_failure(request, error, attempt=request.retries)

    def on_terminal_failure(self, request: QueuedRequest, error: BaseException) -> None:
        if isinstance(error, CircuitOpenError):
            return
        self._record_delivery_failure(request, error, attempt=request.attempt)


# =============================================================================
# SERVICE
# =============================================================================

class WebhookService:
    """Routes categorized thoughts to their webhook and enqueues delivery."""

    def __init__(self, queue: WebhookQueue, cache: ExpiringCache,
                 recorder: PerformanceRecorder, settings: Settings):
        self.queue = queue
        self.cache = cache
        self.recorder = recorder
        self.settings = settings

    def resolve_url(self, category: str) -> Optional[str]:
        return self.settings.webhook_urls.get(category)

    def send(self, category: str, payload: Dict[str, Any],
             priority: Optional[Priority] = None) -> asyncio.Future:
        """Enqueue delivery of ``payload`` to the category's webhook.

        Returns:
            The delivery future; callers on the request path do not await it.

        Raises:
            PermanentError: No webhook is configured for the category
        """
        url = self.resolve_url(category)
        if not url:
            self.recorder.record("webhook_enqueue_error", 1, {"category": category})
            raise PermanentError(f"No webhook configured for category: {category}")

        config = self.settings.delivery_for(category)
        body = dict(payload)
        signature = None
        if self.settings.webhook_secret:
            body["nonce"] = secrets.token_hex(16)
            signature = sign_payload(self.settings.webhook_secret, body)
            body["signature"] = signature
        # metadata gets per-attempt fields at delivery, so it stays outside the signature
        body["metadata"] = {
            "version": "2.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "category": category,
            "source": "minddump-orchestrator",
        }
        request = QueuedRequest(
            payload=WebhookDelivery(url=url, category=category, body=body,
                                    timeout=config.timeout,
                                    circuit_breaker=config.circuit_breaker,
                                    signature=signature),
            priority=priority or _priority_from_payload(payload),
            max_retries=config.max_retries,
        )
        self.recorder.record("webhook_queued", 1, {"category": category, "url": sanitize_url(url)})
        return self.queue.add(request)

    def send_thought(self, text: str, analysis: Dict[str, Any]) -> Optional[asyncio.Future]:
        """Build the webhook payload for an analyzed thought and enqueue it."""
        category = analysis.get("category") or analysis.get("type")
        if not category:
            logger.warning("No category found for webhook processing")
            return None

        payload = {
            "input": text.strip(),
            "category": category,
            "subcategory": analysis.get("subcategory"),
            "priority": analysis.get("urgency") or analysis.get("priority"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "expanded": analysis.get("expandedThought"),
        }
        try:
            return self.send(category, payload)
        except PermanentError as e:
            logger.warning("Webhook not sent", category=category, error=str(e))
            return None

    def send_batch(self, webhooks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Enqueue several deliveries, reporting per-item enqueue success."""
        results = []
        for item in webhooks:
            category = item["category"]
            try:
                self.send(category, item["payload"])
                results.append({"success": True, "category": category})
            except PermanentError as e:
                results.append({"success": False, "category": category, "error": str(e)})
        return results

    async def flush(self, timeout: float = 30.0) -> Dict[str, int]:
        """Wait for queued deliveries to settle, up to ``timeout`` seconds."""
        settled_before = self.queue.settled
        await self.queue.drain(timeout)
        processed = self.queue.settled - settled_before
        remaining = self.queue.pending
        self.recorder.record("webhook_queue_flush", processed)
        return {"processed": processed, "remaining": remaining}

    async def validate(self) -> Dict[str, Any]:
        """Send a test payload to every configured webhook.

        Successful results are cached per URL for the webhook cache TTL. A
        failing URL is retried on every call so recovery shows up at once.
        """
        async def _check(category: str, url: str) -> Dict[str, Any]:
            destination = sanitize_url(url)
            key = f"webhook_check:{destination}"
            cached = self.cache.get(key)
            if cached is not None:
                self.recorder.record("cache_hit", 1, {"key": key, "cache": self.cache.name})
                return cached

            async def _post() -> Dict[str, Any]:
                start = time.perf_counter()
                try:
                    response = await self.queue.client.post(
                        url,
                        json={
                            "input": "test",
                            "category": category,
                            "timestamp": datetime.now(timezone.utc).isoformat(),
                            "test": True,
                        },
                        headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
                        timeout=VALIDATION_TIMEOUT,
                    )
                    status = "success" if response.is_success else f"error_{response.status_code}"
                except httpx.HTTPError as e:
                    status = f"error_{type(e).__name__}"
                return {
                    "category": category,
                    "url": destination,
                    "status": status,
                    "response_time": (time.perf_counter() - start) * 1000,
                }

            result = await _post()
            if result["status"] == "success":
                self.cache.set(key, result)
            return result

        results = await asyncio.gather(
            *(_check(category, url) for category, url in self.settings.webhook_urls.items())
        )
        successful = sum(1 for r in results if r["status"] == "success")
        failed = len(results) - successful
        return {
            "valid": successful > failed,
            "results": list(results),
            "summary": {"total": len(results), "successful": successful, "failed": failed},
        }

    def get_performance_stats(self, window: Optional[float] = None) -> Dict[str, Any]:
        window = window if window is not None else self.settings.metrics_window
        recorder = self.recorder
        metrics = {
            "queued": recorder.count("webhook_queued", window),
            "successful": recorder.count("webhook_success", window),
            "failed": recorder.count("webhook_failure", window),
            "retries": recorder.count("webhook_retry_scheduled", window),
            "terminal_failures": recorder.count("webhook_terminal_failure", window),
            "circuit_breaker_events": recorder.count("webhook_circuit_breaker_opened", window),
            "average_delivery_time": recorder.get_average("webhook_delivery_duration", window),
            "p95_delivery_time": recorder.get_percentile("webhook_delivery_duration", 95, window),
        }
        attempts = metrics["successful"] + metrics["failed"]
        success_rate = metrics["successful"] / attempts if attempts else 1.0

        if success_rate > 0.9:
            status = "healthy"
        elif success_rate > 0.7:
            status = "degraded"
        else:
            status = "unhealthy"

        return {
            "metrics": metrics,
            "success_rate": success_rate,
            "queue_stats": self.queue.get_stats(),
            "circuit_breaker_stats": (
                self.queue.circuit_breaker.get_stats() if self.queue.circuit_breaker else {}
            ),
            "health": {"status": status if attempts else "idle", "score": success_rate},
        }


def _priority_from_payload(payload: Dict[str, Any]) -> Priority:
    value = str(payload.get("priority") or "").lower()
    try:
        return Priority(value)
    except ValueError:
        return Priority.MEDIUM


def create_circuit_breaker(enabled: bool = True, threshold: int = 5,
                           reset_timeout: float = 60.0) -> Optional[CircuitBreaker]:
    """Create a circuit breaker, or None when circuit breaking is disabled."""
    if not enabled:
        logger.info("Webhook circuit breaker disabled")
        return None
    return CircuitBreaker(threshold=threshold, reset_timeout=reset_timeout)
