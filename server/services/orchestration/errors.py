"""Orchestration exception hierarchy and failure classification."""

import asyncio

import httpx
from googleapiclient.errors import HttpError

# Rate limiting and server-side failures are worth retrying
RETRYABLE_STATUS_CODES = frozenset([408, 425, 429])


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class TransientError(OrchestrationError):
    """A failure expected to succeed on retry (timeout, 5xx, rate limit)."""


class PermanentError(OrchestrationError):
    """A failure that will not succeed on retry (malformed payload, 4xx)."""


class CircuitOpenError(PermanentError):
    """Calls to a destination are short-circuited after repeated failures."""

    def __init__(self, destination: str):
        self.destination = destination
        super().__init__(f"Circuit breaker is open for {destination}")


class QueueStoppedError(PermanentError):
    """The queue was stopped before the request settled."""


class TerminalFailure(OrchestrationError):
    """A transient failure that exhausted its retry budget."""

    def __init__(self, queue: str, request_id: str, retries: int, cause: BaseException):
        self.queue = queue
        self.request_id = request_id
        self.retries = retries
        self.cause = cause
        super().__init__(
            f"[{queue}] request {request_id} failed after {retries} retries: {cause}"
        )


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES or status >= 500


def is_transient(error: BaseException) -> bool:
    """Classify an exception raised by an external call."""
    if isinstance(error, TransientError):
        return True
    if isinstance(error, PermanentError):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)
    if isinstance(error, httpx.TransportError):
        # Timeouts, connection resets, DNS failures
        return True
    if isinstance(error, HttpError):
        return is_retryable_status(int(error.resp.status))
    if isinstance(error, ConnectionError):
        return True
    return False
