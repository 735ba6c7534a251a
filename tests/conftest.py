"""Shared fixtures for the orchestration tests."""

import pytest

from core.metrics import PerformanceRecorder
from services.orchestration import RetryPolicy


class FakeClock:
    """Manually advanced time source for caches, recorders and breakers."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return PerformanceRecorder(max_metrics=1000)


@pytest.fixture
def fast_retry():
    """Backoff short enough that retry tests finish in milliseconds."""
    return RetryPolicy(base_delay=0.001, max_delay=0.01)
