"""Append-only performance metric stream with windowed aggregates.

Retention is bounded by count rather than age so memory use is predictable.
``record`` is called from every success and failure path in the orchestration
layer and therefore never raises.
"""

import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW = 300.0  # 5 minutes


@dataclass(frozen=True)
class PerformanceMetric:
    """A single recorded measurement."""
    name: str
    value: float
    timestamp: float
    tags: Dict[str, str] = field(default_factory=dict)


class PerformanceRecorder:
    """Bounded, time-windowed metric recorder."""

    def __init__(self, max_metrics: int = 1000, default_window: float = DEFAULT_WINDOW,
                 clock: Callable[[], float] = time.time):
        self.max_metrics = max_metrics
        self.default_window = default_window
        self._clock = clock
        self._metrics: Deque[PerformanceMetric] = deque(maxlen=max_metrics)

    def __len__(self) -> int:
        return len(self._metrics)

    def record(self, name: str, value: float = 1, tags: Optional[Dict[str, Any]] = None) -> None:
        """Append a metric, evicting the oldest once retention is exceeded."""
        try:
            clean_tags = {str(k): str(v) for k, v in (tags or {}).items()}
            self._metrics.append(PerformanceMetric(
                name=name,
                value=float(value),
                timestamp=self._clock(),
                tags=clean_tags,
            ))
        except Exception as e:
            logger.warning("Failed to record metric", metric=name, error=str(e))

    def get_metrics(self, name: Optional[str] = None,
                    window: Optional[float] = None) -> List[PerformanceMetric]:
        """Metrics newer than ``window`` seconds, optionally filtered by name."""
        window = self.default_window if window is None else window
        cutoff = self._clock() - window
        return [
            m for m in self._metrics
            if m.timestamp > cutoff and (name is None or m.name == name)
        ]

    def count(self, name: str, window: Optional[float] = None) -> int:
        return len(self.get_metrics(name, window))

    def get_average(self, name: str, window: Optional[float] = None) -> float:
        metrics = self.get_metrics(name, window)
        if not metrics:
            return 0.0
        return sum(m.value for m in metrics) / len(metrics)

    def get_percentile(self, name: str, percentile: float,
                       window: Optional[float] = None) -> float:
        """Nearest-rank percentile: ascending sort, index ``ceil(p/100*n) - 1``."""
        values = sorted(m.value for m in self.get_metrics(name, window))
        if not values:
            return 0.0
        index = max(0, math.ceil((percentile / 100) * len(values)) - 1)
        return values[min(index, len(values) - 1)]

    def rate(self, numerator: str, denominator_extra: str,
             window: Optional[float] = None,
             tag_filter: Optional[Callable[[PerformanceMetric], bool]] = None) -> float:
        """Share of ``numerator`` events among ``numerator + denominator_extra``.

        Used for hit rates (``cache_hit`` vs ``cache_miss``) and error rates.
        """
        def _count(metric_name: str) -> int:
            metrics = self.get_metrics(metric_name, window)
            if tag_filter is not None:
                metrics = [m for m in metrics if tag_filter(m)]
            return len(metrics)

        hits = _count(numerator)
        total = hits + _count(denominator_extra)
        return hits / total if total else 0.0

    def clear(self) -> None:
        self._metrics.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Overall counts for health checks."""
        now = self._clock()
        recent = [m for m in self._metrics if now - m.timestamp < DEFAULT_WINDOW]
        return {
            "total_metrics": len(self._metrics),
            "recent_metrics": len(recent),
            "unique_metric_names": len({m.name for m in self._metrics}),
            "oldest_metric": self._metrics[0].timestamp if self._metrics else None,
            "max_metrics": self.max_metrics,
        }
