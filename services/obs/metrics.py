"""
Checkout Observability Metrics
Materialization outcomes, discount issuance counters, janitor deletions and
P50/P95 materialization timings.
"""
from typing import Any, Dict, List
import logging
import statistics
import threading
from collections import defaultdict, deque

logger = logging.getLogger(__name__)


class MaterializationMetrics:
    """Collects and aggregates in-process checkout metrics"""

    def __init__(self, window: int = 500):
        self.materializations = defaultdict(int)  # ok / degraded / failed
        self.discounts = defaultdict(int)  # issued / skipped / failed / fallback_to_sku
        self.janitor = defaultdict(int)  # swept / consumed / delete_failed
        self.durations_ms: deque = deque(maxlen=window)
        self.slow_threshold_ms = 12000

        self._lock = threading.Lock()

    def record_materialization(self, status: str, duration_ms: float) -> None:
        with self._lock:
            self.materializations[status] += 1
            self.durations_ms.append(duration_ms)
        if duration_ms > self.slow_threshold_ms:
            logger.warning(f"Slow materialization: {duration_ms:.0f}ms (status={status})")

    def record_discount(self, outcome: str) -> None:
        with self._lock:
            self.discounts[outcome] += 1

    def record_janitor(self, trigger: str, deleted: int, failed: int = 0) -> None:
        with self._lock:
            self.janitor[trigger] += deleted
            if failed:
                self.janitor["delete_failed"] += failed

    @staticmethod
    def _percentile(values: List[float], pct: float) -> float:
        if not values:
            return 0.0
        if len(values) == 1:
            return float(values[0])
        cut_points = statistics.quantiles(values, n=100, method="inclusive")
        return float(cut_points[int(pct) - 1])

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            durations = list(self.durations_ms)
            return {
                "materializations": dict(self.materializations),
                "discounts": dict(self.discounts),
                "janitor": dict(self.janitor),
                "materialization_ms": {
                    "count": len(durations),
                    "p50": self._percentile(durations, 50),
                    "p95": self._percentile(durations, 95),
                },
            }

    def reset(self) -> None:
        with self._lock:
            self.materializations.clear()
            self.discounts.clear()
            self.janitor.clear()
            self.durations_ms.clear()


# Global metrics collector instance
checkout_metrics = MaterializationMetrics()
