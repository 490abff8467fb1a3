"""
In-memory operational metrics for casecore.

Request counts per route, error counts per status code and a bounded
latency window with percentile summaries. Latency samples arrive through
METRICS_LATENCY deferred effects, so a rolled-back request never records
one.
"""

from collections import defaultdict, deque
from numbers import Real
from typing import Any, Deque, Dict, Optional

from casecore.app.utils.logging import get_logger

logger = get_logger(__name__)


MAX_LATENCY_SAMPLES = 500


def normalize_route(route: Optional[str]) -> str:
    if not route:
        return "unknown"
    return route.split("?")[0]


def _percentile(samples, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    index = int((p / 100) * (len(ordered) - 1))
    return ordered[index]


class MetricsService:
    """Process-local metrics sink."""

    def __init__(self, max_latency_samples: int = MAX_LATENCY_SAMPLES):
        self.max_latency_samples = max_latency_samples
        self.requests: Dict[str, int] = defaultdict(int)
        self.errors: Dict[str, int] = defaultdict(int)
        self.latencies: Deque[float] = deque(maxlen=max_latency_samples)
        self.route_latencies: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_latency_samples)
        )

    def record_request(self, route: Optional[str]) -> None:
        self.requests[normalize_route(route)] += 1

    def record_error(self, status_code: Any) -> None:
        self.errors[str(status_code or "unknown")] += 1

    def record_latency(self, route: Optional[str], duration_ms: Any) -> None:
        """
        Record one request duration tagged by route.

        Non-numeric durations are ignored.
        """
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, Real):
            return
        if duration_ms != duration_ms:  # NaN
            return

        value = float(duration_ms)
        self.latencies.append(value)
        self.route_latencies[normalize_route(route)].append(value)

    def get_latency_percentiles(self, route: Optional[str] = None) -> Dict[str, Any]:
        samples = self.latencies if route is None else self.route_latencies.get(normalize_route(route), ())
        return {
            "p50": _percentile(samples, 50),
            "p95": _percentile(samples, 95),
            "samples": len(samples),
        }

    def get_snapshot(self) -> Dict[str, Any]:
        return {
            "requests": dict(self.requests),
            "errors": dict(self.errors),
            "latency": self.get_latency_percentiles(),
        }

    def reset(self) -> None:
        self.requests.clear()
        self.errors.clear()
        self.latencies.clear()
        self.route_latencies.clear()
