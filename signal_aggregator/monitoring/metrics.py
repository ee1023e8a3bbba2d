"""
Performance metrics for upstream access.

This module handles:
- Counters broken down by upstream service
- Gauges for cache sizes and similar levels
- Timing summaries and percentiles for upstream calls
- Snapshot export for status endpoints
"""

import threading
import logging
from typing import Dict, Any, Optional, List, Tuple
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from collections import defaultdict, deque

import numpy as np

logger = logging.getLogger(__name__)

TagKey = Tuple[Tuple[str, str], ...]


@dataclass
class MetricPoint:
    """A single metric data point."""
    timestamp: datetime
    value: float
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Running summary for a timing metric."""
    count: int = 0
    total: float = 0.0
    min: float = float('inf')
    max: float = float('-inf')

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def update(self, value: float):
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)


def _tag_key(tags: Optional[Dict[str, str]]) -> TagKey:
    return tuple(sorted((tags or {}).items()))


class MetricsCollector:
    """
    Shared sink for rate limiter, response cache and gateway metrics.

    Every counter keeps a grand total plus one count per distinct tag set,
    so ``get_counter("api_calls_total", service="twitter")`` and
    ``get_counter("api_calls_total")`` are both cheap.
    """

    def __init__(self, max_points: int = 1000):
        self.counters: Dict[str, int] = defaultdict(int)
        self.tagged_counters: Dict[str, Dict[TagKey, int]] = defaultdict(lambda: defaultdict(int))
        self.gauges: Dict[str, float] = {}
        # Percentiles use the latest max_points samples; summaries cover every sample
        self.timings: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points))
        self.summaries: Dict[str, MetricSummary] = defaultdict(MetricSummary)
        self.recent_points = defaultdict(lambda: deque(maxlen=max_points))

        # Snapshot helpers call each other while holding it
        self.lock = threading.RLock()

    def _record_point(self, name: str, value: float, tags: Optional[Dict[str, str]]):
        self.recent_points[name].append(MetricPoint(datetime.now(), value, dict(tags or {})))

    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """
        Increment a counter.

        Args:
            name: Metric name, e.g. ``rate_limit_denied``
            value: Amount to add
            tags: Breakdown labels, usually ``{"service": ...}``
        """
        with self.lock:
            self.counters[name] += value
            self.tagged_counters[name][_tag_key(tags)] += value
            self._record_point(name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        with self.lock:
            self.gauges[name] = value
            self._record_point(name, value, tags)

    def record_timing(self, name: str, seconds: float, tags: Optional[Dict[str, str]] = None):
        with self.lock:
            self.timings[name].append(seconds)
            self.summaries[name].update(seconds)
            self._record_point(name, seconds, tags)

    def record_api_call(self, service: str, endpoint: str, duration: float, response_size: int):
        """One completed upstream request."""
        tags = {"service": service, "endpoint": endpoint}
        self.increment("api_calls_total", tags=tags)
        self.increment("api_response_size_bytes", response_size, tags=tags)
        self.record_timing("api_duration_seconds", duration, tags=tags)

    def record_cache_hit(self, tags: Optional[Dict[str, str]] = None):
        self.increment("cache_hits", tags=tags)

    def record_cache_miss(self, tags: Optional[Dict[str, str]] = None):
        self.increment("cache_misses", tags=tags)

    def record_error(self, service: str, error_type: str):
        self.increment("errors_total", tags={"service": service, "error_type": error_type})

    def get_counter(self, name: str, **tags: str) -> int:
        """Counter total, or the sum over tag sets that include every given tag."""
        with self.lock:
            if not tags:
                return self.counters.get(name, 0)
            wanted = set(tags.items())
            return sum(
                count for key, count in self.tagged_counters.get(name, {}).items()
                if wanted.issubset(key)
            )

    def by_service(self, name: str) -> Dict[str, int]:
        """Counter broken down by its ``service`` tag."""
        breakdown: Dict[str, int] = defaultdict(int)
        with self.lock:
            for key, count in self.tagged_counters.get(name, {}).items():
                service = dict(key).get("service")
                if service is not None:
                    breakdown[service] += count
        return dict(breakdown)

    def get_gauge(self, name: str) -> float:
        with self.lock:
            return self.gauges.get(name, 0.0)

    def get_timing_stats(self, name: str) -> Dict[str, float]:
        with self.lock:
            values = self.timings.get(name)
            if not values:
                return {}
            summary = self.summaries[name]
            p50, p95, p99 = np.percentile(values, [50, 95, 99])
            return {
                "count": summary.count,
                "min": summary.min,
                "max": summary.max,
                "avg": summary.avg,
                "p50": float(p50),
                "p95": float(p95),
                "p99": float(p99),
            }

    def get_recent_metrics(self, name: str, window: timedelta = timedelta(hours=1)) -> List[MetricPoint]:
        since = datetime.now() - window
        with self.lock:
            return [point for point in self.recent_points.get(name, ()) if point.timestamp >= since]

    def get_all_metrics(self) -> Dict[str, Any]:
        """Snapshot of every metric, with per-service counter breakdowns."""
        with self.lock:
            return {
                "counters": dict(self.counters),
                "by_service": {
                    name: breakdown
                    for name in self.counters
                    for breakdown in [self.by_service(name)]
                    if breakdown
                },
                "gauges": dict(self.gauges),
                "timings": {name: self.get_timing_stats(name) for name in self.timings},
            }

    def reset(self):
        with self.lock:
            self.counters.clear()
            self.tagged_counters.clear()
            self.gauges.clear()
            self.timings.clear()
            self.summaries.clear()
            self.recent_points.clear()
        logger.info("Reset all metrics")
