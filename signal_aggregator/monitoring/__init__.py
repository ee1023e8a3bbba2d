"""
Monitoring subpackage for the signal aggregator.

This package handles:
- Performance metrics collection for limiter, cache and gateways
"""

from .metrics import MetricsCollector, MetricPoint, MetricSummary

__all__ = ["MetricsCollector", "MetricPoint", "MetricSummary"]
