"""
Crypto Signal Aggregator: Upstream Access and Unified Aggregation

This package is responsible for:
- Rate-limited, cached access to price, social and news APIs
- Normalizing upstream payloads to one data contract
- One canonical aggregate per (symbol, timeframe) for every consumer
- Alert derivation and sentiment/price correlation
- Sandbox mode with synthetic data
"""

from .aggregator import UnifiedAggregator
from .alerts import AlertDeriver
from .cache_manager import ResponseCache
from .config import Config
from .correlation import CorrelationEngine, TrackedAccount
from .exceptions import (
    NormalizationError,
    RateLimitExceeded,
    SignalAggregatorError,
    UpstreamHTTPError,
    UpstreamUnavailable,
)
from .gateway import NewsGateway, PriceGateway, SocialGateway
from .monitoring.metrics import MetricsCollector
from .rate_limiter import RateLimiter
from .service import AggregationService
from .sources import DataSource, FailoverSource, RealSource, SyntheticSource

__version__ = "1.0.0"
__all__ = [
    "AggregationService",
    "AlertDeriver",
    "Config",
    "CorrelationEngine",
    "DataSource",
    "FailoverSource",
    "MetricsCollector",
    "NewsGateway",
    "NormalizationError",
    "PriceGateway",
    "RateLimitExceeded",
    "RateLimiter",
    "RealSource",
    "ResponseCache",
    "SignalAggregatorError",
    "SocialGateway",
    "SyntheticSource",
    "TrackedAccount",
    "UnifiedAggregator",
    "UpstreamHTTPError",
    "UpstreamUnavailable",
]
