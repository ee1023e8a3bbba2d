"""
Wiring for the signal aggregator.

AggregationService owns the shared rate limiter, response cache and
metrics collector, builds the gateways on top of them and picks the post
source once, from the sandbox configuration.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .aggregator import UnifiedAggregator
from .alerts import AlertDeriver
from .cache_manager import ResponseCache
from .config import Config
from .correlation import CorrelationEngine, TrackedAccount
from .gateway import NewsGateway, PriceGateway, SocialGateway
from .models import AccountProfile, AggregateResult, AlertEvent, CorrelationReport
from .monitoring.metrics import MetricsCollector
from .rate_limiter import RateLimiter
from .sentiment import SentimentAnalyzer, analyze_sentiment
from .sources import DataSource, FailoverSource, RealSource, SyntheticSource
from .utils import now_ms

logger = logging.getLogger(__name__)


class AggregationService:
    """
    Entry point for dashboard, alert and correlation consumers.

    Usage:
        async with AggregationService(Config.from_env()) as service:
            data = await service.aggregator.get_tweet_data("BTC", "24h")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = now_ms,
        analyzer: SentimentAnalyzer = analyze_sentiment,
        tracked_accounts: Optional[Dict[str, List[TrackedAccount]]] = None,
    ):
        self.config = config or Config.from_env()
        self.config.validate()
        self.clock = clock

        self.metrics = MetricsCollector()
        self.rate_limiter = RateLimiter(
            self.config.rate_limit_windows(),
            metrics=self.metrics,
            clock=clock,
            sleep=sleep,
        )
        self.cache = ResponseCache(
            max_size=self.config.cache.max_size,
            default_ttl_ms=self.config.cache.default_ttl_ms,
            prefix_ttl_ms=self.config.cache.prefix_ttl_ms,
            metrics=self.metrics,
            clock=clock,
        )

        gateway_kwargs = {"metrics": self.metrics, "session": session, "sleep": sleep}
        self.price_gateway = PriceGateway(self.config, self.rate_limiter, self.cache, **gateway_kwargs)
        self.social_gateway = SocialGateway(self.config, self.rate_limiter, self.cache, analyzer, **gateway_kwargs)
        self.news_gateway = NewsGateway(self.config, self.rate_limiter, self.cache, analyzer, **gateway_kwargs)

        self.tracked_accounts = tracked_accounts or {}
        self.source = self._build_source()
        self.aggregator = UnifiedAggregator(
            self.source,
            ttl_ms=self.config.aggregator.cache_ttl_ms,
            clock=clock,
        )
        self.correlation = CorrelationEngine(self.aggregator, self.tracked_accounts, clock=clock)
        self.alerts = AlertDeriver(self.aggregator, self.config.sandbox.notification_prefix)

        logger.info(
            f"AggregationService ready in {self.config.sandbox.mode} mode "
            f"using {type(self.source).__name__}"
        )

    def _build_source(self) -> DataSource:
        synthetic = SyntheticSource(bucket_ms=self.config.aggregator.cache_ttl_ms, clock=self.clock)
        if self.config.sandbox.enabled and self.config.sandbox.twitter_mock_enabled:
            return synthetic

        profiles: Dict[str, List[AccountProfile]] = {
            symbol: [tracked.profile for tracked in accounts]
            for symbol, accounts in self.tracked_accounts.items()
        }
        real = RealSource(
            self.social_gateway,
            tracked_accounts=profiles,
            max_results=self.config.aggregator.max_results_per_query,
        )
        if self.config.aggregator.degrade_on_failure:
            return FailoverSource(real, synthetic)
        return real

    @property
    def sandbox_mode(self) -> str:
        return self.config.sandbox.mode

    async def get_tweet_data(self, symbol: str, timeframe: str = "24h") -> AggregateResult:
        return await self.aggregator.get_tweet_data(symbol, timeframe)

    async def get_alerts(self, symbol: str, timeframe: str = "24h") -> List[AlertEvent]:
        return await self.alerts.alerts_for(symbol, timeframe)

    async def get_correlation(self, symbol: str, window_days: Optional[int] = None) -> CorrelationReport:
        window = window_days or self.config.aggregator.correlation_window_days
        return await self.correlation.correlate(symbol, window)

    async def start(self):
        """Open the social session up front when posts come from the upstream."""
        if not isinstance(self.source, SyntheticSource):
            await self.social_gateway.get_session()
        self.cache.cleanup_expired()
        logger.info(f"AggregationService started ({self.sandbox_mode})")

    async def close(self):
        """Close the aggregator and every gateway session the service created."""
        await self.aggregator.close()
        for gateway in (self.price_gateway, self.social_gateway, self.news_gateway):
            await gateway.close()
        logger.info("AggregationService closed")

    async def __aenter__(self) -> "AggregationService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot of limiter, cache, gateway and collector metrics."""
        self.metrics.set_gauge("response_cache_size", len(self.cache))
        self.metrics.set_gauge("aggregate_cache_size", len(self.aggregator.cache))
        return {
            "mode": self.sandbox_mode,
            "data_source": self.source.data_source,
            "rate_limiter": self.rate_limiter.get_metrics(),
            "cache": self.cache.stats(),
            "gateways": {
                gateway.service_name: gateway.get_metrics()
                for gateway in (self.price_gateway, self.social_gateway, self.news_gateway)
            },
            "collector": self.metrics.get_all_metrics(),
        }
