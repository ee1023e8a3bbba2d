"""
Upstream gateways for price, social and news APIs.

This module handles:
- API communication through a shared aiohttp session
- Rate limiting and 429 handling via the RateLimiter
- Response caching keyed by logical request signature
- Retries for transient network/5xx failures
- Conversion of native payloads to the shared data contract
"""

import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from .cache_manager import ResponseCache
from .config import Config, NEWS_SERVICE, PRICE_SERVICE, SOCIAL_SERVICE
from .exceptions import UpstreamHTTPError, UpstreamUnavailable
from .models import NewsArticle, NormalizedPost, PricePoint
from .monitoring.metrics import MetricsCollector
from .normalizers import (
    NewsNormalizer,
    NormalizationResult,
    PriceNormalizer,
    TweetNormalizer,
)
from .rate_limiter import DEFAULT_MAX_RETRIES, RateLimiter
from .sentiment import SentimentAnalyzer, analyze_sentiment
from .utils import retry, safe_divide

logger = logging.getLogger(__name__)

Normalizer = Callable[[Any], NormalizationResult]


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class UpstreamGateway:
    """
    One upstream service behind a RateLimiter and a ResponseCache.

    Responsibilities:
    - Manage the HTTP session
    - Serve repeat requests from cache without touching the quota
    - Retry transient failures, surface typed errors otherwise
    - Normalize payloads, dropping malformed items
    """

    service_name: str = ""

    def __init__(
        self,
        config: Config,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        base_url: str,
        metrics: Optional[MetricsCollector] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.config = config
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.metrics = metrics or rate_limiter.metrics
        self.sleep = sleep
        self.max_retries = max_retries

        # Picked up by the retry decorator
        self.retry_attempts = config.retry_attempts
        self.retry_delay = config.retry_delay

        # Session management
        self.session = session
        self._owns_session = session is None
        self.session_lock = asyncio.Lock()

        # Performance tracking
        self.request_count = 0
        self.error_count = 0
        self.bytes_received = 0
        self.dropped_items = 0

        logger.info(f"Initialized {type(self).__name__} for {self.service_name} at {self.base_url}")

    def auth_headers(self) -> Dict[str, str]:
        return {}

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session with proper configuration."""
        async with self.session_lock:
            if self.session is None or self.session.closed:
                connector = aiohttp.TCPConnector(
                    limit=self.config.connection_pool_size,
                    ttl_dns_cache=300,
                )
                timeout = aiohttp.ClientTimeout(total=self.config.request_timeout, connect=5)
                self.session = aiohttp.ClientSession(
                    connector=connector,
                    timeout=timeout,
                    trust_env=True,
                )
                self._owns_session = True
                logger.debug(f"Created new aiohttp session for {self.service_name}")

            return self.session

    async def close(self):
        """Close the aiohttp session if this gateway created it."""
        async with self.session_lock:
            if self._owns_session and self.session is not None and not self.session.closed:
                await self.session.close()
                logger.debug(f"Closed aiohttp session for {self.service_name}")
            self.session = None

    def cache_key(self, endpoint: str, params: Dict[str, Any]) -> str:
        return self.cache.build_key(self.service_name, endpoint, params)

    async def _http_get(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """
        Perform one GET against the upstream.

        Raises:
            UpstreamHTTPError: 429 (handled by the rate limiter) or another 4xx
            UpstreamUnavailable: network failure, timeout or 5xx
        """
        session = await self.get_session()
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        query = {key: _query_value(value) for key, value in params.items()}
        start_time = time.time()
        self.request_count += 1

        try:
            async with session.get(url, params=query, headers=self.auth_headers()) as response:
                if response.status == 429:
                    raise UpstreamHTTPError(self.service_name, 429, dict(response.headers))
                if response.status >= 500:
                    raise UpstreamUnavailable(
                        self.service_name,
                        UpstreamHTTPError(self.service_name, response.status, dict(response.headers)),
                    )
                if response.status >= 400:
                    body = await response.text()
                    raise UpstreamHTTPError(
                        self.service_name,
                        response.status,
                        dict(response.headers),
                        f"{self.service_name} returned HTTP {response.status}: {body[:200]}",
                    )

                data = await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.error_count += 1
            self.metrics.record_error(self.service_name, type(e).__name__)
            raise UpstreamUnavailable(self.service_name, e) from e
        except (UpstreamHTTPError, UpstreamUnavailable) as e:
            self.error_count += 1
            self.metrics.record_error(self.service_name, type(e).__name__)
            raise

        size = len(str(data).encode("utf-8"))
        self.bytes_received += size
        self.metrics.record_api_call(self.service_name, endpoint, time.time() - start_time, size)
        return data

    @retry(max_attempts=3, delay=1.0, backoff_factor=2.0, exceptions=(UpstreamUnavailable,))
    async def _limited_get(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """One GET under the service quota; every retry is admitted again."""
        return await self.rate_limiter.execute_with_rate_limit(
            self.service_name,
            lambda: self._http_get(endpoint, params),
            max_retries=self.max_retries,
        )

    async def fetch_raw(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Return the raw upstream payload for a request.

        Cache hits never touch the rate limiter, so repeat requests do not
        consume quota.
        """
        params = dict(params or {})
        key = self.cache_key(endpoint, params)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached {self.service_name} response for {endpoint}")
            return cached

        try:
            data = await self._limited_get(endpoint, params)
        except Exception as e:
            logger.error(f"{self.service_name} request to {endpoint} failed: {str(e)}")
            raise

        self.cache.set(key, data)
        return data

    def default_normalizer(self) -> Normalizer:
        raise NotImplementedError

    async def call(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        normalizer: Optional[Normalizer] = None,
    ) -> List[Any]:
        """
        Fetch ``endpoint`` and return its items in the shared shape.

        Args:
            endpoint: Path relative to the service base URL
            params: Query parameters
            normalizer: Payload -> NormalizationResult mapping; defaults to the gateway's own

        Returns:
            Normalized items; malformed ones are dropped
        """
        payload = await self.fetch_raw(endpoint, params)
        result = (normalizer or self.default_normalizer())(payload)
        if result.dropped:
            self.dropped_items += result.dropped
            self.metrics.increment("normalization_dropped", result.dropped, tags={"service": self.service_name})
        return result.items

    def get_metrics(self) -> Dict[str, Any]:
        """Get current performance metrics."""
        return {
            "service": self.service_name,
            "requests": self.request_count,
            "errors": self.error_count,
            "bytes_received": self.bytes_received,
            "dropped_items": self.dropped_items,
            "error_rate": safe_divide(self.error_count, self.request_count) * 100,
            "rate_limiter": self.rate_limiter.get_status(self.service_name),
            "cache": self.cache.stats(),
        }


class PriceGateway(UpstreamGateway):
    """CoinGecko price data."""

    service_name = PRICE_SERVICE

    COIN_IDS = {
        'BTC': 'bitcoin',
        'ETH': 'ethereum',
        'ADA': 'cardano',
        'SOL': 'solana',
        'DOT': 'polkadot',
        'LINK': 'chainlink',
        'MATIC': 'matic-network',
        'AVAX': 'avalanche-2',
    }

    def __init__(self, config: Config, rate_limiter: RateLimiter, cache: ResponseCache, **kwargs):
        super().__init__(config, rate_limiter, cache, config.api.coingecko_base_url, **kwargs)

    def auth_headers(self) -> Dict[str, str]:
        if self.config.api.coingecko_api_key:
            return {"x-cg-demo-api-key": self.config.api.coingecko_api_key}
        return {}

    def coin_id(self, symbol: str) -> str:
        return self.COIN_IDS.get(symbol.upper(), symbol.lower())

    def default_normalizer(self) -> Normalizer:
        return PriceNormalizer("").normalize_payload

    async def get_market_chart(self, symbol: str, days: int = 30) -> List[PricePoint]:
        """Daily price history, each point carrying its day-over-day change."""
        params = {"vs_currency": "usd", "days": days, "interval": "daily"}
        return await self.call(
            f"coins/{self.coin_id(symbol)}/market_chart",
            params,
            PriceNormalizer(symbol).normalize_payload,
        )

    async def get_simple_price(self, symbols: Iterable[str]) -> Dict[str, float]:
        symbols = [s.upper() for s in symbols]
        ids = sorted(self.coin_id(s) for s in symbols)
        payload = await self.fetch_raw("simple/price", {"ids": ",".join(ids), "vs_currencies": "usd"})

        prices = {}
        for symbol in symbols:
            entry = (payload or {}).get(self.coin_id(symbol)) if isinstance(payload, dict) else None
            if isinstance(entry, dict) and isinstance(entry.get("usd"), (int, float)):
                prices[symbol] = float(entry["usd"])
            else:
                logger.warning(f"No usd price for {symbol} in coingecko response")
        return prices


class SocialGateway(UpstreamGateway):
    """Twitter API v2 recent search."""

    service_name = SOCIAL_SERVICE

    TWEET_FIELDS = "id,text,created_at,public_metrics,author_id"
    USER_FIELDS = "id,username,name,public_metrics,verified"

    def __init__(
        self,
        config: Config,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        analyzer: SentimentAnalyzer = analyze_sentiment,
        **kwargs,
    ):
        super().__init__(config, rate_limiter, cache, config.api.twitter_base_url, **kwargs)
        self.analyzer = analyzer

    def auth_headers(self) -> Dict[str, str]:
        if self.config.api.twitter_bearer_token:
            return {"Authorization": f"Bearer {self.config.api.twitter_bearer_token}"}
        return {}

    def default_normalizer(self) -> Normalizer:
        return TweetNormalizer("", self.analyzer).normalize_payload

    async def search_recent(self, symbol: str, max_results: int = 100) -> List[NormalizedPost]:
        """
        Recent posts mentioning ``symbol``.

        The time window is applied by the caller, so the request signature
        stays stable and repeat searches are served from cache.
        """
        symbol = symbol.upper()
        params = {
            "query": f"({symbol} OR #{symbol} OR ${symbol}) -is:retweet",
            "max_results": max(10, min(max_results, 100)),
            "tweet.fields": self.TWEET_FIELDS,
            "user.fields": self.USER_FIELDS,
            "expansions": "author_id",
        }
        return await self.call(
            "tweets/search/recent",
            params,
            TweetNormalizer(symbol, self.analyzer).normalize_payload,
        )


class NewsGateway(UpstreamGateway):
    """NewsAPI article search."""

    service_name = NEWS_SERVICE

    def __init__(
        self,
        config: Config,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        analyzer: SentimentAnalyzer = analyze_sentiment,
        **kwargs,
    ):
        super().__init__(config, rate_limiter, cache, config.api.newsapi_base_url, **kwargs)
        self.analyzer = analyzer

    def auth_headers(self) -> Dict[str, str]:
        if self.config.api.newsapi_key:
            return {"X-Api-Key": self.config.api.newsapi_key}
        return {}

    def default_normalizer(self) -> Normalizer:
        return NewsNormalizer("", self.analyzer).normalize_payload

    async def search(self, query: str, page_size: int = 50) -> List[NewsArticle]:
        params = {
            "q": query,
            "language": "en",
            "sortBy": "publishedAt",
            "pageSize": max(1, min(page_size, 100)),
        }
        return await self.call("everything", params, NewsNormalizer(query, self.analyzer).normalize_payload)
