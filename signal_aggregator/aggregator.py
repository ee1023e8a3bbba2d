"""
Unified aggregation of social data per (symbol, timeframe).

This module handles:
- One canonical AggregateResult per (symbol, timeframe) and cache window
- Source selection (real or synthetic) at the aggregator boundary
- Distribution and average computations shared by every consumer
- Sentiment-analysis and monitoring views derived from the same snapshot

Every consumer (dashboard widget, alert panel, correlation view) reads
the same cached snapshot, so they observe identical numbers inside one
cache window even though each queries independently.
"""

import asyncio
import logging
from collections import Counter
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional

from .cache_manager import ResponseCache
from .models import AggregateResult, IMPACTS, SENTIMENTS, TIMEFRAMES, NormalizedPost
from .normalizers import STOP_WORDS
from .sources import DataSource
from .utils import ms_to_datetime, now_ms, safe_divide

logger = logging.getLogger(__name__)

AGGREGATE_TTL_MS = 5 * 60 * 1000

TIMEFRAME_DURATIONS = {
    "1h": timedelta(hours=1),
    "4h": timedelta(hours=4),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}


def timeframe_duration(timeframe: str) -> timedelta:
    try:
        return TIMEFRAME_DURATIONS[timeframe]
    except KeyError:
        raise ValueError(f"Unsupported timeframe {timeframe!r}; expected one of {', '.join(TIMEFRAMES)}") from None


class UnifiedAggregator:
    """
    Fan-in over a DataSource with its own short-TTL result cache.

    Concurrent callers for the same key share one in-flight fetch. The
    fetch runs in its own task, so a caller that goes away does not
    cancel it and the result is still cached for the next caller.
    """

    def __init__(
        self,
        source: DataSource,
        cache: Optional[ResponseCache] = None,
        ttl_ms: int = AGGREGATE_TTL_MS,
        clock: Callable[[], float] = now_ms,
    ):
        self.source = source
        self.ttl_ms = ttl_ms
        self.clock = clock
        self.cache = cache or ResponseCache(max_size=256, default_ttl_ms=ttl_ms, clock=clock)

        self._inflight: Dict[str, "asyncio.Task[AggregateResult]"] = {}
        self._lock = asyncio.Lock()

        logger.info(f"Initialized UnifiedAggregator with {type(source).__name__} (ttl={ttl_ms}ms)")

    @staticmethod
    def cache_key(symbol: str, timeframe: str) -> str:
        return f"tweet_data_{symbol.upper()}_{timeframe}"

    async def get_tweet_data(self, symbol: str, timeframe: str = "24h") -> AggregateResult:
        """
        Get the aggregate snapshot for a symbol and timeframe.

        Args:
            symbol: Coin symbol, case-insensitive
            timeframe: One of 1h, 4h, 24h, 7d

        Returns:
            The cached AggregateResult while it is live, a fresh one otherwise
        """
        timeframe_duration(timeframe)
        symbol = symbol.upper()
        key = self.cache_key(symbol, timeframe)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for tweet data: {key}")
            return cached

        async with self._lock:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._build(symbol, timeframe, key))
                self._inflight[key] = task
                task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))

        return await asyncio.shield(task)

    async def _build(self, symbol: str, timeframe: str, key: str) -> AggregateResult:
        end = ms_to_datetime(self.clock())
        start = end - timeframe_duration(timeframe)

        try:
            batch = await self.source.fetch(symbol, timeframe, start, end)
        except Exception as e:
            logger.error(f"Failed to get tweet data for {symbol}: {str(e)}")
            raise

        result = self.assemble(symbol, timeframe, batch.posts, batch.monitored_account_count, batch.data_source)
        self.cache.set(key, result, self.ttl_ms)
        logger.info(
            f"Aggregated {result.total_posts} posts for {symbol} ({timeframe}) "
            f"from {result.data_source} source"
        )
        return result

    def assemble(
        self,
        symbol: str,
        timeframe: str,
        posts: List[NormalizedPost],
        monitored_account_count: int,
        data_source: str,
    ) -> AggregateResult:
        """Compute distributions and averages for a list of posts."""
        sentiment_counts = Counter(post.sentiment for post in posts)
        impact_counts = Counter(post.impact for post in posts)
        # Read-only: the snapshot is shared by every consumer in the cache window
        sentiment_distribution = MappingProxyType({name: sentiment_counts.get(name, 0) for name in SENTIMENTS})
        impact_distribution = MappingProxyType({name: impact_counts.get(name, 0) for name in IMPACTS})

        avg_sentiment = safe_divide(sum(post.sentiment_score for post in posts), len(posts))

        return AggregateResult(
            symbol=symbol,
            timeframe=timeframe,
            total_posts=len(posts),
            posts=tuple(posts),
            sentiment_distribution=sentiment_distribution,
            impact_distribution=impact_distribution,
            avg_sentiment_score=avg_sentiment,
            monitored_account_count=monitored_account_count,
            alert_count=impact_distribution["high"],
            data_source=data_source,
            last_update=ms_to_datetime(self.clock()),
        )

    async def get_monitoring_stats(self, symbol: str) -> Dict[str, Any]:
        """Headline numbers for the dashboard, taken from the 24h snapshot."""
        data = await self.get_tweet_data(symbol, "24h")
        return {
            "total_posts": data.total_posts,
            "alert_count": data.alert_count,
            "monitored_accounts": data.monitored_account_count,
            "last_update": data.last_update,
            "data_source": data.data_source,
        }

    async def get_sentiment_analysis_data(self, symbol: str, timeframe: str = "24h") -> Dict[str, Any]:
        data = await self.get_tweet_data(symbol, timeframe)
        significant_posts = [
            post for post in data.posts
            if post.impact == "high" or abs(post.sentiment_score) > 0.7
        ][:10]

        return {
            "total_posts": data.total_posts,
            "sentiment_distribution": dict(data.sentiment_distribution),
            "impact_distribution": dict(data.impact_distribution),
            "avg_sentiment_score": data.avg_sentiment_score,
            "significant_posts": significant_posts,
            "trending_keywords": self.extract_trending_keywords(data.posts),
            "data_source": data.data_source,
        }

    @staticmethod
    def extract_trending_keywords(posts, limit: int = 10) -> List[Dict[str, Any]]:
        counts: Counter = Counter()
        sentiment_sums: Dict[str, float] = {}

        for post in posts:
            for word in post.content.lower().split():
                if len(word) <= 3 or word in STOP_WORDS or not word[0].isalpha():
                    continue
                counts[word] += 1
                sentiment_sums[word] = sentiment_sums.get(word, 0.0) + post.sentiment_score

        # Ties broken alphabetically so repeated calls agree
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
        return [
            {"word": word, "count": count, "sentiment": sentiment_sums[word] / count}
            for word, count in ranked
        ]

    def clear_cache(self, symbol: Optional[str] = None) -> int:
        """Drop cached snapshots for one symbol, or all of them."""
        if symbol is None:
            removed = len(self.cache)
            self.cache.clear()
            return removed
        prefix = f"tweet_data_{symbol.upper()}_"
        return self.cache.delete_matching(lambda key: key.startswith(prefix))

    async def refresh_data(self, symbol: str) -> AggregateResult:
        self.clear_cache(symbol)
        result = await self.get_tweet_data(symbol, "24h")
        logger.info(f"Refreshed unified data for {symbol.upper()}")
        return result

    async def close(self):
        for task in list(self._inflight.values()):
            task.cancel()
        await self.source.close()
