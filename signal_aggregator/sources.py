"""
Post sources for the unified aggregator.

This module handles:
- Real upstream posts through the social gateway
- Synthetic posts for sandbox/fallback mode
- Optional failover from the real source to the synthetic one

The aggregator picks one source at construction; callers never branch
on the sandbox flag themselves.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .exceptions import RateLimitExceeded, UpstreamUnavailable
from .gateway import SocialGateway
from .models import (
    AccountProfile,
    DATA_SOURCE_FALLBACK,
    DATA_SOURCE_PRIMARY,
    EngagementCounts,
    NormalizedPost,
)
from .normalizers import extract_keywords
from .utils import now_ms, seeded_rng

logger = logging.getLogger(__name__)

# Synthetic post volume per timeframe before jitter
BASE_POST_COUNT = {"1h": 8, "4h": 25, "24h": 120, "7d": 600}

POST_TEMPLATES = {
    "positive": (
        "${symbol} looking bullish, breakout above resistance incoming",
        "Accumulating more ${symbol} here, strong support and rising volume",
        "${symbol} rally is just getting started, institutional buying everywhere",
        "New partnership announced for ${symbol}, adoption keeps growing",
    ),
    "negative": (
        "${symbol} losing support, expecting a deeper correction",
        "Taking profit on ${symbol}, this looks like a bull trap to me",
        "Whales dumping ${symbol} on the exchange, be careful out there",
        "Regulation fears weighing on ${symbol} today",
    ),
    "neutral": (
        "Watching ${symbol} closely at these levels",
        "${symbol} consolidating, waiting for direction",
        "Interesting on-chain numbers for ${symbol} this week",
        "What is everyone's take on ${symbol} right now?",
    ),
}


@dataclass
class SourceBatch:
    """Posts for one (symbol, window) plus the figures the source knows about."""
    posts: List[NormalizedPost]
    monitored_account_count: int
    data_source: str


class DataSource(ABC):
    """Capability to produce normalized posts for a symbol and time window."""

    data_source: str = DATA_SOURCE_PRIMARY

    @abstractmethod
    async def fetch(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> SourceBatch:
        """Return posts published within ``[start, end]``, newest first."""

    async def close(self):
        """Release resources held by the source."""


def _within(posts: Iterable[NormalizedPost], start: datetime, end: datetime) -> List[NormalizedPost]:
    selected = [post for post in posts if start <= post.published_at <= end]
    selected.sort(key=lambda post: (post.published_at, post.id), reverse=True)
    return selected


class RealSource(DataSource):
    """Posts from the social upstream."""

    data_source = DATA_SOURCE_PRIMARY

    def __init__(
        self,
        gateway: SocialGateway,
        tracked_accounts: Optional[Dict[str, List[AccountProfile]]] = None,
        max_results: int = 100,
    ):
        self.gateway = gateway
        self.tracked_accounts = {k.upper(): list(v) for k, v in (tracked_accounts or {}).items()}
        self.max_results = max_results

    async def fetch(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> SourceBatch:
        posts = await self.gateway.search_recent(symbol, self.max_results)
        selected = _within(posts, start, end)

        tracked = self.tracked_accounts.get(symbol.upper())
        if tracked is not None:
            monitored = len(tracked)
        else:
            monitored = len({post.account_id for post in selected})

        return SourceBatch(selected, monitored, self.data_source)

    async def close(self):
        await self.gateway.close()


class SyntheticSource(DataSource):
    """
    Plausible synthetic posts for sandbox mode.

    Output is seeded by (symbol, timeframe, cache-window bucket) so every
    caller inside one aggregate cache window sees the same numbers.
    """

    data_source = DATA_SOURCE_FALLBACK

    def __init__(self, bucket_ms: int = 5 * 60 * 1000, clock: Callable[[], float] = now_ms):
        self.bucket_ms = bucket_ms
        self.clock = clock

    def accounts_for(self, symbol: str) -> List[AccountProfile]:
        rng = seeded_rng("accounts", symbol)
        accounts = []
        for i in range(int(rng.integers(8, 18))):
            followers = int(rng.integers(1_000, 250_000))
            accounts.append(AccountProfile(
                id=f"synthetic_{symbol.lower()}_{i}",
                username=f"{symbol.lower()}_watcher_{i + 1}",
                display_name=f"Crypto User {i + 1}",
                followers_count=followers,
                verified=bool(rng.random() > 0.8),
                influence_score=float(rng.random() * 0.5 + 0.5),
            ))
        return accounts

    def _sentiment_score(self, sentiment: str, u: float) -> float:
        if sentiment == "positive":
            return 0.5 + u * 0.5
        if sentiment == "negative":
            return -0.5 - u * 0.5
        return (u - 0.5) * 0.4

    @staticmethod
    def _impact(engagement: EngagementCounts, sentiment_score: float) -> str:
        magnitude = abs(sentiment_score)
        if magnitude > 0.7 and engagement.total > 100:
            return "high"
        if magnitude > 0.3 or engagement.total > 50:
            return "medium"
        return "low"

    def generate(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> List[NormalizedPost]:
        bucket = int(self.clock() // self.bucket_ms)
        rng = seeded_rng("posts", symbol, timeframe, bucket)
        accounts = self.accounts_for(symbol)

        base = BASE_POST_COUNT.get(timeframe, BASE_POST_COUNT["24h"])
        count = int(base * (0.8 + rng.random() * 0.4))  # +/-20%
        span_seconds = max(0.0, (end - start).total_seconds())

        posts = []
        for i in range(count):
            sentiment = ("positive", "negative", "neutral")[int(rng.integers(0, 3))]
            score = self._sentiment_score(sentiment, float(rng.random()))
            engagement = EngagementCounts(
                like_count=int(rng.integers(0, 1500)),
                retweet_count=int(rng.integers(0, 300)),
                reply_count=int(rng.integers(0, 50)),
                quote_count=int(rng.integers(0, 20)),
            )
            account = accounts[int(rng.integers(0, len(accounts)))]
            templates = POST_TEMPLATES[sentiment]
            content = templates[int(rng.integers(0, len(templates)))].replace("{symbol}", symbol.upper())
            published_at = end - timedelta(seconds=float(rng.random()) * span_seconds)
            impact = self._impact(engagement, score)

            posts.append(NormalizedPost(
                id=f"synthetic_{symbol.lower()}_{timeframe}_{bucket}_{i}",
                account_id=account.id,
                content=content,
                published_at=published_at,
                sentiment=sentiment,
                sentiment_score=score,
                impact=impact,
                impact_score=min(1.0, abs(score) * (engagement.like_count + engagement.retweet_count) / 1000),
                engagement=engagement,
                account=account,
                keywords=extract_keywords(content),
            ))
        return posts

    async def fetch(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> SourceBatch:
        posts = _within(self.generate(symbol, timeframe, start, end), start, end)
        logger.info(f"[SANDBOX] Generated {len(posts)} synthetic posts for {symbol} ({timeframe})")
        return SourceBatch(posts, len(self.accounts_for(symbol)), self.data_source)


class FailoverSource(DataSource):
    """
    Real source that degrades to a secondary source when the upstream quota
    is exhausted or the upstream is unavailable.

    The degradation is logged and visible through ``data_source``.
    """

    def __init__(self, primary: DataSource, secondary: DataSource):
        self.primary = primary
        self.secondary = secondary

    async def fetch(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> SourceBatch:
        try:
            return await self.primary.fetch(symbol, timeframe, start, end)
        except (RateLimitExceeded, UpstreamUnavailable) as e:
            logger.warning(f"Primary source failed for {symbol} ({timeframe}), using fallback: {e}")
            batch = await self.secondary.fetch(symbol, timeframe, start, end)
            batch.data_source = DATA_SOURCE_FALLBACK
            return batch

    async def close(self):
        await self.primary.close()
        await self.secondary.close()
