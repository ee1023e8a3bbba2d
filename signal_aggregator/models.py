"""
Shared data contract for the signal aggregator.

Every consumer (dashboard serializer, alert deriver, correlation engine)
reads these records; records handed out by the aggregator are frozen.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .exceptions import NormalizationError

SENTIMENTS = ("positive", "negative", "neutral")
IMPACTS = ("low", "medium", "high")
TIMEFRAMES = ("1h", "4h", "24h", "7d")

DATA_SOURCE_PRIMARY = "primary"
DATA_SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class RateLimitWindow:
    """Quota window for one upstream service."""
    service_name: str
    max_requests: int
    window_duration_ms: int
    retry_after_ms: int

    def __post_init__(self):
        if self.max_requests <= 0:
            raise ValueError(f"{self.service_name}: max_requests must be positive")
        if self.window_duration_ms <= 0:
            raise ValueError(f"{self.service_name}: window_duration_ms must be positive")
        if self.retry_after_ms < 0:
            raise ValueError(f"{self.service_name}: retry_after_ms must not be negative")


@dataclass
class RequestRecord:
    timestamp_ms: float
    count: int = 1


@dataclass
class AdmissionResult:
    allowed: bool
    retry_after_ms: Optional[int] = None


@dataclass
class CacheEntry:
    key: str
    value: Any
    stored_at_ms: float
    ttl_ms: int

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.stored_at_ms > self.ttl_ms


@dataclass(frozen=True)
class AccountProfile:
    """Author of a social post."""
    id: str
    username: str
    display_name: str = ""
    followers_count: int = 0
    verified: bool = False
    influence_score: float = 0.5


@dataclass(frozen=True)
class EngagementCounts:
    like_count: int = 0
    retweet_count: int = 0
    reply_count: int = 0
    quote_count: int = 0

    @property
    def total(self) -> int:
        return self.like_count + self.retweet_count + self.reply_count + self.quote_count


@dataclass(frozen=True)
class NormalizedPost:
    """A social item in the unified shape, regardless of originating API."""
    id: str
    account_id: str
    content: str
    published_at: datetime
    sentiment: str
    sentiment_score: float
    impact: str
    impact_score: float
    engagement: EngagementCounts = field(default_factory=EngagementCounts)
    account: Optional[AccountProfile] = None
    keywords: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.id:
            raise NormalizationError("post id is required", self)
        if self.sentiment not in SENTIMENTS:
            raise NormalizationError(f"unknown sentiment {self.sentiment!r}", self)
        if self.impact not in IMPACTS:
            raise NormalizationError(f"unknown impact {self.impact!r}", self)
        if not _in_range(self.sentiment_score, -1.0, 1.0):
            raise NormalizationError(f"sentiment_score out of range: {self.sentiment_score}", self)
        if not _in_range(self.impact_score, 0.0, 1.0):
            raise NormalizationError(f"impact_score out of range: {self.impact_score}", self)
        if self.published_at.tzinfo is None:
            raise NormalizationError("published_at must be timezone-aware", self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "content": self.content,
            "publishedAt": self.published_at.isoformat(),
            "sentiment": self.sentiment,
            "sentimentScore": self.sentiment_score,
            "impact": self.impact,
            "impactScore": self.impact_score,
            "engagement": {
                "likeCount": self.engagement.like_count,
                "retweetCount": self.engagement.retweet_count,
                "replyCount": self.engagement.reply_count,
                "quoteCount": self.engagement.quote_count,
            },
            "account": None if self.account is None else {
                "id": self.account.id,
                "username": self.account.username,
                "displayName": self.account.display_name,
                "followersCount": self.account.followers_count,
                "verified": self.account.verified,
            },
            "keywords": list(self.keywords),
        }


@dataclass(frozen=True)
class PricePoint:
    symbol: str
    timestamp: datetime
    price: float
    change_pct: Optional[float] = None


@dataclass(frozen=True)
class NewsArticle:
    id: str
    title: str
    summary: str
    source: str
    url: str
    published_at: datetime
    sentiment: str
    sentiment_score: float
    impact: str
    impact_score: float


@dataclass(frozen=True)
class AggregateResult:
    """One (symbol, timeframe) snapshot shared by every consumer in a cache window."""
    symbol: str
    timeframe: str
    total_posts: int
    posts: Tuple[NormalizedPost, ...]
    sentiment_distribution: Mapping[str, int]
    impact_distribution: Mapping[str, int]
    avg_sentiment_score: float
    monitored_account_count: int
    alert_count: int
    data_source: str
    last_update: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "totalPosts": self.total_posts,
            "posts": [post.to_dict() for post in self.posts],
            "sentimentDistribution": dict(self.sentiment_distribution),
            "impactDistribution": dict(self.impact_distribution),
            "avgSentimentScore": self.avg_sentiment_score,
            "monitoredAccountCount": self.monitored_account_count,
            "alertCount": self.alert_count,
            "dataSource": self.data_source,
            "lastUpdate": self.last_update.isoformat(),
        }


@dataclass(frozen=True)
class CorrelationPoint:
    date: date
    sentiment_score: float
    price_change: float
    correlation: float
    post_count: int
    impact: str


@dataclass
class AccountCorrelation:
    account: AccountProfile
    points: List[CorrelationPoint]
    correlation_strength: float
    relevance_score: float
    combined_score: float
    prediction_accuracy: float
    total_posts: int
    data_quality: str
    confidence: float
    is_anomaly: bool = False
    anomaly_reason: str = ""
    insufficient_history: bool = False
    active_days: int = 0


@dataclass
class CorrelationReport:
    symbol: str
    window_days: int
    accounts: List[AccountCorrelation]
    total_posts: int
    data_quality: str
    generated_at: datetime
    requested_window_days: int = 0


@dataclass(frozen=True)
class AlertEvent:
    id: str
    type: str
    severity: str
    title: str
    message: str
    sentiment_score: float
    impact: str
    account_username: str
    triggered_at: datetime
    priority: int
    post_id: str = ""


def _in_range(value: float, low: float, high: float) -> bool:
    return isinstance(value, (int, float)) and not math.isnan(value) and low <= value <= high
