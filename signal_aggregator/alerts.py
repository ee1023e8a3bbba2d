"""
Alert derivation from normalized posts.

This module handles:
- Selecting high-impact posts
- Severity, type and priority rules
- Ordering alerts for display

Alerts are derived from an aggregate snapshot and never re-query the
upstreams.
"""

import math
import logging
from enum import Enum
from typing import Iterable, List, Optional

from .aggregator import UnifiedAggregator
from .models import AlertEvent, NormalizedPost

logger = logging.getLogger(__name__)

INFLUENCER_FOLLOWERS = 100_000
VIRAL_ENGAGEMENT = 1000


class AlertSeverity(Enum):
    """Alert severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(Enum):
    """What made the post alert-worthy."""
    BULLISH_SIGNAL = "bullish_signal"
    BEARISH_SIGNAL = "bearish_signal"
    VIRAL_CONTENT = "viral_content"
    INFLUENCER_POST = "influencer_post"
    MARKET_SENTIMENT = "market_sentiment"


ALERT_TITLES = {
    AlertType.BULLISH_SIGNAL: "Bullish signal",
    AlertType.BEARISH_SIGNAL: "Bearish signal",
    AlertType.VIRAL_CONTENT: "Viral content",
    AlertType.INFLUENCER_POST: "Influencer post",
    AlertType.MARKET_SENTIMENT: "Market sentiment shift",
}


def classify_severity(sentiment_score: float, engagement: int) -> AlertSeverity:
    magnitude = abs(sentiment_score)
    if magnitude > 0.8 and engagement > 500:
        return AlertSeverity.CRITICAL
    if magnitude > 0.6 and engagement > 200:
        return AlertSeverity.HIGH
    if magnitude > 0.4 and engagement > 50:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def classify_type(sentiment_score: float, engagement: int, followers: int) -> AlertType:
    if sentiment_score > 0.5:
        return AlertType.BULLISH_SIGNAL
    if sentiment_score < -0.5:
        return AlertType.BEARISH_SIGNAL
    if engagement > VIRAL_ENGAGEMENT:
        return AlertType.VIRAL_CONTENT
    if followers > INFLUENCER_FOLLOWERS:
        return AlertType.INFLUENCER_POST
    return AlertType.MARKET_SENTIMENT


def compute_priority(sentiment_score: float, engagement: int, verified: bool, followers: int) -> int:
    """Priority on a 1-10 scale, rounded half up."""
    score = 5 + abs(sentiment_score) * 3
    if engagement > VIRAL_ENGAGEMENT:
        score += 2
    elif engagement > 500:
        score += 1
    if verified:
        score += 1
    if followers > INFLUENCER_FOLLOWERS:
        score += 1
    return max(1, min(10, int(math.floor(score + 0.5))))


class AlertDeriver:
    """Turns high-impact posts into ranked alert events."""

    def __init__(self, aggregator: Optional[UnifiedAggregator] = None, notification_prefix: str = ""):
        self.aggregator = aggregator
        self.notification_prefix = notification_prefix

    def derive_alert(self, post: NormalizedPost) -> AlertEvent:
        engagement = post.engagement.total
        followers = post.account.followers_count if post.account else 0
        verified = post.account.verified if post.account else False
        username = post.account.username if post.account else post.account_id

        severity = classify_severity(post.sentiment_score, engagement)
        alert_type = classify_type(post.sentiment_score, engagement, followers)
        snippet = post.content if len(post.content) <= 140 else post.content[:137] + "..."

        return AlertEvent(
            id=f"alert_{post.id}",
            type=alert_type.value,
            severity=severity.value,
            title=f"{self.notification_prefix}{ALERT_TITLES[alert_type]} from @{username}",
            message=snippet,
            sentiment_score=post.sentiment_score,
            impact=post.impact,
            account_username=username,
            triggered_at=post.published_at,
            priority=compute_priority(post.sentiment_score, engagement, verified, followers),
            post_id=post.id,
        )

    def derive_alerts(self, posts: Iterable[NormalizedPost]) -> List[AlertEvent]:
        """
        Alerts for every high-impact post.

        Returns:
            Alerts sorted by priority, then trigger time, both descending
        """
        alerts = [self.derive_alert(post) for post in posts if post.impact == "high"]
        alerts.sort(key=lambda alert: (alert.priority, alert.triggered_at), reverse=True)
        logger.debug(f"Derived {len(alerts)} alerts")
        return alerts

    async def alerts_for(self, symbol: str, timeframe: str = "24h") -> List[AlertEvent]:
        """Alerts for the aggregator's current snapshot of ``symbol``."""
        if self.aggregator is None:
            raise RuntimeError("AlertDeriver.alerts_for needs an aggregator; use derive_alerts instead")
        data = await self.aggregator.get_tweet_data(symbol, timeframe)
        return self.derive_alerts(data.posts)
