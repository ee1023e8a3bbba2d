"""
Upstream payload normalization.

This module handles:
- Mapping each upstream's native shape onto the shared data contract
- Per-item validation (malformed items raise NormalizationError)
- Partial-success batch processing: bad items are logged and dropped
- Keyword extraction for trending-term summaries
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import pandas as pd

from .exceptions import NormalizationError
from .models import (
    AccountProfile,
    EngagementCounts,
    NewsArticle,
    NormalizedPost,
    PricePoint,
)
from .sentiment import SentimentAnalyzer, analyze_sentiment

logger = logging.getLogger(__name__)

T = TypeVar("T")

STOP_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'is', 'are', 'was', 'were', 'be', 'been', 'have',
    'has', 'had', 'do', 'does', 'did', 'will', 'would', 'should', 'could',
    'can', 'may', 'might', 'must', 'this', 'that', 'these', 'those', 'just',
    'from', 'about', 'into', 'than', 'then', 'them', 'they', 'what', 'when',
})


@dataclass
class NormalizationResult:
    """Outcome of normalizing one upstream batch."""
    items: List[Any] = field(default_factory=list)
    dropped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items) + self.dropped


def normalize_batch(
    raw_items: Iterable[Any],
    normalize_item: Callable[[Any], T],
    source: str = "",
) -> NormalizationResult:
    """
    Normalize every item, dropping the ones that fail.

    A batch of 50 items with 2 malformed entries yields 48 items.
    """
    result = NormalizationResult()
    for raw in raw_items:
        try:
            result.items.append(normalize_item(raw))
        except NormalizationError as e:
            result.dropped += 1
            result.errors.append(str(e))
            logger.warning(f"Dropping malformed {source or 'upstream'} item: {e}")

    if result.dropped:
        logger.info(f"Normalized {len(result.items)}/{result.total} {source} items ({result.dropped} dropped)")
    return result


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601 strings or epoch milliseconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise NormalizationError(f"invalid timestamp {value!r}", value) from e
    else:
        raise NormalizationError(f"missing timestamp {value!r}", value)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _non_negative_int(value: Any, name: str) -> int:
    if value is None:
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise NormalizationError(f"{name} is not an integer: {value!r}", value) from e
    if number < 0:
        raise NormalizationError(f"{name} must not be negative: {number}", value)
    return number


def extract_keywords(text: str, limit: int = 5) -> Tuple[str, ...]:
    words = re.sub(r"[^\w\s#@$]", "", text.lower()).split()
    return tuple(word for word in words if len(word) > 3 and word not in STOP_WORDS)[:limit]


def _account_from_user(user: Dict[str, Any]) -> AccountProfile:
    metrics = user.get("public_metrics") or {}
    followers = _non_negative_int(metrics.get("followers_count"), "followers_count")
    return AccountProfile(
        id=str(user["id"]),
        username=str(user.get("username") or user["id"]),
        display_name=str(user.get("name") or ""),
        followers_count=followers,
        verified=bool(user.get("verified", False)),
        # Saturates at one million followers
        influence_score=min(1.0, followers / 1_000_000) if followers else 0.5,
    )


class TweetNormalizer:
    """Maps Twitter API v2 ``tweets/search/recent`` payloads onto NormalizedPost."""

    def __init__(self, coin_symbol: str = "", analyzer: SentimentAnalyzer = analyze_sentiment):
        self.coin_symbol = coin_symbol
        self.analyzer = analyzer

    def users_by_id(self, payload: Dict[str, Any]) -> Dict[str, AccountProfile]:
        accounts = {}
        for user in (payload.get("includes") or {}).get("users") or []:
            try:
                account = _account_from_user(user)
            except (KeyError, TypeError, NormalizationError) as e:
                logger.warning(f"Ignoring malformed user record: {e}")
                continue
            accounts[account.id] = account
        return accounts

    def normalize(self, tweet: Dict[str, Any], accounts: Optional[Dict[str, AccountProfile]] = None) -> NormalizedPost:
        if not isinstance(tweet, dict):
            raise NormalizationError("tweet is not an object", tweet)

        tweet_id = tweet.get("id")
        text = tweet.get("text")
        author_id = tweet.get("author_id")
        if not tweet_id or not isinstance(text, str) or not author_id:
            raise NormalizationError("tweet is missing id, text or author_id", tweet)

        metrics = tweet.get("public_metrics") or {}
        if not isinstance(metrics, dict):
            raise NormalizationError("public_metrics is not an object", tweet)

        engagement = EngagementCounts(
            like_count=_non_negative_int(metrics.get("like_count"), "like_count"),
            retweet_count=_non_negative_int(metrics.get("retweet_count"), "retweet_count"),
            reply_count=_non_negative_int(metrics.get("reply_count"), "reply_count"),
            quote_count=_non_negative_int(metrics.get("quote_count"), "quote_count"),
        )
        analysis = self.analyzer(text, self.coin_symbol)

        return NormalizedPost(
            id=str(tweet_id),
            account_id=str(author_id),
            content=text,
            published_at=parse_timestamp(tweet.get("created_at")),
            sentiment=analysis.sentiment,
            sentiment_score=analysis.sentiment_score,
            impact=analysis.impact,
            impact_score=analysis.impact_score,
            engagement=engagement,
            account=(accounts or {}).get(str(author_id)),
            keywords=extract_keywords(text),
        )

    def normalize_payload(self, payload: Dict[str, Any]) -> NormalizationResult:
        if not isinstance(payload, dict):
            logger.warning(f"Unexpected twitter payload type: {type(payload).__name__}")
            return NormalizationResult()
        accounts = self.users_by_id(payload)
        return normalize_batch(
            payload.get("data") or [],
            lambda tweet: self.normalize(tweet, accounts),
            source="twitter",
        )


class NewsNormalizer:
    """Maps NewsAPI ``everything`` payloads onto NewsArticle."""

    def __init__(self, coin_symbol: str = "", analyzer: SentimentAnalyzer = analyze_sentiment):
        self.coin_symbol = coin_symbol
        self.analyzer = analyzer

    def normalize(self, article: Dict[str, Any]) -> NewsArticle:
        if not isinstance(article, dict):
            raise NormalizationError("article is not an object", article)

        title = article.get("title")
        url = article.get("url")
        if not title or not url:
            raise NormalizationError("article is missing title or url", article)

        summary = article.get("description") or ""
        source = article.get("source") or {}
        analysis = self.analyzer(f"{title} {summary}", self.coin_symbol)

        return NewsArticle(
            id=str(url),
            title=str(title),
            summary=str(summary),
            source=str(source.get("name") or "") if isinstance(source, dict) else str(source),
            url=str(url),
            published_at=parse_timestamp(article.get("publishedAt")),
            sentiment=analysis.sentiment,
            sentiment_score=analysis.sentiment_score,
            impact=analysis.impact,
            impact_score=analysis.impact_score,
        )

    def normalize_payload(self, payload: Dict[str, Any]) -> NormalizationResult:
        if not isinstance(payload, dict):
            logger.warning(f"Unexpected news payload type: {type(payload).__name__}")
            return NormalizationResult()
        return normalize_batch(payload.get("articles") or [], self.normalize, source="newsapi")


class PriceNormalizer:
    """Maps CoinGecko ``coins/{id}/market_chart`` payloads onto PricePoint."""

    def __init__(self, symbol: str):
        self.symbol = symbol.upper()

    def normalize_payload(self, payload: Dict[str, Any]) -> NormalizationResult:
        if not isinstance(payload, dict):
            logger.warning(f"Unexpected price payload type: {type(payload).__name__}")
            return NormalizationResult()

        raw = payload.get("prices") or []
        valid_rows = []
        result = NormalizationResult()
        for row in raw:
            if (
                isinstance(row, (list, tuple)) and len(row) >= 2
                and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in row[:2])
                and row[1] > 0
            ):
                valid_rows.append(row[:2])
            else:
                result.dropped += 1
                result.errors.append(f"malformed price row {row!r}")
                logger.warning(f"Dropping malformed coingecko item: {row!r}")

        if not valid_rows:
            return result

        df = pd.DataFrame(valid_rows, columns=["timestamp", "price"])
        df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms", utc=True)
        df = df.sort_values("timestamp", kind="stable").drop_duplicates("timestamp", keep="last")
        df["change_pct"] = df["price"].pct_change() * 100

        for row in df.itertuples(index=False):
            result.items.append(PricePoint(
                symbol=self.symbol,
                timestamp=row.timestamp.to_pydatetime(),
                price=float(row.price),
                change_pct=None if pd.isna(row.change_pct) else float(row.change_pct),
            ))
        return result
