"""
Sentiment to price correlation per tracked account.

This module handles:
- Day bucketing of an account's posts over a window
- Daily correlation, strength and prediction-accuracy metrics
- Activity anomaly detection and data-quality labelling
- Ranking accounts by combined correlation/relevance score

NOTE: ``price_change`` is a simulated stand-in derived from sentiment
plus seeded noise and a weekly cycle. It is not real market history and
must not be read as a prediction; it holds the place of a real daily
price feed until one is wired in.
"""

import math
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .aggregator import UnifiedAggregator, timeframe_duration
from .models import (
    AccountCorrelation,
    AccountProfile,
    CorrelationPoint,
    CorrelationReport,
    NormalizedPost,
)
from .utils import clamp, ms_to_datetime, now_ms, seeded_rng

logger = logging.getLogger(__name__)

CORRELATION_WEIGHT = 0.6
RELEVANCE_WEIGHT = 0.4
MIN_HISTORY_DAYS = 7
DEFAULT_RELEVANCE = 0.5
SNAPSHOT_TIMEFRAME = "7d"


@dataclass(frozen=True)
class TrackedAccount:
    """An account confirmed as relevant for a coin."""
    profile: AccountProfile
    relevance_score: float = DEFAULT_RELEVANCE


def data_quality_label(total_posts: int) -> str:
    if total_posts > 50:
        return "good"
    if total_posts > 20:
        return "limited"
    return "insufficient"


def impact_label(sentiment_score: float) -> str:
    magnitude = abs(sentiment_score)
    if magnitude > 0.5:
        return "high"
    if magnitude > 0.2:
        return "medium"
    return "low"


def simulated_price_change(symbol: str, account_id: str, day: date, day_index: int, sentiment_score: float) -> float:
    """Placeholder daily price change; see module note."""
    noise = seeded_rng("price", symbol, account_id, day.isoformat()).uniform(-0.05, 0.05)
    cyclic = 0.02 * math.sin(2 * math.pi * day_index / 7)
    return sentiment_score * 0.05 + float(noise) + cyclic


def daily_correlation(sentiment_score: float, price_change: float) -> float:
    return clamp(clamp(sentiment_score) * clamp(price_change * 10))


def prediction_accuracy(scores: List[float]) -> float:
    """
    Consistency of sentiment plus an activity term.

    With no posts there is nothing to be consistent about, so the result
    is the activity term alone, which is zero.
    """
    if not scores:
        return 0.0
    consistency = 1 - math.sqrt(float(np.var(scores)))
    activity = min(1.0, len(scores) / 10)
    return clamp(0.7 * consistency + 0.3 * activity, 0.0, 1.0)


def detect_activity_anomaly(daily_counts: List[int]) -> Tuple[bool, float, str]:
    """
    Flag the latest day's post count against the window's distribution.

    Returns (is_anomaly, confidence, reason). Fewer than seven days of
    history is not an error, just an unusable sample.
    """
    if len(daily_counts) < MIN_HISTORY_DAYS:
        return False, 0.0, "Insufficient historical data"

    counts = np.asarray(daily_counts, dtype=float)
    mean = counts.mean()
    std = counts.std()
    if std == 0:
        return False, 0.0, "Activity within normal range"

    z_score = abs((counts[-1] - mean) / std)
    if z_score > 3.0:
        return True, min(0.95, 0.7 + (z_score - 3.0) * 0.1), f"Severe activity anomaly ({z_score:.2f} standard deviations)"
    if z_score > 2.0:
        return True, min(0.8, 0.5 + (z_score - 2.0) * 0.2), f"Moderate activity anomaly ({z_score:.2f} standard deviations)"
    return False, 0.0, "Activity within normal range"


class CorrelationEngine:
    """
    Correlates each tracked account's daily sentiment with (simulated)
    daily price change and ranks the accounts.
    """

    def __init__(
        self,
        aggregator: Optional[UnifiedAggregator] = None,
        tracked_accounts: Optional[Dict[str, List[TrackedAccount]]] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.aggregator = aggregator
        self.tracked_accounts = {k.upper(): list(v) for k, v in (tracked_accounts or {}).items()}
        self.clock = clock

    async def correlate(self, symbol: str, window_days: int = 30) -> CorrelationReport:
        """
        Correlation report for ``symbol`` over the last ``window_days`` days.

        Posts come from the aggregator's 7d snapshot, so this view agrees
        with the dashboard inside one cache window. Windows longer than the
        snapshot are cut down to the days it covers; the report keeps the
        requested length in ``requested_window_days``.
        """
        if self.aggregator is None:
            raise RuntimeError("CorrelationEngine.correlate needs an aggregator; use correlate_posts instead")
        if window_days <= 0:
            raise ValueError("window_days must be positive")

        # A 7d span touches eight calendar dates, both ends partial
        covered_days = min(window_days, timeframe_duration(SNAPSHOT_TIMEFRAME).days + 1)
        if covered_days < window_days:
            logger.info(f"Post history covers {covered_days}d; correlating {symbol} over {covered_days}d instead of {window_days}d")

        data = await self.aggregator.get_tweet_data(symbol, SNAPSHOT_TIMEFRAME)
        return self.correlate_posts(
            symbol,
            data.posts,
            covered_days,
            requested_window_days=window_days,
            accounts=self.tracked_accounts.get(symbol.upper()),
            now=data.last_update,
        )

    def correlate_posts(
        self,
        symbol: str,
        posts: Iterable[NormalizedPost],
        window_days: int,
        accounts: Optional[List[TrackedAccount]] = None,
        now: Optional[datetime] = None,
        requested_window_days: Optional[int] = None,
    ) -> CorrelationReport:
        """Pure correlation over an explicit post list."""
        if window_days <= 0:
            raise ValueError("window_days must be positive")

        symbol = symbol.upper()
        now = now or ms_to_datetime(self.clock())
        today = now.date()
        days = [today - timedelta(days=window_days - 1 - i) for i in range(window_days)]

        posts = [post for post in posts if days[0] <= post.published_at.date() <= today]
        if accounts is None:
            accounts = self._accounts_from_posts(posts)

        by_account: Dict[str, List[NormalizedPost]] = {}
        for post in posts:
            by_account.setdefault(post.account_id, []).append(post)

        results = [
            self._correlate_account(symbol, tracked, by_account.get(tracked.profile.id, []), days)
            for tracked in accounts
        ]
        results.sort(key=lambda r: (-r.combined_score, r.account.username))

        total_posts = sum(r.total_posts for r in results)
        report = CorrelationReport(
            symbol=symbol,
            window_days=window_days,
            accounts=results,
            total_posts=total_posts,
            data_quality=data_quality_label(total_posts),
            generated_at=now,
            requested_window_days=requested_window_days or window_days,
        )
        logger.info(
            f"Correlated {len(results)} accounts for {symbol} over {window_days}d "
            f"({total_posts} posts, data quality {report.data_quality})"
        )
        return report

    @staticmethod
    def _accounts_from_posts(posts: List[NormalizedPost]) -> List[TrackedAccount]:
        seen: Dict[str, TrackedAccount] = {}
        for post in posts:
            if post.account_id in seen:
                continue
            profile = post.account or AccountProfile(id=post.account_id, username=post.account_id)
            seen[post.account_id] = TrackedAccount(profile, profile.influence_score)
        return list(seen.values())

    def _correlate_account(
        self,
        symbol: str,
        tracked: TrackedAccount,
        posts: List[NormalizedPost],
        days: List[date],
    ) -> AccountCorrelation:
        account = tracked.profile

        if posts:
            frame = pd.DataFrame({
                "day": [post.published_at.date() for post in posts],
                "score": [post.sentiment_score for post in posts],
            })
            daily = frame.groupby("day")["score"].agg(["mean", "count"])
        else:
            daily = pd.DataFrame(columns=["mean", "count"])

        points = []
        daily_counts = []
        for index, day in enumerate(days):
            if day in daily.index:
                sentiment = float(daily.at[day, "mean"])
                count = int(daily.at[day, "count"])
            else:
                sentiment, count = 0.0, 0

            price_change = simulated_price_change(symbol, account.id, day, index, sentiment)
            points.append(CorrelationPoint(
                date=day,
                sentiment_score=sentiment,
                price_change=price_change,
                correlation=daily_correlation(sentiment, price_change),
                post_count=count,
                impact=impact_label(sentiment),
            ))
            daily_counts.append(count)

        strength = float(np.mean([abs(point.correlation) for point in points]))
        scores = [post.sentiment_score for post in posts]
        accuracy = prediction_accuracy(scores)
        combined = CORRELATION_WEIGHT * strength + RELEVANCE_WEIGHT * tracked.relevance_score

        active_days = sum(1 for count in daily_counts if count > 0)
        insufficient = active_days < MIN_HISTORY_DAYS
        if insufficient:
            is_anomaly, confidence, reason = False, 0.0, "Insufficient historical data"
            quality = "insufficient"
        else:
            is_anomaly, _, reason = detect_activity_anomaly(daily_counts)
            confidence = accuracy
            quality = data_quality_label(len(posts))

        return AccountCorrelation(
            account=account,
            points=points,
            correlation_strength=strength,
            relevance_score=tracked.relevance_score,
            combined_score=combined,
            prediction_accuracy=accuracy,
            total_posts=len(posts),
            data_quality=quality,
            confidence=confidence,
            is_anomaly=is_anomaly,
            anomaly_reason=reason,
            insufficient_history=insufficient,
            active_days=active_days,
        )
