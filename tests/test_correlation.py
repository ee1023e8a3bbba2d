from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_account, make_post
from signal_aggregator.aggregator import UnifiedAggregator
from signal_aggregator.correlation import (
    CorrelationEngine,
    TrackedAccount,
    data_quality_label,
    detect_activity_anomaly,
    prediction_accuracy,
)
from signal_aggregator.sources import SyntheticSource

NOW = datetime(2026, 1, 31, 12, tzinfo=timezone.utc)


def daily_posts(account, days, per_day, score=0.5):
    posts = []
    for day in range(days):
        for i in range(per_day):
            posts.append(make_post(
                post_id=f"{account.id}-{day}-{i}",
                account=account,
                published_at=NOW - timedelta(days=day, minutes=i),
                score=score,
            ))
    return posts


def test_account_without_posts_scores_zero():
    account = make_account("a")
    report = CorrelationEngine().correlate_posts("btc", [], 30, accounts=[TrackedAccount(account)], now=NOW)

    result = report.accounts[0]
    assert report.symbol == "BTC"
    assert len(result.points) == 30
    assert result.correlation_strength == 0
    assert result.prediction_accuracy == 0
    assert result.total_posts == 0
    assert result.insufficient_history
    assert result.data_quality == "insufficient"
    assert result.confidence == 0
    assert not result.is_anomaly


def test_accounts_ranked_by_combined_score_then_username():
    accounts = [
        TrackedAccount(make_account("b", "bob"), 0.5),
        TrackedAccount(make_account("z", "zed"), 0.9),
        TrackedAccount(make_account("a", "amy"), 0.5),
    ]
    report = CorrelationEngine().correlate_posts("BTC", [], 30, accounts=accounts, now=NOW)

    assert [r.account.username for r in report.accounts] == ["zed", "amy", "bob"]
    assert report.accounts[0].combined_score == pytest.approx(0.4 * 0.9)


def test_short_history_is_flagged_not_failed():
    account = make_account("a")
    posts = daily_posts(account, days=3, per_day=20)

    result = CorrelationEngine().correlate_posts("BTC", posts, 30, accounts=[TrackedAccount(account)], now=NOW).accounts[0]

    assert result.total_posts == 60
    assert result.active_days == 3
    assert result.insufficient_history
    assert result.data_quality == "insufficient"
    assert result.confidence == 0


def test_consistent_active_account():
    account = make_account("a")
    posts = daily_posts(account, days=10, per_day=6)

    report = CorrelationEngine().correlate_posts("BTC", posts, 30, accounts=[TrackedAccount(account, 0.8)], now=NOW)
    result = report.accounts[0]

    assert result.active_days == 10
    assert not result.insufficient_history
    assert result.data_quality == "good"
    assert report.data_quality == "good"
    assert result.prediction_accuracy == pytest.approx(1.0)
    assert result.confidence == result.prediction_accuracy
    assert not result.is_anomaly
    assert 0 <= result.correlation_strength <= 1
    assert result.combined_score == pytest.approx(0.6 * result.correlation_strength + 0.4 * 0.8)

    latest = result.points[-1]
    assert latest.date == NOW.date()
    assert latest.post_count == 6
    assert latest.sentiment_score == pytest.approx(0.5)
    assert latest.impact == "medium"
    assert all(-1 <= p.correlation <= 1 for p in result.points)


def test_correlation_is_deterministic():
    account = make_account("a")
    posts = daily_posts(account, days=8, per_day=2, score=-0.6)
    engine = CorrelationEngine()

    first = engine.correlate_posts("ETH", posts, 14, accounts=[TrackedAccount(account)], now=NOW)
    second = engine.correlate_posts("ETH", posts, 14, accounts=[TrackedAccount(account)], now=NOW)

    assert first.accounts[0].points == second.accounts[0].points


def test_posts_outside_window_are_ignored():
    account = make_account("a")
    old = make_post("old", account, NOW - timedelta(days=45), score=0.9)
    report = CorrelationEngine().correlate_posts("BTC", [old], 30, accounts=[TrackedAccount(account)], now=NOW)
    assert report.total_posts == 0


def test_accounts_inferred_from_posts_use_influence_as_relevance():
    account = make_account("a")
    posts = daily_posts(account, days=1, per_day=1)
    report = CorrelationEngine().correlate_posts("BTC", posts, 7, now=NOW)

    assert [r.account.id for r in report.accounts] == ["a"]
    assert report.accounts[0].relevance_score == account.influence_score


def test_rejects_non_positive_window():
    with pytest.raises(ValueError):
        CorrelationEngine().correlate_posts("BTC", [], 0, now=NOW)


@pytest.mark.parametrize("total, label", [(51, "good"), (50, "limited"), (21, "limited"), (20, "insufficient"), (0, "insufficient")])
def test_data_quality_thresholds(total, label):
    assert data_quality_label(total) == label


def test_prediction_accuracy_bounds():
    assert prediction_accuracy([]) == 0.0
    assert prediction_accuracy([0.5] * 10) == pytest.approx(1.0)
    assert 0.0 <= prediction_accuracy([1.0, -1.0]) <= 1.0


def test_activity_anomaly_detection():
    assert detect_activity_anomaly([1, 2, 3]) == (False, 0.0, "Insufficient historical data")
    assert detect_activity_anomaly([4] * 10)[0] is False

    is_anomaly, confidence, reason = detect_activity_anomaly([1] * 19 + [20])
    assert is_anomaly
    assert 0.7 < confidence <= 0.95
    assert reason.startswith("Severe")


@pytest.mark.asyncio
async def test_correlate_reads_aggregator_snapshot(clock):
    aggregator = UnifiedAggregator(SyntheticSource(clock=clock), clock=clock)
    engine = CorrelationEngine(aggregator, clock=clock)

    report = await engine.correlate("btc", 30)
    snapshot = await aggregator.get_tweet_data("BTC", "7d")

    assert report.total_posts == snapshot.total_posts
    assert {r.account.id for r in report.accounts} == {p.account_id for p in snapshot.posts}
    scores = [r.combined_score for r in report.accounts]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_correlate_without_aggregator_raises():
    with pytest.raises(RuntimeError):
        await CorrelationEngine().correlate("BTC")


@pytest.mark.asyncio
async def test_long_window_is_cut_to_covered_history(clock):
    clock.advance(12 * 3600 * 1000)
    aggregator = UnifiedAggregator(SyntheticSource(clock=clock), clock=clock)
    engine = CorrelationEngine(aggregator, clock=clock)

    report = await engine.correlate("BTC", 30)

    assert report.requested_window_days == 30
    assert report.window_days == 8
    assert all(len(r.points) == 8 for r in report.accounts)
    daily_totals = [sum(r.points[i].post_count for r in report.accounts) for i in range(8)]
    assert all(total > 0 for total in daily_totals)


@pytest.mark.asyncio
async def test_short_window_is_kept(clock):
    aggregator = UnifiedAggregator(SyntheticSource(clock=clock), clock=clock)
    report = await CorrelationEngine(aggregator, clock=clock).correlate("BTC", 3)

    assert report.window_days == report.requested_window_days == 3
