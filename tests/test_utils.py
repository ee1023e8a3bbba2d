import pytest

from signal_aggregator.monitoring.metrics import MetricsCollector
from signal_aggregator.utils import build_cache_key, parse_retry_after, retry, stable_seed


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.delays = []
        self.retry_attempts = 3
        self.retry_delay = 0.5

    async def sleep(self, seconds):
        self.delays.append(seconds)

    @retry(exceptions=(ConnectionError,))
    async def run(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("nope")
        return "done"


@pytest.mark.asyncio
async def test_retry_backs_off_exponentially():
    flaky = Flaky(failures=2)
    assert await flaky.run() == "done"
    assert flaky.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    flaky = Flaky(failures=5)
    with pytest.raises(ConnectionError):
        await flaky.run()
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_retry_ignores_unlisted_exceptions():
    flaky = Flaky(failures=1, error=ValueError)
    with pytest.raises(ValueError):
        await flaky.run()
    assert flaky.calls == 1


def test_retry_requires_coroutine_function():
    with pytest.raises(TypeError):
        @retry()
        def not_async():
            return None


@pytest.mark.parametrize("headers, expected", [
    ({"Retry-After": "30"}, 30_000),
    ({"retry-after": "1.5"}, 1500),
    ({"Retry-After": "soon"}, None),
    ({"Retry-After": "-1"}, None),
    ({}, None),
    (None, None),
])
def test_parse_retry_after(headers, expected):
    assert parse_retry_after(headers) == expected


def test_cache_key_and_seed_are_stable():
    assert build_cache_key("newsapi", "everything", {"q": "btc", "pageSize": 50}) == "newsapi:everything:pageSize=50&q=btc"
    assert stable_seed("posts", "BTC", "24h", 1) == stable_seed("posts", "BTC", "24h", 1)
    assert stable_seed("posts", "BTC", "24h", 1) != stable_seed("posts", "BTC", "24h", 2)


def test_metrics_snapshot():
    metrics = MetricsCollector()
    metrics.record_api_call("twitter", "tweets/search/recent", 0.25, 1024)
    metrics.record_error("twitter", "UpstreamUnavailable")

    snapshot = metrics.get_all_metrics()

    assert snapshot["counters"]["api_calls_total"] == 1
    assert snapshot["counters"]["api_response_size_bytes"] == 1024
    assert snapshot["counters"]["errors_total"] == 1
    assert snapshot["timings"]["api_duration_seconds"]["avg"] == pytest.approx(0.25)
    assert [p.tags["service"] for p in metrics.get_recent_metrics("api_calls_total")] == ["twitter"]

    metrics.reset()
    assert metrics.get_counter("api_calls_total") == 0


def test_metrics_break_down_by_service():
    metrics = MetricsCollector()
    metrics.increment("rate_limit_denied", tags={"service": "twitter"})
    metrics.increment("rate_limit_denied", tags={"service": "twitter"})
    metrics.increment("rate_limit_denied", tags={"service": "newsapi"})
    metrics.increment("rate_limit_denied")

    assert metrics.get_counter("rate_limit_denied") == 4
    assert metrics.get_counter("rate_limit_denied", service="twitter") == 2
    assert metrics.get_counter("rate_limit_denied", service="coingecko") == 0
    assert metrics.by_service("rate_limit_denied") == {"twitter": 2, "newsapi": 1}
    assert metrics.get_all_metrics()["by_service"]["rate_limit_denied"] == {"twitter": 2, "newsapi": 1}


def test_timing_percentiles():
    metrics = MetricsCollector()
    for value in range(1, 101):
        metrics.record_timing("api_duration_seconds", float(value))

    stats = metrics.get_timing_stats("api_duration_seconds")
    assert stats["count"] == 100
    assert stats["min"] == 1.0
    assert stats["max"] == 100.0
    assert stats["p50"] == pytest.approx(50.5)
    assert metrics.get_timing_stats("missing") == {}


def test_timing_samples_are_bounded():
    metrics = MetricsCollector(max_points=10)
    for value in range(100):
        metrics.record_timing("rate_limit_wait_seconds", float(value))

    assert len(metrics.timings["rate_limit_wait_seconds"]) == 10
    stats = metrics.get_timing_stats("rate_limit_wait_seconds")
    assert stats["count"] == 100
    assert stats["min"] == 0.0
    assert stats["p50"] == pytest.approx(94.5)
