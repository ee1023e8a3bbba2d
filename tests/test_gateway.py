import aiohttp
import pytest

from conftest import FakeResponse, FakeSession
from signal_aggregator.cache_manager import ResponseCache
from signal_aggregator.config import Config, RateLimitConfig
from signal_aggregator.exceptions import RateLimitExceeded, UpstreamHTTPError, UpstreamUnavailable
from signal_aggregator.gateway import NewsGateway, PriceGateway, SocialGateway
from signal_aggregator.rate_limiter import RateLimiter


def tweet(i, likes=10, **overrides):
    item = {
        "id": str(i),
        "text": f"$BTC bullish breakout number {i}",
        "author_id": "42",
        "created_at": "2026-01-01T00:00:00Z",
        "public_metrics": {"like_count": likes, "retweet_count": 1, "reply_count": 0, "quote_count": 0},
    }
    item.update(overrides)
    return item


def tweet_payload(tweets):
    return {
        "data": tweets,
        "includes": {"users": [{
            "id": "42",
            "username": "whale_watcher",
            "name": "Whale Watcher",
            "verified": True,
            "public_metrics": {"followers_count": 250_000},
        }]},
    }


def make_config(retry_after_ms=1000, max_requests=300):
    config = Config()
    config.api.twitter_bearer_token = "token"
    config.rate_limits["twitter"] = RateLimitConfig(max_requests, 15 * 60 * 1000, retry_after_ms)
    return config


def make_gateway(cls, session, clock, sleep, config=None):
    config = config or make_config()
    limiter = RateLimiter(config.rate_limit_windows(), clock=clock, sleep=sleep)
    cache = ResponseCache(prefix_ttl_ms=config.cache.prefix_ttl_ms, clock=clock)
    return cls(config, limiter, cache, session=session, sleep=sleep)


@pytest.mark.asyncio
async def test_search_recent_drops_malformed_items(clock, sleep):
    tweets = [tweet(i) for i in range(48)]
    tweets.append({"id": "bad1", "author_id": "42", "created_at": "2026-01-01T00:00:00Z"})
    tweets.append(tweet("bad2", public_metrics={"like_count": -5}))
    session = FakeSession(FakeResponse(200, tweet_payload(tweets)))
    gateway = make_gateway(SocialGateway, session, clock, sleep)

    posts = await gateway.search_recent("btc")

    assert len(posts) == 48
    assert gateway.get_metrics()["dropped_items"] == 2
    assert posts[0].account.username == "whale_watcher"
    assert posts[0].account.verified
    assert posts[0].sentiment == "positive"


@pytest.mark.asyncio
async def test_request_carries_bearer_token_and_string_params(clock, sleep):
    session = FakeSession(FakeResponse(200, tweet_payload([tweet(1)])))
    gateway = make_gateway(SocialGateway, session, clock, sleep)

    await gateway.search_recent("BTC", max_results=500)

    request = session.requests[0]
    assert request["url"] == "https://api.twitter.com/2/tweets/search/recent"
    assert request["headers"]["Authorization"] == "Bearer token"
    assert request["params"]["max_results"] == "100"
    assert all(isinstance(value, str) for value in request["params"].values())


@pytest.mark.asyncio
async def test_cache_hit_does_not_consume_quota(clock, sleep):
    session = FakeSession(FakeResponse(200, tweet_payload([tweet(1)])))
    gateway = make_gateway(SocialGateway, session, clock, sleep)

    first = await gateway.search_recent("BTC")
    clock.advance(60_000)
    second = await gateway.search_recent("BTC")

    assert first == second
    assert len(session.requests) == 1
    assert gateway.rate_limiter.get_status("twitter")["requests_in_window"] == 1


@pytest.mark.asyncio
async def test_cached_response_survives_exhausted_quota(clock, sleep):
    session = FakeSession(FakeResponse(200, tweet_payload([tweet(1)])))
    gateway = make_gateway(SocialGateway, session, clock, sleep, make_config(max_requests=1))

    await gateway.search_recent("BTC")
    posts = await gateway.search_recent("BTC")

    assert len(posts) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_429_waits_for_retry_after_then_succeeds(clock, sleep):
    session = FakeSession(
        FakeResponse(429, headers={"Retry-After": "2"}),
        FakeResponse(200, tweet_payload([tweet(1)])),
    )
    gateway = make_gateway(SocialGateway, session, clock, sleep, make_config(retry_after_ms=1000))

    posts = await gateway.search_recent("BTC")

    assert len(posts) == 1
    assert sleep.calls == [2.0]
    assert len(session.requests) == 2


@pytest.mark.asyncio
async def test_persistent_429_raises_rate_limit_exceeded(clock, sleep):
    session = FakeSession(FakeResponse(429))
    gateway = make_gateway(SocialGateway, session, clock, sleep, make_config(retry_after_ms=10))

    with pytest.raises(RateLimitExceeded):
        await gateway.search_recent("BTC")

    # First attempt plus three retries
    assert len(session.requests) == 4
    assert gateway.cache.stats()["size"] == 0


@pytest.mark.asyncio
async def test_5xx_retry_is_admitted_again(clock, sleep):
    session = FakeSession(
        FakeResponse(503),
        FakeResponse(200, tweet_payload([tweet(1)])),
    )
    gateway = make_gateway(SocialGateway, session, clock, sleep)

    posts = await gateway.search_recent("BTC")

    assert len(posts) == 1
    assert sleep.calls == [1.0]
    assert gateway.rate_limiter.get_status("twitter")["requests_in_window"] == len(session.requests) == 2


@pytest.mark.asyncio
async def test_5xx_retry_respects_exhausted_quota(clock, sleep):
    session = FakeSession(
        FakeResponse(503),
        FakeResponse(503),
        FakeResponse(200, tweet_payload([tweet(1)])),
    )
    gateway = make_gateway(SocialGateway, session, clock, sleep, make_config(retry_after_ms=10, max_requests=1))

    with pytest.raises(RateLimitExceeded):
        await gateway.search_recent("BTC")

    assert len(session.requests) == 1
    assert gateway.rate_limiter.get_status("twitter")["requests_in_window"] == 1
    assert sleep.calls == [1.0]
    assert gateway.rate_limiter.get_status("twitter")["requests_in_window"] == 1


@pytest.mark.asyncio
async def test_network_failure_becomes_upstream_unavailable(clock, sleep):
    session = FakeSession(aiohttp.ClientConnectionError("boom"))
    gateway = make_gateway(SocialGateway, session, clock, sleep)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        await gateway.search_recent("BTC")

    assert excinfo.value.service == "twitter"
    assert len(session.requests) == 3
    assert sleep.calls == [1.0, 2.0]
    assert gateway.get_metrics()["errors"] == 3


@pytest.mark.asyncio
async def test_client_error_is_not_retried(clock, sleep):
    session = FakeSession(FakeResponse(404, body="not found"))
    gateway = make_gateway(NewsGateway, session, clock, sleep)

    with pytest.raises(UpstreamHTTPError) as excinfo:
        await gateway.search("bitcoin")

    assert excinfo.value.status == 404
    assert not excinfo.value.retryable
    assert len(session.requests) == 1


@pytest.mark.asyncio
async def test_news_search_normalizes_articles(clock, sleep):
    payload = {"articles": [
        {
            "title": "Bitcoin ETF approval sparks rally",
            "url": "https://example.com/a",
            "description": "Institutional money flows in",
            "source": {"name": "Example"},
            "publishedAt": "2026-01-01T08:00:00Z",
        },
        {"title": "No url here", "publishedAt": "2026-01-01T08:00:00Z"},
    ]}
    session = FakeSession(FakeResponse(200, payload))
    gateway = make_gateway(NewsGateway, session, clock, sleep)

    articles = await gateway.search("bitcoin")

    assert [a.url for a in articles] == ["https://example.com/a"]
    assert articles[0].source == "Example"
    assert articles[0].published_at.tzinfo is not None


@pytest.mark.asyncio
async def test_price_market_chart(clock, sleep):
    payload = {"prices": [[1_767_225_600_000, 100.0], [1_767_312_000_000, 110.0], ["bad", None]]}
    session = FakeSession(FakeResponse(200, payload))
    gateway = make_gateway(PriceGateway, session, clock, sleep)

    points = await gateway.get_market_chart("btc", days=2)

    assert session.requests[0]["url"].endswith("/coins/bitcoin/market_chart")
    assert [p.price for p in points] == [100.0, 110.0]
    assert points[0].change_pct is None
    assert points[1].change_pct == pytest.approx(10.0)
    assert points[1].symbol == "BTC"


@pytest.mark.asyncio
async def test_simple_price(clock, sleep):
    session = FakeSession(FakeResponse(200, {"bitcoin": {"usd": 50_000}, "ethereum": {}}))
    gateway = make_gateway(PriceGateway, session, clock, sleep)

    prices = await gateway.get_simple_price(["btc", "eth"])

    assert prices == {"BTC": 50_000.0}
    assert session.requests[0]["params"]["ids"] == "bitcoin,ethereum"


@pytest.mark.asyncio
async def test_close_leaves_injected_session_open(clock, sleep):
    session = FakeSession(FakeResponse(200, {}))
    gateway = make_gateway(PriceGateway, session, clock, sleep)
    await gateway.close()
    assert not session.closed
