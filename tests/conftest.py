from collections import deque
from datetime import datetime, timezone

import pytest

from signal_aggregator.models import AccountProfile, EngagementCounts, NormalizedPost

START_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: float = START_MS):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


class RecordingSleep:
    """Async sleep stand-in that records delays and advances the clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(seconds * 1000)


class FakeResponse:
    def __init__(self, status: int = 200, payload=None, headers=None, body: str = ""):
        self.status = status
        self.payload = payload
        self.headers = headers or {}
        self.body = body

    async def json(self, content_type=None):
        return self.payload

    async def text(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Minimal aiohttp.ClientSession double.

    Responses are served in order; the last one repeats once the queue
    runs dry. An exception instance in the queue is raised instead.
    """

    def __init__(self, *responses):
        self.responses = deque(responses)
        self.requests = []
        self.closed = False

    def get(self, url, params=None, headers=None):
        self.requests.append({"url": url, "params": params or {}, "headers": headers or {}})
        response = self.responses.popleft() if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


def make_account(account_id: str = "u1", username: str = None, followers: int = 1000, verified: bool = False):
    return AccountProfile(
        id=account_id,
        username=username or f"user_{account_id}",
        display_name=f"User {account_id}",
        followers_count=followers,
        verified=verified,
    )


def make_post(
    post_id: str = "p1",
    account: AccountProfile = None,
    published_at: datetime = None,
    score: float = 0.0,
    impact: str = "low",
    likes: int = 0,
    content: str = "BTC update",
):
    account = account or make_account()
    if score > 0:
        sentiment = "positive"
    elif score < 0:
        sentiment = "negative"
    else:
        sentiment = "neutral"
    return NormalizedPost(
        id=post_id,
        account_id=account.id,
        content=content,
        published_at=published_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
        sentiment=sentiment,
        sentiment_score=score,
        impact=impact,
        impact_score=0.5,
        engagement=EngagementCounts(like_count=likes),
        account=account,
    )
