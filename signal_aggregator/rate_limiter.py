"""
Per-service API rate limiting for upstream providers.

This module handles:
- Sliding-window admission control, one window per upstream service
- Bounded wait-and-retry on denied admissions
- 429-aware backoff driven by the upstream Retry-After header
- Performance monitoring
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Mapping, Optional, TypeVar

from .exceptions import RateLimitExceeded
from .models import AdmissionResult, RateLimitWindow, RequestRecord
from .monitoring.metrics import MetricsCollector
from .utils import now_ms, parse_retry_after

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3


@dataclass
class RateLimitMetrics:
    """Metrics for rate limiter performance."""
    requests_admitted: int = 0
    requests_denied: int = 0
    upstream_429s: int = 0
    total_wait_ms: float = 0.0
    max_wait_ms: float = 0.0
    exhausted: int = 0


def _status_of(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from an upstream error."""
    for attr in ("status", "status_code"):
        status = getattr(error, attr, None)
        if isinstance(status, int):
            return status
    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status", "status_code"):
            status = getattr(response, attr, None)
            if isinstance(status, int):
                return status
    return None


def _headers_of(error: BaseException) -> Optional[Mapping[str, str]]:
    headers = getattr(error, "headers", None)
    if headers is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    return headers


class RateLimiter:
    """
    Sliding-window rate limiter keyed by upstream service name.

    Each service owns an ordered deque of RequestRecord inside its own
    window; services never interfere with each other. Sleeping suspends
    only the calling task.
    """

    def __init__(
        self,
        windows: Mapping[str, RateLimitWindow],
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.windows: Dict[str, RateLimitWindow] = dict(windows)
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.sleep = sleep

        self._history: Dict[str, Deque[RequestRecord]] = defaultdict(deque)
        self.metrics_data: Dict[str, RateLimitMetrics] = defaultdict(RateLimitMetrics)

        self.lock = asyncio.Lock()

        logger.info(
            "Initialized RateLimiter for services: "
            + ", ".join(f"{w.service_name}={w.max_requests}/{w.window_duration_ms}ms" for w in self.windows.values())
        )

    def _prune(self, service_name: str, window: RateLimitWindow, now: float) -> Deque[RequestRecord]:
        history = self._history[service_name]
        window_start = now - window.window_duration_ms
        while history and history[0].timestamp_ms <= window_start:
            history.popleft()
        return history

    async def admit(self, service_name: str) -> AdmissionResult:
        """
        Check whether a request to ``service_name`` may go out now.

        Admission records the request; a denial carries the service's
        configured retry delay.
        """
        window = self.windows.get(service_name)
        if window is None:
            logger.warning(f"No rate limit config found for service: {service_name}")
            return AdmissionResult(allowed=True)

        async with self.lock:
            now = self.clock()
            history = self._prune(service_name, window, now)
            total = sum(record.count for record in history)

            if total >= window.max_requests:
                self.metrics_data[service_name].requests_denied += 1
                self.metrics.increment("rate_limit_denied", tags={"service": service_name})
                logger.warning(
                    f"Rate limit exceeded for {service_name}: "
                    f"{total}/{window.max_requests} requests in window"
                )
                return AdmissionResult(allowed=False, retry_after_ms=window.retry_after_ms)

            history.append(RequestRecord(timestamp_ms=now, count=1))
            self.metrics_data[service_name].requests_admitted += 1
            self.metrics.increment("rate_limit_admitted", tags={"service": service_name})

        logger.debug(f"Rate limit check passed for {service_name}: {total + 1}/{window.max_requests} requests")
        return AdmissionResult(allowed=True)

    async def _wait(self, service_name: str, wait_ms: float):
        logger.info(f"Waiting {wait_ms:.0f}ms for {service_name} rate limit to reset...")
        stats = self.metrics_data[service_name]
        stats.total_wait_ms += wait_ms
        stats.max_wait_ms = max(stats.max_wait_ms, wait_ms)
        self.metrics.record_timing("rate_limit_wait_seconds", wait_ms / 1000, tags={"service": service_name})
        await self.sleep(wait_ms / 1000)

    async def execute_with_rate_limit(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> T:
        """
        Run ``action`` under the service's quota.

        Args:
            service_name: Upstream service whose window applies
            action: Zero-argument coroutine factory performing the call
            max_retries: Retries allowed after the first attempt

        Returns:
            Whatever ``action`` returns

        Raises:
            RateLimitExceeded: admission denied or upstream 429 on the last attempt
        """
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")

        window = self.windows.get(service_name)
        configured_retry_ms = window.retry_after_ms if window else 0
        retries = 0

        while retries <= max_retries:
            admission = await self.admit(service_name)

            if not admission.allowed:
                if retries >= max_retries:
                    self.metrics_data[service_name].exhausted += 1
                    raise RateLimitExceeded(service_name, retries)
                await self._wait(service_name, admission.retry_after_ms or 0)
                retries += 1
                continue

            try:
                return await action()
            except Exception as e:
                if _status_of(e) != 429:
                    raise

                self.metrics_data[service_name].upstream_429s += 1
                self.metrics.increment("rate_limit_upstream_429", tags={"service": service_name})
                header_ms = parse_retry_after(_headers_of(e)) or 0
                wait_ms = max(header_ms, configured_retry_ms)
                logger.warning(f"API returned 429 for {service_name}, waiting {wait_ms}ms...")

                if retries >= max_retries:
                    self.metrics_data[service_name].exhausted += 1
                    raise RateLimitExceeded(
                        service_name,
                        retries,
                        f"API rate limit exceeded for {service_name} after {retries} retries",
                    ) from e

                await self._wait(service_name, wait_ms)
                retries += 1

        raise RateLimitExceeded(service_name, max_retries)

    def get_status(self, service_name: str) -> Dict[str, float]:
        """Get current window usage for a service."""
        window = self.windows.get(service_name)
        if window is None:
            return {"requests_in_window": 0, "max_requests": 0, "window_ms": 0, "reset_time_ms": 0}

        now = self.clock()
        window_start = now - window.window_duration_ms
        recent = [r for r in self._history.get(service_name, ()) if r.timestamp_ms > window_start]
        reset_time = recent[0].timestamp_ms + window.window_duration_ms if recent else now

        return {
            "requests_in_window": sum(r.count for r in recent),
            "max_requests": window.max_requests,
            "window_ms": window.window_duration_ms,
            "reset_time_ms": reset_time,
        }

    def clear_history(self, service_name: Optional[str] = None):
        """Forget recorded requests for one service, or all of them."""
        if service_name is None:
            self._history.clear()
            logger.info("Cleared rate limit history for all services")
        else:
            self._history.pop(service_name, None)
            logger.info(f"Cleared rate limit history for {service_name}")

    def get_metrics(self) -> Dict[str, Dict[str, float]]:
        """Get rate limiter metrics per service."""
        return {
            service: {
                "requests_admitted": stats.requests_admitted,
                "requests_denied": stats.requests_denied,
                "upstream_429s": stats.upstream_429s,
                "total_wait_ms": stats.total_wait_ms,
                "max_wait_ms": stats.max_wait_ms,
                "exhausted": stats.exhausted,
                "limit_rate": (
                    stats.requests_denied /
                    max(1, stats.requests_admitted + stats.requests_denied) * 100
                ),
            }
            for service, stats in self.metrics_data.items()
        }
