"""
Error taxonomy for the signal aggregator.

Cache and rate-limiter internals never raise these to callers; they are
raised by gateways and the retry loop once their bounds are exhausted.
"""

from typing import Any, Mapping, Optional


class SignalAggregatorError(Exception):
    """Base class for all package errors."""
    retryable = False


class RateLimitExceeded(SignalAggregatorError):
    """Admission or upstream 429 retries exhausted for a service."""
    retryable = True

    def __init__(self, service: str, retries: int, message: Optional[str] = None):
        self.service = service
        self.retries = retries
        super().__init__(message or f"Rate limit exceeded for {service} after {retries} retries")


class UpstreamHTTPError(SignalAggregatorError):
    """Upstream answered with a non-success status."""

    def __init__(
        self,
        service: str,
        status: int,
        headers: Optional[Mapping[str, str]] = None,
        message: str = "",
    ):
        self.service = service
        self.status = status
        self.headers = dict(headers or {})
        super().__init__(message or f"{service} returned HTTP {status}")

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class UpstreamUnavailable(SignalAggregatorError):
    """Network failure or 5xx after bounded retries."""
    retryable = True

    def __init__(self, service: str, cause: Optional[BaseException] = None):
        self.service = service
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{service} unavailable{detail}")


class NormalizationError(SignalAggregatorError):
    """A single upstream item could not be mapped to the shared contract."""

    def __init__(self, message: str, item: Any = None):
        self.item = item
        super().__init__(message)
