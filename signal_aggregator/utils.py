"""
Utility functions for the signal aggregator.

This module provides:
- Retry mechanisms for transient upstream failures
- Cache key construction
- Retry-After parsing
- Clock, seeding and math helpers
"""

import time
import asyncio
import hashlib
import inspect
import logging
from typing import Dict, Any, Optional, Callable, Mapping
from functools import wraps
from datetime import datetime, timezone

import numpy as np

logger = logging.getLogger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None
):
    """
    Retry decorator with exponential backoff for coroutine functions.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by for each retry
        exceptions: Tuple of exceptions to catch and retry on
        on_retry: Optional callback function called on each retry

    ``max_attempts`` and ``delay`` may be overridden per instance through
    ``retry_attempts`` / ``retry_delay`` attributes on ``self``.
    """
    def decorator(func):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"retry() requires a coroutine function, got {func.__name__}")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            owner = args[0] if args else None
            attempts = getattr(owner, "retry_attempts", max_attempts)
            base_delay = getattr(owner, "retry_delay", delay)
            sleep = getattr(owner, "sleep", asyncio.sleep)
            last_exception = None

            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e

                    if attempt < attempts:
                        current_delay = base_delay * (backoff_factor ** (attempt - 1))
                        current_delay = min(current_delay, 60)  # Cap at 60 seconds

                        logger.warning(
                            f"Attempt {attempt}/{attempts} failed for {func.__name__}. "
                            f"Retrying in {current_delay:.2f}s. Error: {str(e)}"
                        )

                        if on_retry:
                            on_retry(e, attempt)

                        await sleep(current_delay)

            logger.error(
                f"All {attempts} attempts failed for {func.__name__}. "
                f"Final error: {str(last_exception)}"
            )
            raise last_exception
        return wrapper
    return decorator


def build_cache_key(namespace: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a deterministic cache key for an upstream request.

    Identical logical requests collide on the same key regardless of the
    order parameters were supplied in.

    Args:
        namespace: Upstream service name (e.g. 'coingecko')
        endpoint: Endpoint path relative to the service base URL
        params: Request parameters

    Returns:
        Key of the form ``namespace:endpoint:k1=v1&k2=v2``
    """
    params = params or {}
    query_string = "&".join([f"{key}={params[key]}" for key in sorted(params)])
    return f"{namespace}:{endpoint.strip('/')}:{query_string}"


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    """Parse a Retry-After header given in seconds into milliseconds."""
    if not headers:
        return None

    value = None
    for name, header_value in headers.items():
        if name.lower() == "retry-after":
            value = header_value
            break

    if value is None:
        return None

    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None

    if seconds < 0:
        return None
    return int(seconds * 1000)


def now_ms() -> float:
    """Wall clock in milliseconds."""
    return time.time() * 1000


def ms_to_datetime(value_ms: float) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)


def clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def stable_seed(*parts: Any) -> int:
    """
    Derive a reproducible 64-bit seed from arbitrary parts.

    ``hash()`` is salted per process, so a digest is used instead.
    """
    text = "|".join(str(part) for part in parts)
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def seeded_rng(*parts: Any) -> np.random.Generator:
    return np.random.default_rng(stable_seed(*parts))


def safe_divide(numerator: float, denominator: float, fill_value: float = 0.0) -> float:
    """Divide, returning ``fill_value`` when the denominator is zero."""
    if denominator == 0:
        return fill_value
    return numerator / denominator
