"""
Response caching for upstream calls.

This module handles:
- In-memory TTL caching keyed by logical request signature
- FIFO capacity eviction
- Expired entry cleanup
- Hit/miss statistics
"""

import logging
import threading
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional

from .models import CacheEntry
from .monitoring.metrics import MetricsCollector
from .utils import build_cache_key, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 5 * 60 * 1000
DEFAULT_MAX_SIZE = 1000


class ResponseCache:
    """
    Bounded TTL cache.

    Features:
    - Lazy expiry on read
    - Oldest-inserted-first eviction (insertion order only, reads never reorder)
    - Per key-prefix TTL table
    - Performance metrics
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        prefix_ttl_ms: Optional[Dict[str, int]] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = now_ms,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self.prefix_ttl_ms = dict(prefix_ttl_ms or {})
        self.metrics = metrics or MetricsCollector()
        self.clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0

        logger.info(f"Initialized ResponseCache (max_size={max_size}, default_ttl={default_ttl_ms}ms)")

    @staticmethod
    def build_key(namespace: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        return build_cache_key(namespace, endpoint, params)

    def _ttl_for_key(self, key: str) -> int:
        matches = [prefix for prefix in self.prefix_ttl_ms if key.startswith(prefix)]
        if not matches:
            return self.default_ttl_ms
        return self.prefix_ttl_ms[max(matches, key=len)]

    def get(self, key: str) -> Optional[Any]:
        """
        Get item from cache.

        Args:
            key: Cache key

        Returns:
            Cached value, or None when absent or expired
        """
        with self.lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(self.clock()):
                del self._entries[key]
                logger.debug(f"Cache item expired and removed: {key}")
                entry = None

            if entry is None:
                self.misses += 1
                self.metrics.record_cache_miss()
                return None

            self.hits += 1
            self.metrics.record_cache_hit()

        logger.debug(f"Cache hit: {key}")
        return entry.value

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None):
        """
        Set item in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl_ms: Time to live in milliseconds; falls back to the prefix table, then the default
        """
        ttl = ttl_ms if ttl_ms is not None else self._ttl_for_key(key)

        with self.lock:
            entry = CacheEntry(key=key, value=value, stored_at_ms=self.clock(), ttl_ms=ttl)

            if key in self._entries:
                self._entries[key] = entry
            else:
                if len(self._entries) >= self.max_size:
                    evicted_key, _ = self._entries.popitem(last=False)
                    self.evictions += 1
                    logger.debug(f"Evicted oldest cache item: {evicted_key}")
                self._entries[key] = entry

        logger.debug(f"Cache set: {key} (expires in {ttl}ms)")

    def has(self, key: str) -> bool:
        """Check if key exists and is not expired, without touching statistics."""
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self.clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self.lock:
            deleted = self._entries.pop(key, None) is not None
        if deleted:
            logger.debug(f"Cache item deleted: {key}")
        return deleted

    def delete_matching(self, predicate: Callable[[str], bool]) -> int:
        """Delete every key for which ``predicate`` is true."""
        with self.lock:
            keys = [key for key in self._entries if predicate(key)]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self):
        """Clear all cache."""
        with self.lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info(f"Cache cleared: {size} items removed")

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None,
    ) -> Any:
        """Return the cached value, or await ``factory`` and cache its result."""
        cached = self.get(key)
        if cached is not None:
            return cached

        logger.debug(f"Cache miss: {key}, fetching data...")
        value = await factory()
        self.set(key, value, ttl_ms)
        return value

    def cleanup_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""
        with self.lock:
            now = self.clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info(f"Cache cleanup: removed {len(expired)} expired items")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            total_requests = self.hits + self.misses
            keys = list(self._entries)
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hit_rate": (self.hits / total_requests) if total_requests > 0 else 0.0,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "oldest_key": keys[0] if keys else None,
                "newest_key": keys[-1] if keys else None,
            }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)
