"""
Simple in-memory TTL cache.

Used for tenant role lookups; swap the instance for a shared store when
running more than one worker.
"""
from typing import Optional, Any, Callable
from datetime import datetime, timedelta
import logging
import threading

logger = logging.getLogger(__name__)


class SimpleCache:
    """In-memory cache with TTL support and size limit."""

    MAX_ENTRIES = 10000  # Prevent unbounded memory growth

    def __init__(self, default_ttl_seconds: int = 300, clock: Callable[[], datetime] = datetime.now):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._cache: dict = {}
        self._expiry: dict = {}
        self._lock = threading.Lock()

    def _evict_expired(self):
        """Remove expired entries to reclaim memory."""
        now = self._clock()
        expired = [k for k, exp in self._expiry.items() if exp <= now]
        for k in expired:
            self._cache.pop(k, None)
            self._expiry.pop(k, None)

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        with self._lock:
            if key in self._cache:
                if self._clock() < self._expiry.get(key, datetime.min):
                    return self._cache[key]
                # Expired
                del self._cache[key]
                del self._expiry[key]
        return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        """Set value in cache with TTL."""
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if len(self._cache) >= self.MAX_ENTRIES:
                self._evict_expired()
            # If still at limit after eviction, remove oldest entries
            if len(self._cache) >= self.MAX_ENTRIES:
                oldest_keys = sorted(self._expiry, key=self._expiry.get)[:100]
                for k in oldest_keys:
                    self._cache.pop(k, None)
                    self._expiry.pop(k, None)
            self._cache[key] = value
            self._expiry[key] = self._clock() + timedelta(seconds=ttl)

    def delete(self, key: str):
        """Delete key from cache."""
        with self._lock:
            self._cache.pop(key, None)
            self._expiry.pop(key, None)

    def clear_prefix(self, prefix: str):
        """Clear all keys with given prefix."""
        with self._lock:
            keys_to_delete = [k for k in self._cache.keys() if k.startswith(prefix)]
            for key in keys_to_delete:
                self._cache.pop(key, None)
                self._expiry.pop(key, None)
        if keys_to_delete:
            logger.debug(f"Cache cleared {len(keys_to_delete)} keys with prefix {prefix!r}")

    def clear(self):
        """Clear entire cache."""
        with self._lock:
            self._cache.clear()
            self._expiry.clear()

    def stats(self) -> dict:
        """Get cache statistics."""
        now = self._clock()
        valid = sum(1 for exp in self._expiry.values() if exp > now)
        return {
            "total_keys": len(self._cache),
            "valid_keys": valid,
            "expired_keys": len(self._cache) - valid,
        }


# Cache key prefixes
class CacheKeys:
    ROLES = "roles"
