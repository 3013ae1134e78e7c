"""
Bounded in-memory cache with TTL expiry and LRU eviction.

Instances are created explicitly and injected where needed (for example
into the geolocation resolver), so a deployment can swap one for a
shared store without touching callers.
"""
import time
import logging
import threading
from typing import Dict, Any, Optional, Callable, TypeVar, Generic
from dataclasses import dataclass, field
from collections import OrderedDict

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""
    value: T
    created_at: float
    expires_at: Optional[float]
    access_count: int = 0
    last_accessed_at: float = field(default_factory=time.monotonic)

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now > self.expires_at


class Cache(Generic[T]):
    """
    Thread-safe in-memory cache with TTL and LRU eviction.

    Features:
    - TTL (Time To Live) expiration
    - LRU (Least Recently Used) eviction once ``max_size`` is reached
    - Statistics tracking
    """

    def __init__(
        self,
        name: str,
        max_size: int = 1000,
        default_ttl_seconds: Optional[float] = 300,
        time_func: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.name = name
        self.max_size = max_size
        self.default_ttl_seconds = default_ttl_seconds
        self._time = time_func

        self._cache: "OrderedDict[str, CacheEntry[T]]" = OrderedDict()
        self._lock = threading.RLock()

        # Stats
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[T]:
        """
        Get a value from the cache.

        Returns None if key doesn't exist or is expired.
        """
        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                return None

            now = self._time()
            if entry.is_expired(now):
                self._remove(key)
                self._misses += 1
                return None

            # Move to end (most recently used)
            self._cache.move_to_end(key)
            entry.access_count += 1
            entry.last_accessed_at = now

            self._hits += 1
            return entry.value

    def set(
        self,
        key: str,
        value: T,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """
        Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl_seconds: Time to live (None uses default, 0 means no expiration)
        """
        with self._lock:
            if ttl_seconds is None:
                ttl_seconds = self.default_ttl_seconds

            now = self._time()
            expires_at = None
            if ttl_seconds is not None and ttl_seconds > 0:
                expires_at = now + ttl_seconds

            if key in self._cache:
                self._remove(key)

            # Evict if necessary
            while len(self._cache) >= self.max_size:
                self._evict_oldest()

            self._cache[key] = CacheEntry(
                value=value,
                created_at=now,
                expires_at=expires_at,
                last_accessed_at=now,
            )

    def delete(self, key: str) -> bool:
        """Delete a key from the cache."""
        with self._lock:
            return self._remove(key)

    def clear(self) -> int:
        """Clear all entries from the cache."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            logger.info(f"Cache '{self.name}': Cleared {count} entries")
            return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries."""
        with self._lock:
            now = self._time()
            expired_keys = [
                key for key, entry in self._cache.items()
                if entry.is_expired(now)
            ]

            for key in expired_keys:
                self._remove(key)

            return len(expired_keys)

    def _remove(self, key: str) -> bool:
        if key in self._cache:
            del self._cache[key]
            return True
        return False

    def _evict_oldest(self) -> None:
        """Evict the least recently used entry."""
        if self._cache:
            key = next(iter(self._cache))
            self._remove(key)
            self._evictions += 1

    @property
    def size(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0.0

        return {
            "name": self.name,
            "size": len(self._cache),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(hit_rate, 4),
            "evictions": self._evictions,
        }
