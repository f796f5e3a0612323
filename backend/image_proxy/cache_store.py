"""
Image Cache Store
图片内存缓存

Thread-safe in-memory cache for small, frequently requested images.

Features:
- Per-object size ceiling (large images are never cached)
- Total byte budget across all entries
- TTL-based expiration
- Oldest-first eviction by insertion time when over budget

Hits do not refresh an entry's eviction priority: the cache is ordered
by insertion time, not by access recency.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached image. Entries are replaced wholesale, never mutated."""
    key: str
    data: bytes
    content_type: str
    inserted_at: float

    @property
    def size(self) -> int:
        return len(self.data)

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.inserted_at >= ttl_seconds


class ImageCacheStore:
    """
    Bounded, self-cleaning key -> image cache.

    Usage:
        cache = ImageCacheStore(max_total_size=50 * 1024 * 1024)
        cache.insert("hero/sunset.jpg", data, "image/jpeg")
        entry = cache.lookup("hero/sunset.jpg")
    """

    def __init__(
        self,
        max_total_size: int = 50 * 1024 * 1024,
        max_file_size: int = 1024 * 1024,
        ttl_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_total_size = max_total_size
        self.max_file_size = max_file_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

        # Counters for stats()
        self._hits = 0
        self._misses = 0
        self._expired = 0
        self._evicted = 0
        self._skipped_oversize = 0

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """
        Get a cached image by key.

        Returns:
            CacheEntry if present and not expired, None otherwise.
            An expired entry is dropped on the way out.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock(), self.ttl_seconds):
                del self._entries[key]
                self._expired += 1
                self._misses += 1
                logger.debug(f"[ImageCache] Expired: {key}")
                return None

            self._hits += 1
            return entry

    def insert(self, key: str, data: bytes, content_type: str) -> Optional[CacheEntry]:
        """
        Cache an image.

        Objects larger than max_file_size are not cached. The cache is
        cleaned up before the new entry is stored.

        Returns:
            The stored CacheEntry, or None if the object was too large.
        """
        if len(data) > self.max_file_size:
            with self._lock:
                self._skipped_oversize += 1
            logger.debug(f"[ImageCache] Too large to cache ({len(data)} bytes): {key}")
            return None

        with self._lock:
            self._cleanup_locked()
            entry = CacheEntry(
                key=key,
                data=bytes(data),
                content_type=content_type,
                inserted_at=self._clock(),
            )
            self._entries[key] = entry
            logger.debug(f"[ImageCache] Cached: {key} ({entry.size} bytes)")
            return entry

    def cleanup(self) -> int:
        """
        Remove expired entries, then evict oldest entries until the
        total size fits the budget.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            return self._cleanup_locked()

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if it was cached."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """
        Clear all cached images.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            logger.info(f"[ImageCache] Cleared all {count} entries")
            return count

    def total_size(self) -> int:
        with self._lock:
            return sum(entry.size for entry in self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_size = sum(entry.size for entry in self._entries.values())
            return {
                "total_entries": len(self._entries),
                "total_size_bytes": total_size,
                "total_size_mb": round(total_size / (1024 * 1024), 2),
                "max_total_size_bytes": self.max_total_size,
                "max_file_size_bytes": self.max_file_size,
                "usage_percent": round(total_size / self.max_total_size * 100, 1) if self.max_total_size > 0 else 0,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "expired": self._expired,
                "evicted": self._evicted,
                "skipped_oversize": self._skipped_oversize,
            }

    def _cleanup_locked(self) -> int:
        """Two-phase reclaim (internal, assumes lock held)."""
        now = self._clock()

        # Phase 1: drop everything past its TTL
        expired = [
            key for key, entry in self._entries.items()
            if entry.is_expired(now, self.ttl_seconds)
        ]
        for key in expired:
            del self._entries[key]
        self._expired += len(expired)

        # Phase 2: oldest-first eviction until within budget
        total_size = sum(entry.size for entry in self._entries.values())
        evicted = 0
        if total_size > self.max_total_size:
            oldest_first = sorted(
                self._entries.values(),
                key=lambda e: e.inserted_at,
            )
            for entry in oldest_first:
                if total_size <= self.max_total_size:
                    break
                del self._entries[entry.key]
                total_size -= entry.size
                evicted += 1
            self._evicted += evicted
            logger.info(f"[ImageCache] Evicted {evicted} entries to fit {self.max_total_size} bytes")

        if expired:
            logger.info(f"[ImageCache] Cleaned up {len(expired)} expired entries")

        return len(expired) + evicted
