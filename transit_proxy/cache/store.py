"""
In-memory cache store partitioned by data category.

Each category owns its own dict and lock, so the same key in two
categories never collides and writes in one partition never wait on
another. Expiry is checked lazily by readers; nothing is deleted when
an entry goes stale.
"""
import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .core import CacheCategory, CacheEntry, utc_now

logger = logging.getLogger("cache.store")


def estimate_size(value: Any) -> int:
    """Approximate payload size in bytes (serialized JSON length)."""
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return 0


class _Partition:
    def __init__(self):
        self.entries: Dict[str, CacheEntry] = {}
        self.lock = threading.Lock()


class CacheStore:
    """
    Key -> CacheEntry mapping with one partition per CacheCategory.

    Usage:
        store = CacheStore()
        store.put(CacheCategory.REALTIME, "arrivals:42", payload, ttl_seconds=15)
        entry = store.get(CacheCategory.REALTIME, "arrivals:42")
        if entry and store.is_fresh(entry):
            ...
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        """
        Args:
            clock: Returns the current timezone-aware time; tests pass a fake
        """
        self._clock = clock
        self._partitions: Dict[CacheCategory, _Partition] = {
            category: _Partition() for category in CacheCategory
        }

    def now(self) -> datetime:
        return self._clock()

    def get(self, category: CacheCategory, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, fresh or stale, or None."""
        partition = self._partitions[category]
        with partition.lock:
            return partition.entries.get(key)

    def put(
        self,
        category: CacheCategory,
        key: str,
        value: Any,
        ttl_seconds: float,
    ) -> CacheEntry:
        """Store value under key, replacing any previous entry atomically."""
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl_seconds=ttl_seconds,
            category=category,
            size_bytes=estimate_size(value),
        )
        partition = self._partitions[category]
        with partition.lock:
            partition.entries[key] = entry
        logger.debug(f"Stored {category.value}/{key} for {ttl_seconds:.0f}s")
        return entry

    def is_fresh(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        return entry.is_fresh(now if now is not None else self._clock())

    def clear(self, category: Optional[CacheCategory] = None) -> int:
        """
        Remove every entry in one category, or in all of them.

        Returns:
            Number of entries removed
        """
        categories = [category] if category is not None else list(CacheCategory)
        removed = 0
        for cat in categories:
            partition = self._partitions[cat]
            with partition.lock:
                removed += len(partition.entries)
                partition.entries.clear()
        logger.info(
            f"Cleared {removed} entries from "
            f"{category.value if category else 'all partitions'}"
        )
        return removed

    def purge_stale(self, max_stale_seconds: float) -> int:
        """
        Delete entries that have been stale for longer than max_stale_seconds.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        for partition in self._partitions.values():
            with partition.lock:
                expired = [
                    key for key, entry in partition.entries.items()
                    if entry.stale_seconds(now) > max_stale_seconds
                ]
                for key in expired:
                    del partition.entries[key]
                removed += len(expired)
        if removed:
            logger.info(f"Purged {removed} over-aged stale entries")
        return removed

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Per-category entry count and approximate size, plus totals."""
        result: Dict[str, Dict[str, int]] = {}
        total_count = 0
        total_size = 0
        for category, partition in self._partitions.items():
            with partition.lock:
                count = len(partition.entries)
                size = sum(e.size_bytes for e in partition.entries.values())
            result[category.value] = {"count": count, "size": size}
            total_count += count
            total_size += size
        result["total"] = {"count": total_count, "size": total_size}
        return result

    def __len__(self) -> int:
        return sum(len(p.entries) for p in self._partitions.values())
