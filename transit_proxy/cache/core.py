"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from enum import Enum


class CacheCategory(Enum):
    """Categories of data with different caching behaviors."""
    STATIC = "static"      # lines, stops, fares, geometry - hours to days
    DAILY = "daily"        # schedules - valid until local midnight
    REALTIME = "realtime"  # arrivals, live positions - seconds


def utc_now() -> datetime:
    """Timezone-aware current time; the default clock for stores."""
    return datetime.now(timezone.utc)


def make_cache_key(name: str, *params: Any) -> str:
    """
    Build a deterministic cache key from an operation name and its parameters.

    None is rendered as "-" so an omitted parameter never aliases a present one.
    """
    parts = [name]
    for param in params:
        parts.append("-" if param is None else str(param))
    return ":".join(parts)


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value with its write time and TTL.

    Frozen: a write replaces the whole entry, stored_at is never mutated.
    """
    key: str
    value: Any
    stored_at: datetime
    ttl_seconds: float
    category: CacheCategory
    size_bytes: int = 0

    @property
    def expires_at(self) -> datetime:
        return self.stored_at + timedelta(seconds=self.ttl_seconds)

    def age_seconds(self, now: datetime) -> float:
        """Seconds since the entry was written."""
        return (now - self.stored_at).total_seconds()

    def is_fresh(self, now: datetime) -> bool:
        """Fresh while now < stored_at + ttl."""
        return now < self.expires_at

    def stale_seconds(self, now: datetime) -> float:
        """Seconds past expiry (0 while fresh)."""
        return max(0.0, (now - self.expires_at).total_seconds())


@dataclass
class CacheResult:
    """
    Outcome of a cached read, as handed to the routing layer.

    hit is True whenever the payload came from the store, including
    degraded (stale) fallbacks.
    """
    key: str
    data: Any
    hit: bool
    category: Optional[CacheCategory]
    ttl_seconds: float
    stale: bool = False
    age_seconds: float = 0.0
    data_source: Optional[str] = None
    cache_type: Optional[str] = None
