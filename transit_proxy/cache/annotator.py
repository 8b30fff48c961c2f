"""
Cache provenance metadata attached to outgoing responses.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from .core import CacheResult


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, sent alongside the payload.

    max_age is what downstream caches may keep the response for: the
    entry's remaining lifetime, or 0 for degraded (stale) responses.
    """
    cache_hit: bool
    stale: bool
    category: Optional[str]
    cache_type: str
    max_age: int
    age_seconds: float
    data_source: Optional[str] = None

    def to_headers(self) -> Dict[str, str]:
        headers = {
            "Cache-Control": f"public, max-age={self.max_age}",
            "X-Cache-Type": self.cache_type,
            "X-Cache-Hit": "true" if self.cache_hit else "false",
            "X-Cache-Stale": "true" if self.stale else "false",
            "X-Cache-Age": str(int(self.age_seconds)),
        }
        if self.category:
            headers["X-Cache-Category"] = self.category
        if self.data_source:
            headers["X-Data-Source"] = self.data_source
        return headers

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON responses."""
        return {
            "cacheHit": self.cache_hit,
            "stale": self.stale,
            "category": self.category,
            "cacheType": self.cache_type,
            "maxAge": self.max_age,
            "age": round(self.age_seconds, 1),
            "dataSource": self.data_source,
        }


def annotate(result: CacheResult) -> CacheMeta:
    """Build CacheMeta for a result without touching its payload."""
    if result.stale:
        max_age = 0
    else:
        max_age = int(max(0.0, result.ttl_seconds - result.age_seconds))

    category = result.category.value if result.category else None
    return CacheMeta(
        cache_hit=result.hit,
        stale=result.stale,
        category=category,
        cache_type=result.cache_type or category or "none",
        max_age=max_age,
        age_seconds=result.age_seconds,
        data_source=result.data_source,
    )
