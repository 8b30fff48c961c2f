"""
Tiered-TTL caching with request coalescing and stale fallback.
"""
from .core import CacheCategory, CacheEntry, CacheResult, make_cache_key, utc_now
from .store import CacheStore
from .ttl_policies import (
    CachePolicy,
    build_mirror_policies,
    build_server_policies,
    cache_type_label,
    seconds_until_midnight,
)
from .coalescer import RequestCoalescer
from .manager import CacheManager
from .annotator import CacheMeta, annotate
from .sweeper import CacheSweeper

__all__ = [
    # Core types
    "CacheCategory",
    "CacheEntry",
    "CacheResult",
    "make_cache_key",
    "utc_now",
    # Store
    "CacheStore",
    # TTL policies
    "CachePolicy",
    "build_mirror_policies",
    "build_server_policies",
    "cache_type_label",
    "seconds_until_midnight",
    # Coalescing
    "RequestCoalescer",
    # Orchestration
    "CacheManager",
    # Response metadata
    "CacheMeta",
    "annotate",
    "CacheSweeper",
]
