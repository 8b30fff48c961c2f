"""
Cache orchestration: read-through with tiered TTL and stale fallback.
"""
import threading
import logging
from typing import Dict, Optional, Callable, Any

from transit_proxy.errors import NoCachedFallbackAvailable, UpstreamError

from .core import CacheCategory, CacheEntry, CacheResult
from .coalescer import RequestCoalescer
from .store import CacheStore
from .ttl_policies import CachePolicy, cache_type_label

logger = logging.getLogger("cache.manager")


class CacheManager:
    """
    Read-through cache orchestration with:
    - Per-category TTL policy (fixed or until local midnight)
    - Cache-first or network-first ordering per category
    - Request coalescing for concurrent misses on the same key
    - Degraded mode: serve the last stored value when the fetch fails

    The store and policy table are injected; one manager per store.
    """

    def __init__(
        self,
        store: CacheStore,
        policies: Dict[CacheCategory, CachePolicy],
        coalesce_timeout: float = 60.0,
        stale_max_age_seconds: Optional[float] = None,
    ):
        """
        Args:
            store: Where entries live
            policies: TTL/ordering policy for every CacheCategory
            coalesce_timeout: Max wait on another request's in-flight fetch
            stale_max_age_seconds: How long past expiry an entry may still be
                served as a fallback; None means no limit
        """
        missing = [c.value for c in CacheCategory if c not in policies]
        if missing:
            raise ValueError(f"No cache policy for categories: {missing}")

        self._store = store
        self._policies = dict(policies)
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)
        self._stale_max_age = stale_max_age_seconds

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "fetch_failures": 0,
            "terminal_errors": 0,
        }

    @property
    def store(self) -> CacheStore:
        return self._store

    def policy_for(self, category: CacheCategory) -> CachePolicy:
        return self._policies[category]

    def get(
        self,
        cache_key: str,
        category: CacheCategory,
        fetch_fn: Callable[[], Any],
        ttl_seconds: Optional[float] = None,
    ) -> CacheResult:
        """
        Return the value for cache_key, fetching it if needed.

        Args:
            cache_key: Deterministic key for the logical query
            category: Selects the store partition and policy
            fetch_fn: Performs the upstream call; raises UpstreamError on failure
            ttl_seconds: Override the category's TTL for this key

        Returns:
            CacheResult (hit=False when freshly fetched)

        Raises:
            NoCachedFallbackAvailable: The fetch failed and nothing usable is cached
        """
        policy = self._policies[category]
        entry = self._store.get(category, cache_key)

        if entry is not None and not policy.network_first and self._store.is_fresh(entry):
            age = entry.age_seconds(self._store.now())
            logger.debug(f"CACHE HIT: {category.value}/{cache_key} [age={age:.1f}s]")
            self._count("hits_fresh")
            return self._result(entry, policy, hit=True, stale=False, age=age)

        if entry is None:
            logger.info(f"CACHE MISS: {category.value}/{cache_key}")
        elif policy.network_first:
            logger.info(f"NETWORK FIRST: {category.value}/{cache_key}")
        else:
            logger.info(f"CACHE EXPIRED: {category.value}/{cache_key}")

        def fetch_and_store() -> CacheEntry:
            data = fetch_fn()
            ttl = policy.resolve_ttl(self._store.now(), ttl_seconds)
            return self._store.put(category, cache_key, data, ttl)

        try:
            fresh_entry = self._coalescer.run(category, cache_key, fetch_and_store)
        except (UpstreamError, TimeoutError) as e:
            self._count("fetch_failures")
            return self._fallback(cache_key, category, policy, e)

        self._count("misses")
        return self._result(fresh_entry, policy, hit=False, stale=False, age=0.0)

    def _fallback(
        self,
        cache_key: str,
        category: CacheCategory,
        policy: CachePolicy,
        error: BaseException,
    ) -> CacheResult:
        """Serve whatever is stored for the key, or raise the terminal error."""
        entry = self._store.get(category, cache_key)
        now = self._store.now()

        if entry is None:
            self._count("terminal_errors")
            logger.error(f"FETCH FAILED, nothing cached: {category.value}/{cache_key} - {error}")
            raise NoCachedFallbackAvailable(cache_key, error) from error

        stale_for = entry.stale_seconds(now)
        if self._stale_max_age is not None and stale_for > self._stale_max_age:
            self._count("terminal_errors")
            logger.error(
                f"FETCH FAILED, cached entry too old: {category.value}/{cache_key} "
                f"[stale for {stale_for:.0f}s] - {error}"
            )
            raise NoCachedFallbackAvailable(cache_key, error) from error

        is_stale = not entry.is_fresh(now)
        logger.warning(
            f"FALLBACK ({'stale' if is_stale else 'fresh'}): "
            f"{category.value}/{cache_key} - {error}"
        )
        self._count("hits_stale" if is_stale else "hits_fresh")
        return self._result(
            entry, policy, hit=True, stale=is_stale, age=entry.age_seconds(now)
        )

    def _result(
        self,
        entry: CacheEntry,
        policy: CachePolicy,
        hit: bool,
        stale: bool,
        age: float,
    ) -> CacheResult:
        return CacheResult(
            key=entry.key,
            data=entry.value,
            hit=hit,
            category=entry.category,
            ttl_seconds=entry.ttl_seconds,
            stale=stale,
            age_seconds=age,
            cache_type=cache_type_label(policy, entry.ttl_seconds),
        )

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Counters, hit rate, store sizes and in-flight fetches."""
        with self._stats_lock:
            stats = dict(self._stats)
        total_hits = stats["hits_fresh"] + stats["hits_stale"]
        total_requests = total_hits + stats["misses"] + stats["terminal_errors"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        stats["hit_rate_percent"] = round(hit_rate, 1)
        stats["entries"] = len(self._store)
        stats["partitions"] = self._store.stats()
        stats["coalescer"] = self._coalescer.get_stats()
        return stats
