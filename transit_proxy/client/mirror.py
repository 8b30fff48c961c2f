"""
Client-side mirror of the proxy cache.

Runs in the consuming application (one instance per process/session) and
treats the proxy itself as its upstream. Same state machine as the server
side, with its own partitions and policies:

- static / daily: cache-first, a fresh entry is served without a call
- realtime: network-first, the cache is only a fallback for failed calls

Paths outside the known API prefixes are passed through uncached.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

import requests

from transit_proxy.cache import (
    CacheCategory,
    CacheManager,
    CachePolicy,
    CacheResult,
    CacheStore,
    build_mirror_policies,
)
from transit_proxy.errors import NoCachedFallbackAvailable
from transit_proxy.upstream import get_json

logger = logging.getLogger("client.mirror")

# Checked in order; the first substring match wins
MIRROR_ROUTES: List[Tuple[str, CacheCategory]] = [
    ("/buses", CacheCategory.REALTIME),
    ("/complete", CacheCategory.REALTIME),
    ("/api/arrivals/", CacheCategory.REALTIME),
    ("/api/schedule/", CacheCategory.DAILY),
    ("/api/general", CacheCategory.STATIC),
    ("/api/line/", CacheCategory.STATIC),
]

# Always fetched live
UNCACHED_PATHS = ("routes.json",)


def category_for_path(path: str) -> Optional[CacheCategory]:
    """Cache category for an API path, or None when it is not cached."""
    if any(p in path for p in UNCACHED_PATHS):
        return None
    for fragment, category in MIRROR_ROUTES:
        if fragment in path:
            return category
    return None


def request_key(path: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Cache key for a request: path plus sorted query string."""
    if not params:
        return path
    query = urlencode(sorted((k, v) for k, v in params.items() if v is not None))
    return f"{path}?{query}" if query else path


class ClientCacheMirror:
    """
    Cached client for the proxy's HTTP API.

    Usage:
        mirror = ClientCacheMirror.from_settings(settings)
        result = mirror.fetch("/api/arrivals/42")
        mirror.stats()
        mirror.clear("realtime")
    """

    def __init__(
        self,
        base_url: str,
        policies: Dict[CacheCategory, CachePolicy],
        session: Optional[requests.Session] = None,
        store: Optional[CacheStore] = None,
        passthrough_timeout: float = 15.0,
        stale_max_age_seconds: Optional[float] = None,
    ):
        """
        Args:
            base_url: Root URL of the proxy
            policies: TTL/ordering policy per category (see build_mirror_policies)
            passthrough_timeout: Timeout for uncached paths such as routes.json
            stale_max_age_seconds: Fallback bound, None for stale-forever
        """
        self.base_url = base_url.rstrip("/")
        self.passthrough_timeout = passthrough_timeout
        self._session = session or requests.Session()
        self._store = store or CacheStore()
        self._manager = CacheManager(
            self._store,
            policies,
            stale_max_age_seconds=stale_max_age_seconds,
        )

    @classmethod
    def from_settings(
        cls, app_settings, session: Optional[requests.Session] = None
    ) -> "ClientCacheMirror":
        return cls(
            app_settings.mirror_base_url,
            build_mirror_policies(app_settings),
            session=session,
            passthrough_timeout=app_settings.mirror_timeout_seconds,
            stale_max_age_seconds=app_settings.stale_fallback_max_age_seconds,
        )

    def _network_fetch(self, path: str, params: Optional[Dict[str, Any]], timeout: float) -> Any:
        return get_json(
            self._session,
            f"{self.base_url}{path}",
            params=params,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    def fetch(self, path: str, params: Optional[Dict[str, Any]] = None) -> CacheResult:
        """
        GET a proxy path through the mirror cache.

        Raises:
            NoCachedFallbackAvailable: Cached path, call failed, nothing stored
            UpstreamError: Uncached path and the call failed
        """
        category = category_for_path(path)
        if category is None:
            data = self._network_fetch(path, params, self.passthrough_timeout)
            return CacheResult(
                key=request_key(path, params),
                data=data,
                hit=False,
                category=None,
                ttl_seconds=0,
            )

        policy = self._manager.policy_for(category)
        return self._manager.get(
            request_key(path, params),
            category,
            lambda: self._network_fetch(path, params, policy.timeout_seconds),
        )

    def clear(self, category: Union[CacheCategory, str, None] = "all") -> int:
        """
        Drop cached entries for one category, or all of them.

        Args:
            category: A CacheCategory, its value ("static", "daily",
                "realtime"), or "all"/None for every partition

        Returns:
            Number of entries removed
        """
        if category is None or category == "all":
            return self._store.clear()
        if not isinstance(category, CacheCategory):
            try:
                category = CacheCategory(category)
            except ValueError:
                raise ValueError(f"Unknown cache category: {category!r}") from None
        return self._store.clear(category)

    def stats(self) -> Dict[str, Dict[str, int]]:
        """
        Per-category {count, approximateByteSize} plus a "total" row.

        Sizes are the serialized JSON length of each stored payload.
        """
        return {
            name: {"count": row["count"], "approximateByteSize": row["size"]}
            for name, row in self._store.stats().items()
        }

    @staticmethod
    def error_payload(exc: NoCachedFallbackAvailable) -> Dict[str, str]:
        """Body the host can show when neither network nor cache can answer."""
        return {
            "error": "Connection error",
            "message": "Cannot reach the server and there is no cached data",
            "detail": str(exc.cause),
        }
