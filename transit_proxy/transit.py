"""
Transit data operations exposed to the routing layer.

Every operation validates its parameters, derives a cache key and an
upstream request, and runs them through the CacheManager.
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from transit_proxy.cache import CacheCategory, CacheManager, CacheResult, make_cache_key
from transit_proxy.errors import InvalidParameter, NoCachedFallbackAvailable
from transit_proxy.upstream import (
    FUNC_ARRIVALS,
    FUNC_BUS_POSITIONS,
    FUNC_GENERAL,
    FUNC_GEOMETRY,
    FUNC_LINE,
    FUNC_SCHEDULE,
    GENERAL_DATA_TOKEN,
    UpstreamFetcher,
    UpstreamRequest,
)

logger = logging.getLogger("transit")

_NUMERIC_RE = re.compile(r"[0-9]+")
_DATE_RE = re.compile(r"[0-9]{8}")


def validate_id(name: str, value: Any) -> str:
    """Identifiers must be non-empty ASCII digit strings."""
    text = "" if value is None else str(value).strip()
    if not _NUMERIC_RE.fullmatch(text):
        raise InvalidParameter(name, value, "a numeric identifier")
    return text


def validate_date(name: str, value: Any) -> str:
    """Dates are YYYYMMDD and must be real calendar days."""
    text = "" if value is None else str(value).strip()
    if not _DATE_RE.fullmatch(text):
        raise InvalidParameter(name, value, "a date in YYYYMMDD format")
    try:
        datetime.strptime(text, "%Y%m%d")
    except ValueError:
        raise InvalidParameter(name, value, "a valid calendar date") from None
    return text


def find_line(general_data: Any, line_id: str) -> Optional[Dict[str, Any]]:
    """Look a line up in the general data dump."""
    if not isinstance(general_data, dict):
        return None
    for line in general_data.get("lineas") or []:
        if isinstance(line, dict) and str(line.get("id")) == line_id:
            return line
    return None


class TransitService:
    """Cached read operations over the upstream transit API."""

    def __init__(
        self,
        manager: CacheManager,
        fetcher: UpstreamFetcher,
        geo_static_ttl_seconds: int = 7 * 24 * 3600,
        timezone: str = "Europe/Madrid",
    ):
        self._manager = manager
        self._fetcher = fetcher
        self._geo_ttl = geo_static_ttl_seconds
        self._tz = ZoneInfo(timezone)

    @property
    def manager(self) -> CacheManager:
        return self._manager

    def _cached(
        self,
        cache_key: str,
        req: UpstreamRequest,
        ttl_seconds: Optional[float] = None,
    ) -> CacheResult:
        return self._manager.get(
            cache_key,
            req.category,
            lambda: self._fetcher.fetch(req),
            ttl_seconds=ttl_seconds,
        )

    def _today(self) -> str:
        return self._manager.store.now().astimezone(self._tz).strftime("%Y%m%d")

    # =========================================================================
    # STATIC DATA
    # =========================================================================

    def get_general(self) -> CacheResult:
        """Lines, stops and fares in one dump."""
        return self._cached(
            make_cache_key("general"),
            UpstreamRequest(FUNC_GENERAL, {"dato": GENERAL_DATA_TOKEN}, CacheCategory.STATIC),
        )

    def get_line(self, line_id: Any) -> CacheResult:
        """
        Line details.

        Served out of the cached general data when the line is listed
        there; otherwise fetched from the line-specific endpoint.
        """
        line_id = validate_id("line_id", line_id)

        general: Optional[CacheResult] = None
        static_line = None
        try:
            general = self.get_general()
            static_line = find_line(general.data, line_id)
        except NoCachedFallbackAvailable as e:
            logger.warning(f"General data unavailable, querying line {line_id} directly: {e}")

        if general is not None and static_line is not None:
            logger.debug(f"Line {line_id} served from general data")
            payload = {
                "resultado": "OK",
                "fecha_peticion": self._manager.store.now().strftime("%Y%m%d%H%M%S"),
                "lineas": [static_line],
                "Origen": "Cache_Optimizado",
            }
            return CacheResult(
                key=make_cache_key("line", line_id),
                data=payload,
                hit=True,
                category=CacheCategory.STATIC,
                ttl_seconds=general.ttl_seconds,
                stale=general.stale,
                age_seconds=general.age_seconds,
                data_source="general-cache",
                cache_type=general.cache_type,
            )

        result = self._cached(
            make_cache_key("line", line_id),
            UpstreamRequest(FUNC_LINE, {"dato": line_id}, CacheCategory.STATIC),
        )
        result.data_source = "api-specific"
        return result

    def get_stop_coordinates(self, line_id: Any) -> CacheResult:
        line_id = validate_id("line_id", line_id)
        return self._cached(
            make_cache_key("stop_coords", line_id),
            UpstreamRequest(
                FUNC_GEOMETRY, {"mostrar": "P", "dato": line_id}, CacheCategory.STATIC
            ),
            ttl_seconds=self._geo_ttl,
        )

    def get_route(self, line_id: Any) -> CacheResult:
        """Route polyline of a line."""
        line_id = validate_id("line_id", line_id)
        return self._cached(
            make_cache_key("route", line_id),
            UpstreamRequest(
                FUNC_GEOMETRY, {"mostrar": "R", "dato": line_id}, CacheCategory.STATIC
            ),
            ttl_seconds=self._geo_ttl,
        )

    # =========================================================================
    # DAILY DATA
    # =========================================================================

    def get_schedule(self, line_id: Any, date: Any = None) -> CacheResult:
        """Timetable of a line for one day (today, local time, by default)."""
        line_id = validate_id("line_id", line_id)
        date = self._today() if date is None else validate_date("date", date)
        return self._cached(
            make_cache_key("schedule", line_id, date),
            UpstreamRequest(
                FUNC_SCHEDULE, {"dato": line_id, "fecha": date}, CacheCategory.DAILY
            ),
        )

    # =========================================================================
    # REALTIME DATA
    # =========================================================================

    def get_arrivals(self, stop_id: Any) -> CacheResult:
        """Upcoming arrivals at a stop."""
        stop_id = validate_id("stop_id", stop_id)
        return self._cached(
            make_cache_key("arrivals", stop_id),
            UpstreamRequest(FUNC_ARRIVALS, {"dato": stop_id}, CacheCategory.REALTIME),
        )

    def get_bus_positions(self, line_id: Any) -> CacheResult:
        line_id = validate_id("line_id", line_id)
        return self._cached(
            make_cache_key("buses", line_id),
            UpstreamRequest(FUNC_BUS_POSITIONS, {"dato": line_id}, CacheCategory.REALTIME),
        )

    def get_bus_coordinates(self, line_id: Any) -> CacheResult:
        line_id = validate_id("line_id", line_id)
        return self._cached(
            make_cache_key("bus_coords", line_id),
            UpstreamRequest(
                FUNC_GEOMETRY, {"mostrar": "B", "dato": line_id}, CacheCategory.REALTIME
            ),
        )

    # =========================================================================
    # CONSOLIDATED
    # =========================================================================

    def get_line_complete(self, line_id: Any) -> CacheResult:
        """
        Static info, bus positions and bus coordinates for one line.

        The three parts are fetched in parallel and fail independently:
        a part that cannot be served comes back as None.
        """
        line_id = validate_id("line_id", line_id)

        with ThreadPoolExecutor(max_workers=3) as executor:
            static_future = executor.submit(self._settled, self.get_line, line_id)
            buses_future = executor.submit(self._settled, self.get_bus_positions, line_id)
            coords_future = executor.submit(self._settled, self.get_bus_coordinates, line_id)
            static_result = static_future.result()
            buses_result = buses_future.result()
            coords_result = coords_future.result()

        static_data = None
        if static_result is not None:
            static_data = static_result.data
            if static_result.data_source == "general-cache":
                static_data = static_result.data["lineas"][0]

        parts = [r for r in (static_result, buses_result, coords_result) if r is not None]
        payload = {
            "lineId": line_id,
            "timestamp": self._manager.store.now().isoformat(),
            "static": static_data,
            "buses": buses_result.data if buses_result else None,
            "coordinates": coords_result.data if coords_result else None,
            "cache_info": {
                "static_cached": bool(static_result and static_result.hit),
                "buses_cached": bool(buses_result and buses_result.hit),
                "coordinates_cached": bool(coords_result and coords_result.hit),
            },
        }
        logger.info(
            f"Line {line_id} complete: static={'ok' if static_result else 'missing'} "
            f"buses={'ok' if buses_result else 'missing'} "
            f"coordinates={'ok' if coords_result else 'missing'}"
        )

        realtime = self._manager.policy_for(CacheCategory.REALTIME)
        return CacheResult(
            key=make_cache_key("complete", line_id),
            data=payload,
            hit=len(parts) == 3 and all(r.hit for r in parts),
            category=CacheCategory.REALTIME,
            ttl_seconds=realtime.ttl_seconds,
            stale=any(r.stale for r in parts),
            cache_type="mixed",
        )

    @staticmethod
    def _settled(fn: Callable[[str], CacheResult], line_id: str) -> Optional[CacheResult]:
        try:
            return fn(line_id)
        except NoCachedFallbackAvailable as e:
            logger.warning(f"{fn.__name__}({line_id}) unavailable: {e}")
            return None

    # =========================================================================
    # STARTUP
    # =========================================================================

    def preload_general_data(self) -> bool:
        """Warm the general data cache. Never raises on upstream failure."""
        logger.info("Preloading general data...")
        try:
            self.get_general()
        except NoCachedFallbackAvailable as e:
            logger.warning(f"Could not preload general data: {e}")
            return False
        logger.info("General data preloaded")
        return True
