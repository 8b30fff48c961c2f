"""
Transit Proxy - FastAPI routing layer over the cached transit service.
"""
import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import Settings, settings
from transit_proxy.cache import (
    CacheManager,
    CacheResult,
    CacheStore,
    CacheSweeper,
    annotate,
    build_server_policies,
)
from transit_proxy.errors import (
    InvalidParameter,
    NoCachedFallbackAvailable,
    UpstreamBadStatus,
    UpstreamTimeout,
)
from transit_proxy.transit import TransitService
from transit_proxy.upstream import UpstreamFetcher

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger("main")

APP_VERSION = "v1.0.0"
APP_NAME = "Transit Proxy"


class ErrorDetail(BaseModel):
    code: str
    message: str
    upstream_status: Optional[int] = None


def build_transit_service(app_settings: Settings) -> TransitService:
    """Wire store, policies, manager and fetcher from settings."""
    store = CacheStore()
    manager = CacheManager(
        store,
        build_server_policies(app_settings),
        coalesce_timeout=app_settings.coalesce_timeout_seconds,
        stale_max_age_seconds=app_settings.stale_fallback_max_age_seconds,
    )
    return TransitService(
        manager,
        UpstreamFetcher.from_settings(app_settings),
        geo_static_ttl_seconds=app_settings.geo_static_ttl_seconds,
        timezone=app_settings.timezone,
    )


def error_response(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": detail.model_dump(exclude_none=True)},
        headers={"Cache-Control": "no-store"},
    )


def cached_response(result: CacheResult) -> JSONResponse:
    """Payload as-is, provenance in headers."""
    return JSONResponse(content=result.data, headers=annotate(result).to_headers())


def get_transit(request: Request) -> TransitService:
    return request.app.state.transit


router = APIRouter()


@router.get("/general")
def general_data(transit: TransitService = Depends(get_transit)):
    """Lines, stops and fares (static, 24h)."""
    return cached_response(transit.get_general())


@router.get("/arrivals/{stop_id}")
def arrivals(stop_id: str, transit: TransitService = Depends(get_transit)):
    """Arrivals at a stop (realtime, 15s)."""
    return cached_response(transit.get_arrivals(stop_id))


@router.get("/line/{line_id}")
def line_info(line_id: str, transit: TransitService = Depends(get_transit)):
    """Line details, reusing cached general data when possible."""
    return cached_response(transit.get_line(line_id))


@router.get("/schedule/{line_id}")
def schedule_today(line_id: str, transit: TransitService = Depends(get_transit)):
    return cached_response(transit.get_schedule(line_id))


@router.get("/schedule/{line_id}/{date}")
def schedule(line_id: str, date: str, transit: TransitService = Depends(get_transit)):
    """Line timetable for a YYYYMMDD date (cached until midnight)."""
    return cached_response(transit.get_schedule(line_id, date))


@router.get("/line/{line_id}/buses")
def bus_positions(line_id: str, transit: TransitService = Depends(get_transit)):
    return cached_response(transit.get_bus_positions(line_id))


@router.get("/line/{line_id}/buses/coordinates")
def bus_coordinates(line_id: str, transit: TransitService = Depends(get_transit)):
    return cached_response(transit.get_bus_coordinates(line_id))


@router.get("/line/{line_id}/stops/coordinates")
def stop_coordinates(line_id: str, transit: TransitService = Depends(get_transit)):
    """Stop coordinates of a line (static, 7d)."""
    return cached_response(transit.get_stop_coordinates(line_id))


@router.get("/line/{line_id}/route")
def route_trace(line_id: str, transit: TransitService = Depends(get_transit)):
    """Route polyline of a line (static, 7d)."""
    return cached_response(transit.get_route(line_id))


@router.get("/line/{line_id}/complete")
def line_complete(line_id: str, transit: TransitService = Depends(get_transit)):
    """Static data, positions and coordinates in one response."""
    return cached_response(transit.get_line_complete(line_id))


def create_app(
    service: Optional[TransitService] = None,
    app_settings: Settings = settings,
) -> FastAPI:
    """
    Build the application.

    Tests pass their own TransitService (fake fetcher, fake clock).
    """
    if service is None:
        service = build_transit_service(app_settings)

    sweeper: Optional[CacheSweeper] = None
    if app_settings.stale_fallback_max_age_seconds is not None:
        sweeper = CacheSweeper(
            service.manager.store,
            app_settings.stale_fallback_max_age_seconds,
            interval=app_settings.sweep_interval_seconds,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        preload: Optional[threading.Timer] = None
        if sweeper is not None:
            sweeper.start()
        if app_settings.preload_general_data:
            preload = threading.Timer(
                app_settings.preload_delay_seconds, service.preload_general_data
            )
            preload.daemon = True
            preload.start()
        logger.info(f"{APP_NAME} {APP_VERSION} started, upstream {app_settings.upstream_base_url}")
        yield
        if preload is not None:
            preload.cancel()
        if sweeper is not None:
            sweeper.stop()

    app = FastAPI(
        title=APP_NAME,
        description="Cached proxy for the transit data API",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.transit = service

    app.include_router(router, prefix="/api")
    app.include_router(router, prefix="/buscoruna/api")

    @app.exception_handler(InvalidParameter)
    async def invalid_parameter_handler(request: Request, exc: InvalidParameter):
        logger.warning(f"Rejected {request.url.path}: {exc}")
        return error_response(400, ErrorDetail(code="invalid_parameter", message=str(exc)))

    @app.exception_handler(NoCachedFallbackAvailable)
    async def no_fallback_handler(request: Request, exc: NoCachedFallbackAvailable):
        cause = exc.cause
        if isinstance(cause, (UpstreamTimeout, TimeoutError)):
            status_code, code = 504, "upstream_timeout"
        elif isinstance(cause, UpstreamBadStatus) and cause.is_client_error:
            status_code, code = 502, "upstream_rejected"
        else:
            status_code, code = 502, "upstream_unavailable"
        return error_response(
            status_code,
            ErrorDetail(code=code, message=str(cause), upstream_status=exc.upstream_status),
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": APP_VERSION}

    @app.get("/cache/stats")
    def cache_stats():
        """Get cache statistics."""
        return service.manager.get_stats()

    return app


app = create_app()
