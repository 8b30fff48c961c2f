"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream transit API
    upstream_base_url: str = "https://itranvias.com/queryitr_v3.php"
    # Upstream has no published client contract, so present as a browser
    upstream_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    )

    # Retry policy (max_retries=2 means up to 3 attempts)
    upstream_max_retries: int = 2
    upstream_backoff_base_seconds: float = 0.5
    upstream_backoff_max_seconds: float = 4.0

    # Per-attempt timeouts by category weight
    static_timeout_seconds: float = 15.0
    daily_timeout_seconds: float = 15.0
    realtime_timeout_seconds: float = 10.0

    # Server-side TTLs
    static_ttl_seconds: int = 24 * 3600
    geo_static_ttl_seconds: int = 7 * 24 * 3600
    realtime_ttl_seconds: int = 15

    # Local timezone for the daily (until-midnight) boundary
    timezone: str = "Europe/Madrid"

    # How long past its TTL an entry may still be served in degraded mode.
    # None keeps stale entries usable forever.
    stale_fallback_max_age_seconds: Optional[int] = None

    # Background sweep of over-aged stale entries
    sweep_interval_seconds: float = 120.0

    # Startup warm-up
    preload_general_data: bool = True
    preload_delay_seconds: float = 2.0

    # Max seconds a request waits on another request's in-flight fetch
    coalesce_timeout_seconds: float = 60.0

    log_level: str = "INFO"

    # Client-side mirror (talks to this proxy)
    mirror_base_url: str = "http://localhost:10000"
    mirror_static_ttl_seconds: int = 7 * 24 * 3600
    mirror_daily_ttl_seconds: int = 24 * 3600
    mirror_realtime_ttl_seconds: int = 2 * 60
    mirror_timeout_seconds: float = 15.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
