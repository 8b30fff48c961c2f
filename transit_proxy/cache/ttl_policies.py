"""
TTL configuration: category -> cache policy.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from .core import CacheCategory


@dataclass(frozen=True)
class CachePolicy:
    """
    How one category is cached.

    until_midnight: TTL is the time left until the next local midnight,
        computed when the entry is written; ttl_seconds is then ignored.
    network_first: Always try the fetch first and use the store only
        as a fallback, even when the stored entry is still fresh.
    """
    category: CacheCategory
    ttl_seconds: int
    timeout_seconds: float = 15.0
    until_midnight: bool = False
    network_first: bool = False
    timezone: str = "UTC"

    def resolve_ttl(self, now: datetime, override: Optional[float] = None) -> float:
        """TTL to apply to an entry written at `now`."""
        if override is not None:
            return override
        if self.until_midnight:
            return seconds_until_midnight(now, ZoneInfo(self.timezone))
        return float(self.ttl_seconds)


def seconds_until_midnight(now: datetime, tz) -> float:
    """
    Seconds from `now` until the next local midnight in `tz`.

    Subtraction is done in UTC so DST transitions are counted correctly.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    next_day = local.date() + timedelta(days=1)
    midnight = datetime.combine(next_day, time(0, 0), tzinfo=tz)
    remaining = (midnight.astimezone(timezone.utc) - now.astimezone(timezone.utc))
    return max(1.0, float(int(remaining.total_seconds())))


def cache_type_label(policy: CachePolicy, ttl_seconds: float) -> str:
    """Short label for the X-Cache-Type header (e.g. "static-24h")."""
    if policy.until_midnight:
        return "until-midnight"
    return f"{policy.category.value}-{_humanize(int(ttl_seconds))}"


def _humanize(seconds: int) -> str:
    if seconds > 86400 and seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    if seconds >= 3600 and seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds >= 60 and seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def build_server_policies(settings) -> Dict[CacheCategory, CachePolicy]:
    """Policy table for the proxy in front of the upstream API."""
    return {
        CacheCategory.STATIC: CachePolicy(
            category=CacheCategory.STATIC,
            ttl_seconds=settings.static_ttl_seconds,
            timeout_seconds=settings.static_timeout_seconds,
        ),
        CacheCategory.DAILY: CachePolicy(
            category=CacheCategory.DAILY,
            ttl_seconds=24 * 3600,
            timeout_seconds=settings.daily_timeout_seconds,
            until_midnight=True,
            timezone=settings.timezone,
        ),
        CacheCategory.REALTIME: CachePolicy(
            category=CacheCategory.REALTIME,
            ttl_seconds=settings.realtime_ttl_seconds,
            timeout_seconds=settings.realtime_timeout_seconds,
        ),
    }


def build_mirror_policies(settings) -> Dict[CacheCategory, CachePolicy]:
    """
    Policy table for the client-side mirror in front of the proxy.

    Realtime is network-first here: a live call beats a cached copy.
    """
    return {
        CacheCategory.STATIC: CachePolicy(
            category=CacheCategory.STATIC,
            ttl_seconds=settings.mirror_static_ttl_seconds,
            timeout_seconds=settings.mirror_timeout_seconds,
        ),
        CacheCategory.DAILY: CachePolicy(
            category=CacheCategory.DAILY,
            ttl_seconds=settings.mirror_daily_ttl_seconds,
            timeout_seconds=settings.mirror_timeout_seconds,
        ),
        CacheCategory.REALTIME: CachePolicy(
            category=CacheCategory.REALTIME,
            ttl_seconds=settings.mirror_realtime_ttl_seconds,
            timeout_seconds=settings.mirror_timeout_seconds,
            network_first=True,
        ),
    }
