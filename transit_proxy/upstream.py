"""
Upstream API client for the transit data endpoint.

One GET endpoint, selected by a numeric `func` parameter, returning JSON.
Each attempt is bounded by a per-category timeout; transient failures are
retried with capped exponential backoff (tenacity).
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from transit_proxy.cache import CacheCategory
from transit_proxy.errors import (
    UpstreamBadStatus,
    UpstreamError,
    UpstreamInvalidResponse,
    UpstreamTimeout,
    UpstreamTransportError,
)

logger = logging.getLogger("upstream")

# Function selectors understood by the upstream API
FUNC_ARRIVALS = 0
FUNC_LINE = 1
FUNC_BUS_POSITIONS = 2
FUNC_GENERAL = 7
FUNC_SCHEDULE = 8
FUNC_GEOMETRY = 99

# Fixed "dato" the upstream expects for the general data dump
GENERAL_DATA_TOKEN = "20160101T000000_es_0_20160101T000000"


@dataclass(frozen=True)
class UpstreamRequest:
    """What to ask the upstream for, and how heavy the answer is."""
    func: int
    params: Dict[str, str] = field(default_factory=dict)
    category: CacheCategory = CacheCategory.STATIC

    def query(self) -> Dict[str, str]:
        query = {"func": str(self.func)}
        query.update(self.params)
        return query


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


def get_json(
    session: requests.Session,
    url: str,
    params: Optional[Dict[str, str]],
    headers: Dict[str, str],
    timeout: float,
) -> Any:
    """
    One GET, translated into the upstream error taxonomy.

    Raises:
        UpstreamTimeout, UpstreamTransportError, UpstreamBadStatus,
        UpstreamInvalidResponse
    """
    try:
        response = session.get(url, params=params, headers=headers, timeout=timeout)
    except requests.Timeout as e:
        raise UpstreamTimeout(f"request timed out after {timeout:.0f}s") from e
    except requests.RequestException as e:
        raise UpstreamTransportError(f"request failed: {e}") from e

    if not 200 <= response.status_code < 300:
        raise UpstreamBadStatus(response.status_code)

    try:
        return response.json()
    except ValueError as e:
        raise UpstreamInvalidResponse("invalid JSON", status=response.status_code) from e


class UpstreamFetcher:
    """
    Performs the network call to the upstream API.

    Usage:
        fetcher = UpstreamFetcher(base_url, timeouts={CacheCategory.REALTIME: 10})
        data = fetcher.fetch(UpstreamRequest(FUNC_ARRIVALS, {"dato": "42"},
                                             CacheCategory.REALTIME))
    """

    def __init__(
        self,
        base_url: str,
        timeouts: Optional[Dict[CacheCategory, float]] = None,
        user_agent: str = "Mozilla/5.0",
        max_retries: int = 2,
        backoff_base: float = 0.5,
        backoff_max: float = 4.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url
        self.timeouts = timeouts or {}
        self.user_agent = user_agent
        self.max_retries = max(0, max_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "UpstreamFetcher":
        return cls(
            base_url=settings.upstream_base_url,
            timeouts={
                CacheCategory.STATIC: settings.static_timeout_seconds,
                CacheCategory.DAILY: settings.daily_timeout_seconds,
                CacheCategory.REALTIME: settings.realtime_timeout_seconds,
            },
            user_agent=settings.upstream_user_agent,
            max_retries=settings.upstream_max_retries,
            backoff_base=settings.upstream_backoff_base_seconds,
            backoff_max=settings.upstream_backoff_max_seconds,
            session=session,
        )

    def _get_headers(self) -> dict:
        return {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

    def timeout_for(self, category: CacheCategory) -> float:
        return self.timeouts.get(category, 15.0)

    def fetch(self, req: UpstreamRequest) -> Any:
        """
        Fetch and decode one upstream response.

        Returns:
            Decoded JSON payload

        Raises:
            UpstreamTimeout, UpstreamTransportError, UpstreamBadStatus:
                after the last attempt, or immediately when not retryable
            UpstreamInvalidResponse: 2xx with a non-JSON body (not retried)
        """
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Upstream func={req.func} attempt {retry_state.attempt_number} failed "
                f"({retry_state.outcome.exception()}), "
                f"retrying in {retry_state.next_action.sleep:.2f}s"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(self._attempt, req)
        except UpstreamError as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            logger.error(f"Upstream func={req.func} failed after {attempts} attempt(s): {e}")
            raise

    def _attempt(self, req: UpstreamRequest) -> Any:
        timeout = self.timeout_for(req.category)
        logger.info(
            f"Upstream request func={req.func} params={req.params} (timeout {timeout:.0f}s)"
        )
        started = time.monotonic()
        data = get_json(
            self._session,
            self.base_url,
            params=req.query(),
            headers=self._get_headers(),
            timeout=timeout,
        )
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"Upstream func={req.func} OK in {elapsed_ms:.0f}ms")
        return data
