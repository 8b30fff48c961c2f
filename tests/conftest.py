"""
Shared fakes: a controllable clock, a scripted upstream fetcher and a
scripted requests session. No test touches the network.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

import pytest
import requests

from config.settings import Settings
from transit_proxy.cache import CacheManager, CacheStore, build_server_policies
from transit_proxy.errors import UpstreamTransportError
from transit_proxy.transit import TransitService


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeFetcher:
    """
    Stands in for UpstreamFetcher.

    responses maps func selector -> payload, exception, or callable(req).
    """

    def __init__(self):
        self.responses: Dict[int, Any] = {}
        self.calls: List[Any] = []

    def fetch(self, req):
        self.calls.append(req)
        handler = self.responses.get(req.func)
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(req)
        if handler is None:
            raise UpstreamTransportError("no scripted response")
        return handler

    def calls_for(self, func: int) -> List[Any]:
        return [c for c in self.calls if c.func == func]


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, bad_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._bad_json = bad_json

    def json(self):
        if self._bad_json:
            raise ValueError("Expecting value")
        return self._payload


class FakeSession:
    """
    Stands in for requests.Session.

    Each get() pops the next scripted outcome (FakeResponse or exception);
    when only one outcome is left it is reused.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []

    def script(self, *outcomes) -> None:
        self.outcomes = list(outcomes)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(url, params)
        return outcome


@pytest.fixture
def test_settings():
    return Settings(_env_file=None, preload_general_data=False)


@pytest.fixture
def clock():
    # 12:00 in Madrid (UTC+2 in June)
    return FakeClock(datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return CacheStore(clock=clock)


@pytest.fixture
def manager(store, test_settings):
    return CacheManager(store, build_server_policies(test_settings))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def transit(manager, fetcher):
    return TransitService(manager, fetcher)


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
