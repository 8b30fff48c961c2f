"""
Tests for the read-through orchestrator: freshness, write-through,
stale fallback, terminal errors, network-first ordering and coalescing.
"""
import threading
import time
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from transit_proxy.cache import (
    CacheCategory,
    CacheManager,
    build_mirror_policies,
    build_server_policies,
)
from transit_proxy.errors import (
    NoCachedFallbackAvailable,
    UpstreamBadStatus,
    UpstreamTimeout,
    UpstreamTransportError,
)


class CountingFetch:
    """fetch_fn that returns scripted values or raises scripted errors."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestReadThrough:
    def test_miss_then_hit(self, manager, clock):
        fetch = CountingFetch({"arrivals": "P"})

        first = manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        assert first.data == {"arrivals": "P"}
        assert first.hit is False
        assert first.stale is False

        clock.advance(10)
        second = manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        assert second.data == {"arrivals": "P"}
        assert second.hit is True
        assert second.stale is False
        assert second.age_seconds == 10
        assert fetch.calls == 1

    def test_repeated_fresh_hits_never_fetch(self, manager, clock):
        fetch = CountingFetch("L")
        manager.get("line:3", CacheCategory.STATIC, fetch)
        for _ in range(20):
            clock.advance(60)
            assert manager.get("line:3", CacheCategory.STATIC, fetch).hit is True
        assert fetch.calls == 1

    def test_expired_entry_is_refetched_and_overwritten(self, manager, store, clock):
        fetch = CountingFetch("v1", "v2")
        manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        clock.advance(15)

        result = manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        assert result.data == "v2"
        assert result.hit is False
        assert fetch.calls == 2
        assert store.get(CacheCategory.REALTIME, "arrivals:42").value == "v2"

    def test_category_ttl_is_applied(self, manager, store):
        manager.get("arrivals:42", CacheCategory.REALTIME, CountingFetch("x"))
        manager.get("general", CacheCategory.STATIC, CountingFetch("y"))

        assert store.get(CacheCategory.REALTIME, "arrivals:42").ttl_seconds == 15
        assert store.get(CacheCategory.STATIC, "general").ttl_seconds == 86400

    def test_ttl_override(self, manager, store):
        result = manager.get("route:3", CacheCategory.STATIC, CountingFetch("r"), ttl_seconds=604800)
        assert result.ttl_seconds == 604800
        assert result.cache_type == "static-7d"
        assert store.get(CacheCategory.STATIC, "route:3").ttl_seconds == 604800

    def test_daily_ttl_is_computed_at_fetch_time(self, store, clock, manager):
        madrid = ZoneInfo("Europe/Madrid")

        clock.now = datetime(2024, 6, 1, 23, 50, tzinfo=madrid)
        late = manager.get("schedule:3:20240601", CacheCategory.DAILY, CountingFetch("s"))
        assert late.ttl_seconds == 600
        assert late.cache_type == "until-midnight"

        clock.now = datetime(2024, 6, 2, 0, 10, tzinfo=madrid)
        early = manager.get("schedule:3:20240602", CacheCategory.DAILY, CountingFetch("s"))
        assert early.ttl_seconds == 23 * 3600 + 50 * 60

        # the entry cached at 23:50 expired at midnight
        assert not store.is_fresh(store.get(CacheCategory.DAILY, "schedule:3:20240601"))

    def test_manager_requires_full_policy_table(self, store, test_settings):
        policies = build_server_policies(test_settings)
        del policies[CacheCategory.DAILY]
        with pytest.raises(ValueError, match="daily"):
            CacheManager(store, policies)


class TestDegradedMode:
    def test_stale_entry_served_when_fetch_fails(self, manager, clock):
        fetch = CountingFetch("P", UpstreamTimeout("timed out"))
        manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        clock.advance(16)

        result = manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        assert result.data == "P"
        assert result.hit is True
        assert result.stale is True
        assert fetch.calls == 2

    def test_stale_value_never_reported_fresh(self, manager, clock):
        fetch = CountingFetch("P", UpstreamTransportError("down"))
        manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        clock.advance(15)

        result = manager.get("arrivals:42", CacheCategory.REALTIME, fetch)
        assert result.stale is True

    def test_permanently_failing_upstream_keeps_serving_last_value(self, manager, clock):
        manager.get("line:3", CacheCategory.STATIC, CountingFetch("L3"))
        failing = CountingFetch(UpstreamTransportError("down"))

        for _ in range(5):
            clock.advance(86400)
            result = manager.get("line:3", CacheCategory.STATIC, failing)
            assert result.data == "L3"
            assert result.hit is True
        assert failing.calls == 5

    def test_fresh_entry_survives_failing_upstream_without_fetching(self, manager, clock):
        manager.get("line:3", CacheCategory.STATIC, CountingFetch("L3"))
        failing = CountingFetch(UpstreamTransportError("down"))

        for _ in range(10):
            clock.advance(60)
            assert manager.get("line:3", CacheCategory.STATIC, failing).data == "L3"
        assert failing.calls == 0

    def test_no_entry_and_failing_upstream_propagates(self, manager, store):
        cause = UpstreamBadStatus(503)
        with pytest.raises(NoCachedFallbackAvailable) as exc_info:
            manager.get("schedule:3:20240601", CacheCategory.DAILY, CountingFetch(cause))

        assert exc_info.value.cause is cause
        assert exc_info.value.__cause__ is cause
        assert exc_info.value.upstream_status == 503
        assert store.get(CacheCategory.DAILY, "schedule:3:20240601") is None

    def test_stale_bound_rejects_old_entries(self, store, clock, test_settings):
        manager = CacheManager(
            store, build_server_policies(test_settings), stale_max_age_seconds=60
        )
        fetch = CountingFetch("P", UpstreamTimeout("timed out"))
        manager.get("arrivals:42", CacheCategory.REALTIME, fetch)

        clock.advance(15 + 30)
        assert manager.get("arrivals:42", CacheCategory.REALTIME, fetch).stale is True

        clock.advance(60)
        with pytest.raises(NoCachedFallbackAvailable):
            manager.get("arrivals:42", CacheCategory.REALTIME, fetch)

    def test_programming_errors_are_not_swallowed(self, manager, clock):
        manager.get("k", CacheCategory.REALTIME, CountingFetch("v"))
        clock.advance(30)

        with pytest.raises(KeyError):
            manager.get("k", CacheCategory.REALTIME, CountingFetch(KeyError("bug")))


class TestNetworkFirst:
    @pytest.fixture
    def mirror_manager(self, store, test_settings):
        return CacheManager(store, build_mirror_policies(test_settings))

    def test_fresh_entry_does_not_prevent_fetch(self, mirror_manager):
        fetch = CountingFetch("Q1", "Q2")
        mirror_manager.get("/api/arrivals/42", CacheCategory.REALTIME, fetch)
        result = mirror_manager.get("/api/arrivals/42", CacheCategory.REALTIME, fetch)

        assert result.data == "Q2"
        assert result.hit is False
        assert fetch.calls == 2

    def test_failure_falls_back_to_fresh_entry(self, mirror_manager):
        fetch = CountingFetch("Q", UpstreamTransportError("offline"))
        mirror_manager.get("/api/arrivals/42", CacheCategory.REALTIME, fetch)
        result = mirror_manager.get("/api/arrivals/42", CacheCategory.REALTIME, fetch)

        assert result.data == "Q"
        assert result.hit is True
        assert result.stale is False

    def test_cache_first_categories_unchanged(self, mirror_manager):
        fetch = CountingFetch("G")
        mirror_manager.get("/api/general", CacheCategory.STATIC, fetch)
        assert mirror_manager.get("/api/general", CacheCategory.STATIC, fetch).hit is True
        assert fetch.calls == 1


class TestCoalescing:
    def test_concurrent_misses_share_one_fetch(self, manager):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_fetch():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return "shared"

        results = []

        def worker():
            results.append(manager.get("arrivals:42", CacheCategory.REALTIME, slow_fetch))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        threads[0].start()
        assert started.wait(timeout=5)
        for t in threads[1:]:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(timeout=5)

        assert len(calls) == 1
        assert len(results) == 5
        assert all(r.data == "shared" for r in results)

    def test_concurrent_failures_all_fall_back(self, manager, clock):
        manager.get("arrivals:42", CacheCategory.REALTIME, CountingFetch("old"))
        clock.advance(20)

        started = threading.Event()
        release = threading.Event()
        calls = []

        def failing_fetch():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            raise UpstreamTimeout("timed out")

        results = []

        def worker():
            results.append(manager.get("arrivals:42", CacheCategory.REALTIME, failing_fetch))

        threads = [threading.Thread(target=worker) for _ in range(3)]
        threads[0].start()
        assert started.wait(timeout=5)
        for t in threads[1:]:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(timeout=5)

        assert len(results) == 3
        assert all(r.data == "old" and r.stale for r in results)
        # late arrivals may start their own attempt once the first has finished
        assert 1 <= len(calls) <= 3


class TestStats:
    def test_counters(self, manager, clock):
        fetch = CountingFetch("v", UpstreamTimeout("t"))
        manager.get("k", CacheCategory.REALTIME, fetch)      # miss
        manager.get("k", CacheCategory.REALTIME, fetch)      # fresh hit
        clock.advance(20)
        manager.get("k", CacheCategory.REALTIME, fetch)      # stale fallback
        with pytest.raises(NoCachedFallbackAvailable):
            manager.get("other", CacheCategory.REALTIME, fetch)

        stats = manager.get_stats()
        assert stats["misses"] == 1
        assert stats["hits_fresh"] == 1
        assert stats["hits_stale"] == 1
        assert stats["fetch_failures"] == 2
        assert stats["terminal_errors"] == 1
        assert stats["entries"] == 1
        assert stats["hit_rate_percent"] == 50.0
        assert stats["partitions"]["realtime"]["count"] == 1
        assert stats["coalescer"]["active_fetches"] == 0
