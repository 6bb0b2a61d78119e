"""
Tests for the cache service: cache-or-fetch, single-flight, invalidation,
health reporting and maintenance.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from slack_mcp.cache.cache_service import (
    MB,
    CacheService,
    CacheServiceConfig,
    DomainCacheConfig,
)
from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.cache.search_cache import SearchCacheConfig
from slack_mcp.utils.errors import ConfigurationError, SlackAPIError


@pytest.fixture
def service(clock):
    return CacheService(clock=clock)


CHANNELS = [{"id": "C0001", "name": "general"}, {"id": "C0002", "name": "random"}]


class TestConfiguration:
    """Defaults and validation."""

    def test_default_domains(self):
        config = CacheServiceConfig()
        assert (config.channels.max, config.channels.ttl) == (1000, 3600)
        assert (config.users.max, config.users.ttl) == (500, 1800)
        assert (config.files.max, config.files.ttl) == (500, 1800)
        assert (config.threads.max, config.threads.ttl) == (300, 2700)
        assert config.search.max_queries == 100
        assert config.search.max_results == 5000

    def test_from_settings(self, settings):
        config = CacheServiceConfig.from_settings(settings)
        assert config.channels.max == settings.cache_channels_max
        assert config.search.query_ttl == settings.cache_search_query_ttl
        assert config.maintenance_interval == settings.cache_maintenance_interval
        assert config.threads.max_size == 20 * MB

    @pytest.mark.parametrize("overrides", [
        {"channels": DomainCacheConfig(max=0, ttl=10)},
        {"users": DomainCacheConfig(max=10, ttl=-1)},
        {"search": SearchCacheConfig(max_queries=0)},
        {"global_memory_limit": 0},
        {"maintenance_interval": 0},
    ])
    def test_invalid_configuration(self, overrides):
        with pytest.raises(ConfigurationError):
            CacheService(CacheServiceConfig(**overrides))

    def test_unknown_domain(self, service):
        with pytest.raises(ValueError):
            service.get_cache("teams")
        with pytest.raises(ValueError):
            service.get_cache("search")


class TestCacheOrFetch:
    """A miss computes once; later calls hit."""

    @pytest.mark.asyncio
    async def test_single_compute_for_sequential_calls(self, service):
        fetch = AsyncMock(return_value={"value": 42})

        first = await service.cache_or_fetch("users", "k", fetch)
        second = await service.cache_or_fetch("users", "k", fetch)

        assert fetch.await_count == 1
        assert first == second == {"value": 42}

    @pytest.mark.asyncio
    async def test_keys_are_domain_qualified(self, service):
        await service.cache_or_fetch("channels", "list", AsyncMock(return_value=CHANNELS))

        assert service.get_cache("channels").keys() == ["channels:list"]
        assert service.get("channels", "list") == CHANNELS
        assert service.get("channels", "channels:list") == CHANNELS

    @pytest.mark.asyncio
    async def test_domains_do_not_collide(self, service):
        await service.cache_or_fetch("users", "info", AsyncMock(return_value="user"))
        await service.cache_or_fetch("files", "info", AsyncMock(return_value="file"))

        assert service.get("users", "info") == "user"
        assert service.get("files", "info") == "file"

    @pytest.mark.asyncio
    async def test_skip_cache_always_fetches(self, service):
        fetch = AsyncMock(return_value=1)

        await service.cache_or_fetch("users", "k", fetch, skip_cache=True)
        await service.cache_or_fetch("users", "k", fetch, skip_cache=True)

        assert fetch.await_count == 2
        assert service.get("users", "k") is None

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_is_not_cached(self, service):
        failing = AsyncMock(side_effect=SlackAPIError("boom", code="channel_not_found"))

        with pytest.raises(SlackAPIError):
            await service.cache_or_fetch("channels", "info", failing)

        recovered = AsyncMock(return_value="ok")
        assert await service.cache_or_fetch("channels", "info", recovered) == "ok"
        assert recovered.await_count == 1

    @pytest.mark.asyncio
    async def test_none_is_not_cached_but_empty_is(self, service):
        nothing = AsyncMock(return_value=None)
        await service.cache_or_fetch("users", "none", nothing)
        await service.cache_or_fetch("users", "none", nothing)
        assert nothing.await_count == 2

        empty = AsyncMock(return_value=[])
        await service.cache_or_fetch("users", "empty", empty)
        await service.cache_or_fetch("users", "empty", empty)
        assert empty.await_count == 1

    @pytest.mark.asyncio
    async def test_ttl_override(self, service, clock):
        fetch = AsyncMock(return_value="v")

        await service.cache_or_fetch("users", "k", fetch, ttl=5)
        clock.advance(6)
        await service.cache_or_fetch("users", "k", fetch)

        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_fetched_value_is_returned_as_is(self, service):
        value = {"handle": object()}
        fetch = AsyncMock(return_value=value)

        assert await service.cache_or_fetch("users", "odd", fetch) is value

    @pytest.mark.asyncio
    async def test_broken_cache_read_degrades_to_fetch(self, service, monkeypatch):
        def broken_get(*args, **kwargs):
            raise RuntimeError("cache exploded")

        monkeypatch.setattr(service.get_cache("users"), "get", broken_get)
        fetch = AsyncMock(return_value="fresh")

        assert await service.cache_or_fetch("users", "k", fetch) == "fresh"

    @pytest.mark.asyncio
    async def test_broken_cache_write_degrades_to_fetch(self, service, monkeypatch):
        def broken_set(*args, **kwargs):
            raise RuntimeError("cache exploded")

        monkeypatch.setattr(service.get_cache("users"), "set", broken_set)
        fetch = AsyncMock(return_value="fresh")

        assert await service.cache_or_fetch("users", "k", fetch) == "fresh"

    @pytest.mark.asyncio
    async def test_value_error_from_cache_read_degrades_to_fetch(self, service, monkeypatch):
        def broken_get(*args, **kwargs):
            raise ValueError("corrupt entry")

        monkeypatch.setattr(service.get_cache("users"), "get", broken_get)
        fetch = AsyncMock(return_value="fresh")

        assert await service.cache_or_fetch("users", "k", fetch) == "fresh"

    @pytest.mark.asyncio
    async def test_unknown_domain_is_rejected(self, service):
        fetch = AsyncMock(return_value="value")

        with pytest.raises(ValueError):
            await service.cache_or_fetch("teams", "k", fetch)
        fetch.assert_not_awaited()


class TestSingleFlight:
    """Concurrent misses on one key share a single fetch."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, service):
        calls = 0
        release = asyncio.Event()

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"channels": CHANNELS}

        waiters = [asyncio.ensure_future(service.cache_or_fetch("channels", "list", fetch))
                   for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert all(result == {"channels": CHANNELS} for result in results)
        assert service.get_metrics().single_flight_joins == 4

    @pytest.mark.asyncio
    async def test_error_reaches_every_waiter(self, service):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            raise SlackAPIError("upstream down")

        waiters = [asyncio.ensure_future(service.cache_or_fetch("users", "k", fetch))
                   for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, SlackAPIError) for r in results)

        # The failed flight is forgotten, so the next call fetches again
        assert await service.cache_or_fetch("users", "k", AsyncMock(return_value=1)) == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_others(self, service):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "value"

        first = asyncio.ensure_future(service.cache_or_fetch("users", "k", fetch))
        second = asyncio.ensure_future(service.cache_or_fetch("users", "k", fetch))
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second == "value"
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_invalidation_during_fetch_forces_a_new_fetch(self, service):
        release = asyncio.Event()
        fetched = []

        async def fetch_old():
            fetched.append("old")
            await release.wait()
            return ["pre-mutation"]

        async def fetch_new():
            fetched.append("new")
            return ["post-mutation"]

        pending = asyncio.ensure_future(service.cache_or_fetch("channels", "list", fetch_old))
        await asyncio.sleep(0)

        service.invalidate("channels:*")
        fresh = await service.cache_or_fetch("channels", "list", fetch_new)
        release.set()

        assert await pending == ["pre-mutation"]
        assert fresh == ["post-mutation"]
        assert sorted(fetched) == ["new", "old"]
        assert service.get("channels", "list") == ["post-mutation"]

    @pytest.mark.asyncio
    async def test_channel_invalidation_during_fetch_is_not_cached(self, service):
        key = CacheKeyBuilder.thread("replies", "C0001", "1.0")
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return ["old reply"]

        pending = asyncio.ensure_future(service.cache_or_fetch("threads", key, fetch))
        await asyncio.sleep(0)

        service.invalidate_by_channel("C0001")
        release.set()

        assert await pending == ["old reply"]
        assert service.get("threads", key) is None

    @pytest.mark.asyncio
    async def test_clear_all_during_fetch_is_not_cached(self, service):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "stale"

        pending = asyncio.ensure_future(service.cache_or_fetch("users", "k", fetch))
        await asyncio.sleep(0)

        service.clear_all()
        release.set()

        assert await pending == "stale"
        assert service.get("users", "k") is None

    @pytest.mark.asyncio
    async def test_different_keys_fetch_independently(self, service):
        fetch_a = AsyncMock(return_value="a")
        fetch_b = AsyncMock(return_value="b")

        results = await asyncio.gather(
            service.cache_or_fetch("users", "a", fetch_a),
            service.cache_or_fetch("users", "b", fetch_b),
        )

        assert results == ["a", "b"]
        assert service.get_metrics().single_flight_joins == 0


class TestSearchDomain:
    """The search domain goes through the two-tier search cache."""

    @pytest.mark.asyncio
    async def test_equivalent_queries_hit(self, service):
        fetch = AsyncMock(return_value={"total": 3})

        await service.cache_or_fetch("search", "Deploy in:#ops", fetch)
        result = await service.cache_or_fetch("search", "in:#ops deploy", fetch)

        assert result == {"total": 3}
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_options_separate_entries(self, service):
        fetch = AsyncMock(side_effect=[{"page": 1}, {"page": 2}])

        first = await service.cache_or_fetch("search", "deploy", fetch, options={"page": 1})
        second = await service.cache_or_fetch("search", "deploy", fetch, options={"page": 2})

        assert (first, second) == ({"page": 1}, {"page": 2})

    @pytest.mark.asyncio
    async def test_empty_query_fetches_without_caching(self, service):
        fetch = AsyncMock(return_value={"total": 0})

        await service.cache_or_fetch("search", "  ", fetch)
        await service.cache_or_fetch("search", "  ", fetch)

        assert fetch.await_count == 2


class TestInvalidation:
    """Glob and identifier based invalidation."""

    @pytest.mark.asyncio
    async def test_end_to_end_channel_list(self, clock):
        """Two calls share one upstream fetch; invalidate('channels:*') forces a new one."""
        service = CacheService(
            CacheServiceConfig(channels=DomainCacheConfig(max=1000, ttl=3600)), clock=clock
        )
        fetch_all_channels = AsyncMock(return_value=CHANNELS)

        first = await service.cache_or_fetch("channels", "list", fetch_all_channels)
        clock.advance(60)
        second = await service.cache_or_fetch("channels", "list", fetch_all_channels)

        assert fetch_all_channels.await_count == 1
        assert first == second == CHANNELS

        assert service.invalidate("channels:*") == 1

        third = await service.cache_or_fetch("channels", "list", fetch_all_channels)
        assert fetch_all_channels.await_count == 2
        assert third == CHANNELS

    @pytest.mark.asyncio
    async def test_channel_entries_expire_after_ttl(self, service, clock):
        fetch = AsyncMock(return_value=CHANNELS)

        await service.cache_or_fetch("channels", "list", fetch)
        clock.advance(3601)
        await service.cache_or_fetch("channels", "list", fetch)

        assert fetch.await_count == 2

    def test_domain_prefixed_pattern_only_touches_that_domain(self, service):
        service.set("channels", "info:C0001", 1)
        service.set("users", "info:U0001", 2)

        assert service.invalidate("channels:*") == 1
        assert service.get("users", "info:U0001") == 2

    def test_pattern_without_domain_touches_every_domain(self, service):
        service.set("channels", "info:X1", 1)
        service.set("users", "info:X1", 2)
        service.set("users", "list", 3)

        assert service.invalidate("*:info:X1") == 2
        assert service.get("users", "list") == 3

    def test_search_patterns_match_normalized_queries(self, service):
        service.set("search", "Deploy in:#ops", {"n": 1})
        service.set("search", "hello", {"n": 2})

        assert service.invalidate("search:deploy*") == 1
        assert service.get("search", "deploy in:#ops") is None
        assert service.get("search", "hello") == {"n": 2}

    def test_invalidate_by_channel(self, service):
        service.set("channels", CacheKeyBuilder.channel("info", "C0001"), "info")
        service.set("channels", CacheKeyBuilder.channel("info", "C0002"), "other")
        service.set("threads", CacheKeyBuilder.thread("replies", "C0001", "1700.1"), "thread")
        service.set("files", CacheKeyBuilder.file("list", params={"channel": "C0001"}), "files")
        service.set("channels", CacheKeyBuilder.channel("directory"), CHANNELS)
        service.set("search", "deploy in:C0001", {"n": 1})

        assert service.invalidate_by_channel("C0001") == 4
        assert service.get("channels", CacheKeyBuilder.channel("info", "C0002")) == "other"
        assert service.get("channels", CacheKeyBuilder.channel("directory")) == CHANNELS

    def test_invalidate_by_user(self, service):
        service.set("users", CacheKeyBuilder.user("info", "U0001"), "user")
        service.set("users", CacheKeyBuilder.user("info", "U0002"), "other")
        service.set("search", "report from:@U0001", {"n": 1})

        assert service.invalidate_by_user("U0001") == 2
        assert service.get("users", CacheKeyBuilder.user("info", "U0002")) == "other"

    def test_clear_all(self, service):
        service.set("channels", "list", CHANNELS)
        service.set("search", "hello", {"n": 1})

        service.clear_all()

        assert service.get("channels", "list") is None
        assert service.get("search", "hello") is None


class TestMetricsAndHealth:
    """Metrics aggregate every domain; health flags poor hit rates and memory pressure."""

    def test_metrics_shape(self, service):
        service.set("channels", "list", CHANNELS)
        service.get("channels", "list")
        service.get("channels", "missing")

        metrics = service.get_metrics()
        data = metrics.to_dict()

        assert metrics.domains["channels"].hit_rate == 50.0
        assert set(data) == {"channels", "users", "files", "threads", "search", "global"}
        assert data["global"]["total_hits"] == 1
        assert data["global"]["total_misses"] == 1
        assert data["global"]["total_memory_usage"] > 0

    def test_healthy_without_samples(self, service):
        service.get("users", "missing")

        health = service.get_health_status()

        assert health["healthy"] is True
        assert health["caches"]["users"] == {"healthy": True, "issues": []}
        assert health["memory_pressure"] is False

    def test_low_hit_rate_is_flagged(self, service):
        for i in range(20):
            service.get("users", f"missing-{i}")

        health = service.get_health_status()

        assert health["healthy"] is False
        assert health["caches"]["users"]["healthy"] is False
        assert "Low hit rate" in health["caches"]["users"]["issues"][0]
        assert health["caches"]["channels"]["healthy"] is True

    def test_low_search_hit_rate_is_flagged(self, service):
        for i in range(20):
            service.get("search", f"query {i}")

        assert service.get_health_status()["caches"]["search"]["healthy"] is False

    def test_uptime(self, service, clock):
        clock.advance(12.5)
        assert service.get_health_status()["uptime"] == 12.5

    def test_memory_pressure(self, clock):
        service = CacheService(CacheServiceConfig(global_memory_limit=1000), clock=clock)
        service.set("users", "big", "x" * 460)

        health = service.get_health_status()

        assert health["memory_usage"] > 900
        assert health["memory_pressure"] is True
        assert health["healthy"] is False


class TestMaintenance:
    """Stale purging, emergency eviction and the background loop."""

    def test_perform_maintenance_purges_stale_entries(self, service, clock):
        service.set("users", "short", 1, ttl=1)
        service.set("users", "long", 2)
        clock.advance(2)

        report = service.perform_maintenance()

        assert report == {"purged": 1, "emergency_evictions": 0}
        assert len(service.get_cache("users")) == 1

    def test_memory_emergency_evicts_a_quarter(self, clock):
        service = CacheService(CacheServiceConfig(global_memory_limit=2000), clock=clock)
        for i in range(8):
            service.set("users", f"u{i}", "x" * 100)

        evicted = service.check_memory_usage()

        assert evicted == 2
        assert service.get_cache("users").keys()[0] == "users:u2"

    def test_no_limit_means_no_eviction(self, service):
        service.set("users", "u", "x" * 1000)
        assert service.check_memory_usage() == 0

    @pytest.mark.asyncio
    async def test_maintenance_loop_runs_and_shutdown_clears(self, clock):
        service = CacheService(CacheServiceConfig(maintenance_interval=0.01), clock=clock)
        service.set("users", "short", 1, ttl=1)
        clock.advance(2)

        service.start_maintenance()
        service.start_maintenance()
        await asyncio.sleep(0.05)

        assert len(service.get_cache("users")) == 0

        service.set("users", "k", 1)
        await service.shutdown()

        assert service.get("users", "k") is None
        assert service._maintenance_task is None
