"""
Cache service for the Slack MCP server

Owns one LRU cache per resource domain plus the two-tier search cache, and
gives tools a single cache_or_fetch call with single-flight deduplication,
glob invalidation, health reporting and periodic maintenance.
"""

import asyncio
import fnmatch
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from slack_mcp.cache.keys import CACHE_DOMAINS
from slack_mcp.cache.lru_cache import CacheMetrics, LRUCache, calculate_hit_rate
from slack_mcp.cache.search_cache import (
    SearchCache, SearchCacheConfig, SearchCacheMetrics, options_digest
)
from slack_mcp.utils.errors import ConfigurationError
from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MB = 1024 * 1024
LRU_DOMAINS = ("channels", "users", "files", "threads")

MEMORY_WARNING_PERCENT = 90
MEMORY_EMERGENCY_PERCENT = 95
EMERGENCY_EVICTION_FRACTION = 0.25
LRU_HEALTHY_HIT_RATE = 50
SEARCH_HEALTHY_HIT_RATE = 30


@dataclass
class DomainCacheConfig:
    max: int
    ttl: float
    update_age_on_get: bool = True
    max_size: Optional[int] = None


@dataclass
class CacheServiceConfig:
    """Per-domain cache configuration"""

    channels: DomainCacheConfig = field(
        default_factory=lambda: DomainCacheConfig(max=1000, ttl=3600, max_size=10 * MB)
    )
    users: DomainCacheConfig = field(
        default_factory=lambda: DomainCacheConfig(max=500, ttl=1800, max_size=15 * MB)
    )
    search: SearchCacheConfig = field(default_factory=SearchCacheConfig)
    files: DomainCacheConfig = field(
        default_factory=lambda: DomainCacheConfig(max=500, ttl=1800)
    )
    threads: DomainCacheConfig = field(
        default_factory=lambda: DomainCacheConfig(max=300, ttl=2700, max_size=20 * MB)
    )
    global_memory_limit: Optional[int] = None
    maintenance_interval: float = 300.0
    health_min_samples: int = 20

    @classmethod
    def from_settings(cls, settings: Any) -> "CacheServiceConfig":
        """Build the cache configuration from the flat application settings"""
        return cls(
            channels=DomainCacheConfig(
                max=settings.cache_channels_max, ttl=settings.cache_channels_ttl, max_size=10 * MB
            ),
            users=DomainCacheConfig(
                max=settings.cache_users_max, ttl=settings.cache_users_ttl, max_size=15 * MB
            ),
            search=SearchCacheConfig(
                max_queries=settings.cache_search_max_queries,
                max_results=settings.cache_search_max_results,
                query_ttl=settings.cache_search_query_ttl,
                result_ttl=settings.cache_search_result_ttl,
                adaptive_ttl=settings.cache_search_adaptive_ttl,
                enable_pattern_invalidation=settings.cache_search_pattern_invalidation,
            ),
            files=DomainCacheConfig(
                max=settings.cache_files_max,
                ttl=settings.cache_files_ttl,
                max_size=settings.cache_files_max_size,
            ),
            threads=DomainCacheConfig(
                max=settings.cache_threads_max, ttl=settings.cache_threads_ttl, max_size=20 * MB
            ),
            global_memory_limit=settings.cache_global_memory_limit,
            maintenance_interval=settings.cache_maintenance_interval,
        )


@dataclass
class CacheServiceMetrics:
    domains: Dict[str, CacheMetrics]
    search: SearchCacheMetrics
    total_memory_usage: int = 0
    total_hits: int = 0
    total_misses: int = 0
    overall_hit_rate: float = 0.0
    single_flight_joins: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: m.to_dict() for name, m in self.domains.items()}
        data["search"] = self.search.to_dict()
        data["global"] = {
            "total_memory_usage": self.total_memory_usage,
            "total_hits": self.total_hits,
            "total_misses": self.total_misses,
            "overall_hit_rate": self.overall_hit_rate,
            "single_flight_joins": self.single_flight_joins,
        }
        return data


def entry_size(value: Any, key: Any) -> int:
    try:
        return len(json.dumps(value, default=str)) * 2 + len(str(key)) * 2 + 50
    except (TypeError, ValueError):
        return 1000


def _mentions(key: str, identifier: str) -> bool:
    """True if a key names `identifier` as a path segment or a parameter value"""
    head, _, params = key.partition("|")
    return identifier in head.split(":")[2:] or f'"{identifier}"' in params


class CacheService:
    """Cache-or-fetch orchestration over the per-domain caches"""

    def __init__(self, config: Optional[CacheServiceConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or CacheServiceConfig()
        self._validate_config()
        self._clock = clock
        self._started_at = clock()

        self._caches: Dict[str, LRUCache[str, Any]] = {}
        for domain in LRU_DOMAINS:
            domain_config: DomainCacheConfig = getattr(self.config, domain)
            cache: LRUCache[str, Any] = LRUCache(
                max=domain_config.max,
                ttl=domain_config.ttl,
                update_age_on_get=domain_config.update_age_on_get,
                size_calculation=entry_size,
                max_size=domain_config.max_size,
                clock=clock,
            )
            cache.add_dispose_listener(self._log_dispose)
            self._caches[domain] = cache

        self.search = SearchCache(self.config.search, clock=clock)

        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}
        self._single_flight_joins = 0
        self._maintenance_task: Optional["asyncio.Task[None]"] = None

        logger.info("Cache service initialized with domains: %s", ", ".join(CACHE_DOMAINS))

    def _validate_config(self) -> None:
        limit = self.config.global_memory_limit
        if limit is not None and limit <= 0:
            raise ConfigurationError("global_memory_limit must be positive")
        if self.config.maintenance_interval <= 0:
            raise ConfigurationError("maintenance_interval must be positive")
        if self.config.health_min_samples < 0:
            raise ConfigurationError("health_min_samples must not be negative")

    @staticmethod
    def _log_dispose(key: str, value: Any, reason: str) -> None:
        logger.debug("Cache entry disposed: %s (%s)", key, reason)

    # Access

    def get_cache(self, domain: str) -> LRUCache[str, Any]:
        if domain == "search":
            raise ValueError("The search domain is a SearchCache; use .search")
        if domain not in self._caches:
            raise ValueError(f"Unknown cache domain: {domain}")
        return self._caches[domain]

    @staticmethod
    def qualify(domain: str, key: str) -> str:
        prefix = f"{domain}:"
        return key if key.startswith(prefix) else prefix + key

    def get(self, domain: str, key: str, options: Optional[Dict[str, Any]] = None) -> Any:
        """Cached value or None; search keys are raw query strings"""
        if domain == "search":
            result = self.search.get(key, options)
            return None if result is None else result.payload
        return self.get_cache(domain).get(self.qualify(domain, key))

    def set(self, domain: str, key: str, value: Any, ttl: Optional[float] = None,
            options: Optional[Dict[str, Any]] = None, volatile: bool = False) -> bool:
        if domain == "search":
            return self.search.set(key, value, options, volatile=volatile)
        return self.get_cache(domain).set(self.qualify(domain, key), value, ttl=ttl)

    # Cache or fetch

    async def cache_or_fetch(
        self,
        domain: str,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
        skip_cache: bool = False,
        volatile: bool = False,
        options: Optional[Dict[str, Any]] = None,
    ) -> T:
        """
        Return the cached value for a key, fetching and storing it on a miss

        Concurrent misses on the same key share one fetch. Fetch errors
        propagate to every waiting caller and nothing is cached; cache
        failures degrade to a direct fetch.
        Invalidating a key also drops its in-flight fetch, whose value is
        then returned to its waiters but not cached.

        Args:
            domain: channels, users, search, files or threads
            key: Key within the domain (raw query for search)
            fetch: Async producer called on a miss
            ttl: TTL override in seconds (LRU domains)
            skip_cache: Bypass the cache entirely
            volatile: Mark a search result as likely to change soon
            options: Search request options that are part of the identity
        """
        if skip_cache:
            return await fetch()

        if domain != "search" and domain not in self._caches:
            raise ValueError(f"Unknown cache domain: {domain}")

        try:
            cached = self.get(domain, key, options)
        except Exception as e:
            logger.warning("Cache read failed for %s/%s, fetching directly: %s", domain, key, e)
            return await fetch()

        if cached is not None:
            logger.debug("Cache hit for %s/%s", domain, key)
            return cached

        flight_key = self.qualify(domain, key)
        if options:
            flight_key = f"{flight_key}|{options_digest(options)}"

        task = self._in_flight.get(flight_key)
        if task is None:
            logger.debug("Cache miss for %s/%s, fetching", domain, key)
            task = asyncio.ensure_future(
                self._fetch_and_store(domain, key, flight_key, fetch, ttl, volatile, options)
            )
            self._in_flight[flight_key] = task
            task.add_done_callback(lambda t, k=flight_key: self._finish_flight(k, t))
        else:
            self._single_flight_joins += 1
            logger.debug("Joining in-flight fetch for %s/%s", domain, key)

        return await asyncio.shield(task)

    async def _fetch_and_store(self, domain: str, key: str, flight_key: str,
                               fetch: Callable[[], Awaitable[T]],
                               ttl: Optional[float], volatile: bool,
                               options: Optional[Dict[str, Any]]) -> T:
        value = await fetch()
        if value is None:
            return value
        if self._in_flight.get(flight_key) is not asyncio.current_task():
            # Invalidated while in flight; the value predates the invalidation
            logger.debug("Not caching %s/%s, invalidated during fetch", domain, key)
            return value
        try:
            if not self.set(domain, key, value, ttl=ttl, options=options, volatile=volatile):
                logger.debug("Value for %s/%s was not cached", domain, key)
        except Exception as e:
            logger.warning("Cache write failed for %s/%s: %s", domain, key, e)
        return value

    def _finish_flight(self, flight_key: str, task: "asyncio.Future[Any]") -> None:
        if self._in_flight.get(flight_key) is task:
            del self._in_flight[flight_key]
        if not task.cancelled():
            # Waiters receive the error; this only marks it as retrieved
            task.exception()

    # Invalidation

    def invalidate(self, pattern: str) -> int:
        """
        Remove every entry whose domain-qualified key matches a glob

        "channels:*" only touches the channels domain; a pattern without a
        domain prefix is tried against every domain. Search entries are
        matched as "search:<normalized query>".

        Returns:
            Number of entries removed
        """
        domain = pattern.split(":", 1)[0]
        domains = [domain] if domain in CACHE_DOMAINS else list(CACHE_DOMAINS)

        removed = 0
        for name in domains:
            if name == "search":
                self._drop_flights(lambda flight: flight.startswith("search:"))
                removed += self.search.invalidate_matching(
                    lambda normalized: fnmatch.fnmatchcase(f"search:{normalized}", pattern),
                    reason=f"pattern {pattern}",
                )
                continue
            self._drop_flights(
                lambda flight, prefix=f"{name}:": flight.startswith(prefix)
                and fnmatch.fnmatchcase(flight, pattern)
            )
            cache = self._caches[name]
            for key in cache.keys():
                if fnmatch.fnmatchcase(key, pattern) and cache.delete(key):
                    removed += 1

        logger.debug("Invalidated %d cache entries matching %s", removed, pattern)
        return removed

    def _drop_flights(self, matches: Callable[[str], bool]) -> int:
        """
        Forget in-flight fetches whose key matches

        Callers already waiting still get the result, but it is not cached
        and later calls start a fresh fetch.
        """
        stale = [flight for flight in self._in_flight if matches(flight)]
        for flight in stale:
            del self._in_flight[flight]
        if stale:
            logger.debug("Dropped %d in-flight fetches", len(stale))
        return len(stale)

    def _invalidate_mentions(self, domains: List[str], identifier: str) -> int:
        removed = 0
        self._drop_flights(
            lambda flight: flight.split(":", 1)[0] in domains and _mentions(flight, identifier)
        )
        for name in domains:
            cache = self._caches[name]
            for key in cache.keys():
                if _mentions(key, identifier) and cache.delete(key):
                    removed += 1
        return removed

    def invalidate_by_channel(self, channel_id: str) -> int:
        """Drop channel, thread, file and search entries that reference a channel"""
        removed = self._invalidate_mentions(["channels", "threads", "files"], channel_id)
        self._drop_flights(lambda flight: flight.startswith("search:"))
        removed += self.search.invalidate_channel(channel_id)
        logger.debug("Invalidated %d cache entries for channel %s", removed, channel_id)
        return removed

    def invalidate_by_user(self, user_id: str) -> int:
        """Drop user, thread and search entries that reference a user"""
        removed = self._invalidate_mentions(["users", "threads"], user_id)
        self._drop_flights(lambda flight: flight.startswith("search:"))
        removed += self.search.invalidate_user(user_id)
        logger.debug("Invalidated %d cache entries for user %s", removed, user_id)
        return removed

    def clear_all(self) -> None:
        self._in_flight.clear()
        for cache in self._caches.values():
            cache.clear()
        self.search.clear()
        logger.info("All cache instances cleared")

    # Metrics and health

    def get_metrics(self) -> CacheServiceMetrics:
        domains = {name: cache.get_metrics() for name, cache in self._caches.items()}
        search = self.search.get_metrics()

        total_hits = sum(m.hits for m in domains.values()) + search.result_hits
        total_misses = sum(m.misses for m in domains.values()) + search.result_misses

        return CacheServiceMetrics(
            domains=domains,
            search=search,
            total_memory_usage=sum(m.memory_usage for m in domains.values()) + search.memory_usage,
            total_hits=total_hits,
            total_misses=total_misses,
            overall_hit_rate=calculate_hit_rate(total_hits, total_misses),
            single_flight_joins=self._single_flight_joins,
        )

    def get_health_status(self) -> Dict[str, Any]:
        metrics = self.get_metrics()
        min_samples = self.config.health_min_samples

        caches: Dict[str, Dict[str, Any]] = {}
        for name, m in metrics.domains.items():
            issues = []
            if m.hits + m.misses >= min_samples and m.hit_rate < LRU_HEALTHY_HIT_RATE:
                issues.append(f"Low hit rate: {m.hit_rate}%")
            caches[name] = {"healthy": not issues, "issues": issues}

        search = metrics.search
        issues = []
        if (search.result_hits + search.result_misses >= min_samples
                and search.result_hit_rate < SEARCH_HEALTHY_HIT_RATE):
            issues.append(f"Low search result hit rate: {search.result_hit_rate}%")
        caches["search"] = {"healthy": not issues, "issues": issues}

        limit = self.config.global_memory_limit
        memory_pressure = bool(limit) and metrics.total_memory_usage / limit * 100 > MEMORY_WARNING_PERCENT

        return {
            "healthy": all(c["healthy"] for c in caches.values()) and not memory_pressure,
            "caches": caches,
            "memory_usage": metrics.total_memory_usage,
            "memory_limit": limit,
            "memory_pressure": memory_pressure,
            "uptime": round(self._clock() - self._started_at, 3),
        }

    # Maintenance

    def perform_maintenance(self) -> Dict[str, Any]:
        """Purge stale entries everywhere and react to global memory pressure"""
        purged = sum(cache.purge_stale() for cache in self._caches.values())
        purged += self.search.purge_stale()
        evicted = self.check_memory_usage()
        logger.info("Cache maintenance purged %d stale entries", purged)
        return {"purged": purged, "emergency_evictions": evicted}

    def check_memory_usage(self) -> int:
        limit = self.config.global_memory_limit
        if not limit:
            return 0

        usage = self.get_metrics().total_memory_usage
        percent = usage / limit * 100
        if percent <= MEMORY_WARNING_PERCENT:
            return 0

        logger.warning("Cache memory usage high: %.1f%% (%d/%d bytes)", percent, usage, limit)
        if percent <= MEMORY_EMERGENCY_PERCENT:
            return 0

        logger.warning("Evicting the oldest %d%% of every cache due to memory pressure",
                       int(EMERGENCY_EVICTION_FRACTION * 100))
        return sum(
            cache.evict_oldest(math.ceil(len(cache) * EMERGENCY_EVICTION_FRACTION))
            for cache in self._caches.values()
        )

    def start_maintenance(self) -> None:
        """Run perform_maintenance every maintenance_interval seconds"""
        if self._maintenance_task is not None and not self._maintenance_task.done():
            return
        self._maintenance_task = asyncio.ensure_future(self._maintenance_loop())

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.maintenance_interval)
            try:
                self.perform_maintenance()
            except Exception:
                logger.exception("Scheduled cache maintenance failed")

    async def shutdown(self) -> None:
        logger.info("Shutting down cache service")
        task, self._maintenance_task = self._maintenance_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear_all()
