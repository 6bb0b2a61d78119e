"""
Infrastructure wiring
Builds the client manager, rate-limit metrics and cache service shared by every tool
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from slack_mcp.cache.cache_service import CacheService, CacheServiceConfig
from slack_mcp.config.settings import Settings
from slack_mcp.tools.slack.client import SlackClientManager
from slack_mcp.utils.logging import get_logger
from slack_mcp.utils.rate_limiter import RateLimitMetrics, SlackRateLimiter

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class SlackInfrastructure:
    """Everything a tool needs to talk to Slack"""

    settings: Settings
    client_manager: SlackClientManager
    rate_limit_metrics: RateLimitMetrics
    cache_service: Optional[CacheService]
    max_request_concurrency: int
    cache_enabled: bool

    async def cache_or_fetch(self, domain: str, key: str,
                             fetch: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
        """Go through the cache when there is one, otherwise fetch directly"""
        if self.cache_service is None:
            return await fetch()
        return await self.cache_service.cache_or_fetch(domain, key, fetch, **kwargs)

    def invalidate_channel(self, channel_id: str) -> int:
        if self.cache_service is None:
            return 0
        return self.cache_service.invalidate_by_channel(channel_id)

    async def aclose(self) -> None:
        if self.cache_service is not None:
            await self.cache_service.shutdown()
        await self.client_manager.close()


def create_infrastructure(settings: Settings,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> SlackInfrastructure:
    """
    Build the shared infrastructure from settings

    A cache service that fails to build is logged and replaced by None so
    tools keep working without caching.
    """
    metrics = RateLimitMetrics()
    rate_limiter = SlackRateLimiter(
        requests_per_minute=settings.slack_requests_per_minute,
        burst=settings.slack_rate_limit_burst,
    )
    client_manager = SlackClientManager(
        settings, rate_limiter=rate_limiter, metrics=metrics, transport=transport
    )

    cache_service: Optional[CacheService] = None
    if settings.cache_enabled:
        try:
            cache_service = CacheService(CacheServiceConfig.from_settings(settings))
        except Exception as e:
            logger.warning("Cache service disabled, initialization failed: %s", e)

    return SlackInfrastructure(
        settings=settings,
        client_manager=client_manager,
        rate_limit_metrics=metrics,
        cache_service=cache_service,
        max_request_concurrency=settings.slack_max_request_concurrency,
        cache_enabled=cache_service is not None,
    )
