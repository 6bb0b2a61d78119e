"""
Caching layer: LRU engine, search cache and the cache service
"""

from .cache_service import CacheService, CacheServiceConfig, DomainCacheConfig
from .keys import CacheKeyBuilder
from .lru_cache import CacheMetrics, LRUCache
from .search_cache import (
    CacheInvalidationPattern,
    SearchCache,
    SearchCacheConfig,
    SearchQueryNormalizer,
)

__all__ = [
    "CacheService",
    "CacheServiceConfig",
    "DomainCacheConfig",
    "CacheKeyBuilder",
    "CacheMetrics",
    "LRUCache",
    "CacheInvalidationPattern",
    "SearchCache",
    "SearchCacheConfig",
    "SearchQueryNormalizer",
]
