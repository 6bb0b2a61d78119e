"""
Cache key construction

Keys look like "<domain>:<operation>[:<id>...][|<params>]" where params is
the canonical JSON of the non-None parameters, so logically identical
requests always share a key no matter how the caller ordered them.
"""

import json
from typing import Any, Dict, Optional

CACHE_DOMAINS = ("channels", "users", "search", "files", "threads")


def canonical_params(params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return ""
    cleaned = {k: v for k, v in params.items() if v is not None}
    if not cleaned:
        return ""
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)


class CacheKeyBuilder:
    """Deterministic cache keys per domain"""

    @staticmethod
    def build(domain: str, operation: str, *identifiers: Optional[str],
              params: Optional[Dict[str, Any]] = None) -> str:
        if domain not in CACHE_DOMAINS:
            raise ValueError(f"Unknown cache domain: {domain}")
        parts = [domain, operation]
        parts.extend(str(i) for i in identifiers if i)
        key = ":".join(parts)
        suffix = canonical_params(params)
        return f"{key}|{suffix}" if suffix else key

    @staticmethod
    def channel(operation: str, channel_id: Optional[str] = None,
                params: Optional[Dict[str, Any]] = None) -> str:
        return CacheKeyBuilder.build("channels", operation, channel_id, params=params)

    @staticmethod
    def user(operation: str, user_id: Optional[str] = None,
             params: Optional[Dict[str, Any]] = None) -> str:
        return CacheKeyBuilder.build("users", operation, user_id, params=params)

    @staticmethod
    def search(operation: str, query: str, params: Optional[Dict[str, Any]] = None) -> str:
        return CacheKeyBuilder.build("search", operation, query, params=params)

    @staticmethod
    def file(operation: str, file_id: Optional[str] = None,
             params: Optional[Dict[str, Any]] = None) -> str:
        return CacheKeyBuilder.build("files", operation, file_id, params=params)

    @staticmethod
    def thread(operation: str, channel_id: Optional[str] = None,
               thread_ts: Optional[str] = None,
               params: Optional[Dict[str, Any]] = None) -> str:
        # A thread timestamp without its channel is not addressable
        if not channel_id:
            thread_ts = None
        return CacheKeyBuilder.build("threads", operation, channel_id, thread_ts, params=params)
