"""
Rate limiting utilities for Slack Web API calls

Token buckets pace outgoing requests per Slack method tier, and
RateLimitMetrics records what happened when Slack pushed back with 429s.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """Token bucket implementation for rate limiting"""

    def __init__(self, capacity: int, refill_rate: float,
                 clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.tokens = float(capacity)
        self.refill_rate = refill_rate
        self._clock = clock
        self.last_refill = clock()

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens from the bucket"""
        self._refill()

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: int = 1) -> float:
        """Seconds until `tokens` tokens are available (0 if available now)"""
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate

    def _refill(self):
        """Refill tokens based on time elapsed"""
        now = self._clock()
        elapsed = now - self.last_refill
        tokens_to_add = elapsed * self.refill_rate

        self.tokens = min(self.capacity, self.tokens + tokens_to_add)
        self.last_refill = now


def extract_tier(method: Optional[str]) -> str:
    """
    Map a Slack Web API method name (or URL) to the tier used for pacing and metrics

    Args:
        method: e.g. "chat.postMessage" or "https://slack.com/api/search.messages"

    Returns:
        One of tier1, tier2, tier3, tier4, other, unknown
    """
    if not method:
        return "unknown"

    if "chat." in method or "files." in method:
        return "tier1"
    if ("conversations." in method or "users." in method
            or "reactions." in method or "team." in method):
        return "tier2"
    if "search." in method:
        return "tier3"
    if "admin." in method:
        return "tier4"

    return "other"


class SlackRateLimiter:
    """Per-tier token buckets for Slack API calls"""

    def __init__(self, requests_per_minute: int = 60, burst: int = 10,
                 tier_limits: Optional[Dict[str, Tuple[int, int]]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            requests_per_minute: Default sustained rate for every tier
            burst: Default bucket capacity for every tier
            tier_limits: Optional {tier: (requests_per_minute, burst)} overrides
            clock: Monotonic time source
        """
        if requests_per_minute <= 0 or burst <= 0:
            raise ValueError("requests_per_minute and burst must be positive")

        self.requests_per_minute = requests_per_minute
        self.burst = burst
        self.tier_limits = dict(tier_limits or {})
        self._clock = clock
        self.buckets: Dict[str, TokenBucket] = {}

    def get_bucket(self, tier: str) -> TokenBucket:
        """Get or create the token bucket for a tier"""
        if tier not in self.buckets:
            rpm, burst = self.tier_limits.get(tier, (self.requests_per_minute, self.burst))
            self.buckets[tier] = TokenBucket(
                capacity=burst,
                refill_rate=rpm / 60.0,
                clock=self._clock
            )
        return self.buckets[tier]

    def check_rate_limit(self, method: str, tokens: int = 1) -> bool:
        """Consume tokens for a call if allowed right now"""
        return self.get_bucket(extract_tier(method)).consume(tokens)

    def wait_if_limited(self, method: str) -> Optional[float]:
        """Return wait time if rate limited, None if a token was taken"""
        bucket = self.get_bucket(extract_tier(method))
        if bucket.consume():
            return None
        return bucket.wait_time()

    def reset(self, tier: Optional[str] = None):
        """Reset one tier's bucket, or all of them"""
        if tier is None:
            self.buckets.clear()
        else:
            self.buckets.pop(tier, None)


@dataclass
class RateLimitMetrics:
    """Counters describing Slack rate limiting seen by the clients"""

    total_requests: int = 0
    rate_limited_requests: int = 0
    retry_attempts: int = 0
    last_rate_limit_time: Optional[datetime] = None
    rate_limits_by_tier: Dict[str, int] = field(default_factory=dict)

    def record_request(self) -> None:
        self.total_requests += 1

    def record_retry(self) -> None:
        self.retry_attempts += 1

    def record_rate_limit(self, method: str, client_type: str,
                          retry_after: Optional[float]) -> None:
        """Record a 429 response for a method"""
        tier = extract_tier(method)
        self.rate_limited_requests += 1
        self.last_rate_limit_time = datetime.now(timezone.utc)
        self.rate_limits_by_tier[tier] = self.rate_limits_by_tier.get(tier, 0) + 1

        logger.warning(
            "Rate limit hit for %s client on %s (tier=%s, retry_after=%s, total=%d)",
            client_type, method, tier, retry_after, self.rate_limited_requests
        )

    def snapshot(self) -> Dict[str, object]:
        """Point-in-time copy suitable for health reporting"""
        return {
            "total_requests": self.total_requests,
            "rate_limited_requests": self.rate_limited_requests,
            "retry_attempts": self.retry_attempts,
            "last_rate_limit_time": (
                self.last_rate_limit_time.isoformat() if self.last_rate_limit_time else None
            ),
            "rate_limits_by_tier": dict(self.rate_limits_by_tier),
        }
