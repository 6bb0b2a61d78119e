"""
LRU cache with TTL support

Fixed-capacity in-memory store with least-recently-used eviction, per-entry
TTL overrides, optional size accounting and hit/miss metrics. Removal events
are published to dispose listeners as (key, value, reason) where reason is
"evict", "set" or "delete".
"""

import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, TypeVar

from slack_mcp.utils.errors import ConfigurationError
from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DisposeListener = Callable[[Any, Any, str], None]
SizeCalculation = Callable[[Any, Any], int]

EVICT = "evict"
SET = "set"
DELETE = "delete"


@dataclass
class CacheEntry(Generic[V]):
    """A cached value with its timing and size metadata"""

    value: V
    created_at: float
    ttl: Optional[float] = None
    size: int = 0

    def is_expired(self, now: float) -> bool:
        if not self.ttl:
            return False
        return now - self.created_at >= self.ttl

    def remaining(self, now: float) -> float:
        if not self.ttl:
            return float("inf")
        return max(0.0, self.created_at + self.ttl - now)


@dataclass
class CacheMetrics:
    """Point-in-time counters for one cache instance"""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    hit_rate: float = 0.0
    memory_usage: int = 0
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_hit_rate(hits: int, misses: int) -> float:
    """Hit rate as a percentage rounded to 2 decimals, 0 without lookups"""
    total = hits + misses
    if total == 0:
        return 0.0
    return round(hits / total * 100, 2)


class LRUCache(Generic[K, V]):
    """
    Bounded key/value store with LRU eviction and TTL expiry

    Expired entries are purged lazily on access, on capacity pressure and by
    purge_stale(). Stale values are never returned unless allow_stale is set.
    """

    def __init__(
        self,
        max: int,
        ttl: Optional[float] = None,
        update_age_on_get: bool = True,
        size_calculation: Optional[SizeCalculation] = None,
        max_size: Optional[int] = None,
        allow_stale: bool = False,
        no_dispose_on_set: bool = False,
        dispose: Optional[DisposeListener] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max: Maximum number of entries (positive integer)
            ttl: Default time-to-live in seconds; None or 0 disables expiry
            update_age_on_get: Refresh recency on a successful get
            size_calculation: fn(value, key) -> size used for max_size
            max_size: Upper bound on the summed entry sizes
            allow_stale: Return an expired value once before purging it
            no_dispose_on_set: Skip the "set" dispose event on overwrite
            dispose: Initial dispose listener
            clock: Monotonic time source in seconds

        Raises:
            ConfigurationError: On invalid capacity, TTL or size settings
        """
        if isinstance(max, bool) or not isinstance(max, int):
            raise ConfigurationError(f"LRU cache max must be an integer, got {max!r}")
        if max <= 0:
            raise ConfigurationError(f"LRU cache max must be positive, got {max}")
        if ttl is not None and ttl < 0:
            raise ConfigurationError(f"LRU cache ttl must not be negative, got {ttl}")
        if max_size is not None:
            if max_size <= 0:
                raise ConfigurationError(f"LRU cache max_size must be positive, got {max_size}")
            if size_calculation is None:
                raise ConfigurationError("LRU cache max_size requires a size_calculation")

        self._max = max
        self._ttl = ttl or None
        self._update_age_on_get = update_age_on_get
        self._size_calculation = size_calculation
        self._max_size = max_size
        self._allow_stale = allow_stale
        self._no_dispose_on_set = no_dispose_on_set
        self._clock = clock

        self._store: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._total_size = 0
        self._listeners: List[DisposeListener] = []
        if dispose is not None:
            self._listeners.append(dispose)

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0

    # Listeners

    def add_dispose_listener(self, listener: DisposeListener) -> None:
        self._listeners.append(listener)

    def remove_dispose_listener(self, listener: DisposeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, key: K, value: V, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value, reason)
            except Exception as e:
                logger.warning("Dispose listener failed for key %r (%s): %s", key, reason, e)

    # Core operations

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return the cached value or `default`, counting a hit or a miss"""
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return default

        if entry.is_expired(self._clock()):
            self._remove(key, EVICT)
            if self._allow_stale:
                self._hits += 1
                return entry.value
            self._misses += 1
            return default

        if self._update_age_on_get:
            self._store.move_to_end(key)
        self._hits += 1
        return entry.value

    def has(self, key: K) -> bool:
        """True if an unexpired entry exists; touches neither metrics nor recency"""
        entry = self._store.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def __contains__(self, key: object) -> bool:
        return self.has(key)  # type: ignore[arg-type]

    def peek(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Read an unexpired value without touching metrics or recency"""
        entry = self._store.get(key)
        if entry is None or entry.is_expired(self._clock()):
            return default
        return entry.value

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> bool:
        """
        Store a value, evicting least-recently-used entries when over capacity

        Args:
            key: Cache key
            value: Value to store
            ttl: Per-entry TTL override in seconds

        Returns:
            True if stored, False if the entry was refused (the cache is unchanged)
        """
        if ttl is not None and ttl < 0:
            logger.warning("Refusing cache entry %r with negative ttl %s", key, ttl)
            return False

        size = 0
        if self._size_calculation is not None:
            try:
                size = self._size_calculation(value, key)
            except Exception as e:
                logger.warning("Size calculation failed for key %r: %s", key, e)
                return False
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                logger.warning("Size calculation for key %r returned invalid size %r", key, size)
                return False
            if self._max_size is not None and size > self._max_size:
                logger.debug("Entry %r (%d) is larger than max_size %d", key, size, self._max_size)
                return False

        previous = self._store.pop(key, None)
        if previous is not None:
            self._total_size -= previous.size
            if not self._no_dispose_on_set and previous.value is not value:
                self._notify(key, previous.value, SET)

        self._store[key] = CacheEntry(
            value=value,
            created_at=self._clock(),
            ttl=self._ttl if ttl is None else (ttl or None),
            size=size,
        )
        self._total_size += size
        self._sets += 1

        if self._over_capacity():
            self.purge_stale()
        while self._over_capacity():
            oldest = next(iter(self._store))
            self._remove(oldest, EVICT)

        return True

    def delete(self, key: K) -> bool:
        """Remove an entry regardless of expiry"""
        if key not in self._store:
            return False
        self._remove(key, DELETE)
        return True

    def clear(self) -> None:
        """Drop every entry; listeners see one "delete" per entry"""
        entries = list(self._store.items())
        self._store.clear()
        self._total_size = 0
        for key, entry in entries:
            self._notify(key, entry.value, DELETE)

    def purge_stale(self) -> int:
        """Eagerly remove expired entries, returning how many were purged"""
        now = self._clock()
        expired = [key for key, entry in self._store.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key, EVICT)
        if expired:
            logger.debug("Purged %d stale cache entries", len(expired))
        return len(expired)

    def evict_oldest(self, count: int) -> int:
        """Evict up to `count` least-recently-used entries"""
        evicted = 0
        while evicted < count and self._store:
            self._remove(next(iter(self._store)), EVICT)
            evicted += 1
        return evicted

    def _over_capacity(self) -> bool:
        if len(self._store) > self._max:
            return True
        return self._max_size is not None and self._total_size > self._max_size

    def _remove(self, key: K, reason: str) -> None:
        entry = self._store.pop(key)
        self._total_size -= entry.size
        if reason == EVICT:
            self._evictions += 1
        elif reason == DELETE:
            self._deletes += 1
        self._notify(key, entry.value, reason)

    # Inspection

    def keys(self) -> List[K]:
        """Unexpired keys from least to most recently used"""
        now = self._clock()
        return [key for key, entry in self._store.items() if not entry.is_expired(now)]

    def get_remaining_ttl(self, key: K) -> float:
        """Seconds left for an entry, 0 if missing or expired, inf without TTL"""
        entry = self._store.get(key)
        if entry is None:
            return 0.0
        return entry.remaining(self._clock())

    def __len__(self) -> int:
        return len(self._store)

    @property
    def size(self) -> int:
        return len(self._store)

    @property
    def max(self) -> int:
        return self._max

    @property
    def ttl(self) -> Optional[float]:
        return self._ttl

    @property
    def memory_usage(self) -> int:
        if self._size_calculation is None:
            return 0
        return self._total_size

    def get_metrics(self) -> CacheMetrics:
        return CacheMetrics(
            hits=self._hits,
            misses=self._misses,
            sets=self._sets,
            deletes=self._deletes,
            evictions=self._evictions,
            hit_rate=calculate_hit_rate(self._hits, self._misses),
            memory_usage=self.memory_usage,
            size=len(self._store),
        )

    def reset_metrics(self) -> None:
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0
