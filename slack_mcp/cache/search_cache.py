"""
Search result caching

Two cache tiers: a query tier mapping a normalized query (plus request
options) to a result key, and a result tier holding the payloads. Channel,
user and date indexes over the result tier let pattern invalidation drop
every result that touches stale data without scanning query strings.
"""

import fnmatch
import hashlib
import json
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Set, Tuple, Union

from slack_mcp.cache.lru_cache import DELETE, EVICT, LRUCache
from slack_mcp.utils.errors import ConfigurationError
from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)

SEARCH_OPERATORS = ("in", "from", "has", "after", "before", "filetype", "is", "during")
BOOLEAN_OPERATORS = ("AND", "OR", "NOT")

COMPLEXITY_WEIGHTS = {
    "terms": 1,
    "phrases": 2,
    "operators": 3,
    "booleans": 4,
    "groups": 5,
}
COMPLEXITY_SCORES = {"simple": 1, "moderate": 2, "complex": 3}

_PHRASE_RE = re.compile(r'"([^"]*)"')
_GROUP_RE = re.compile(r"\(([^)]+)\)")
_OPERATOR_RE = re.compile(r"(\w+):(\S+)")
_BOOLEAN_RE = re.compile(r"\b(AND|OR|NOT)\b")


@dataclass
class DateRange:
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass
class SearchQuery:
    """A search query reduced to a canonical form plus cache metadata"""

    raw: str
    normalized: str
    hash: str
    complexity: str
    complexity_score: int
    channels: List[str] = field(default_factory=list)
    users: List[str] = field(default_factory=list)
    date_range: Optional[DateRange] = None
    operators: List[str] = field(default_factory=list)


@dataclass
class _ParsedQuery:
    terms: List[str]
    phrases: List[str]
    operators: List[Tuple[str, str]]
    booleans: List[Tuple[str, int]]
    groups: List[List[str]]


def _parse_date(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


class SearchQueryNormalizer:
    """Turns Slack search syntax into a stable cache identity"""

    def parse(self, query: str) -> _ParsedQuery:
        text = (query or "").strip()
        if not text:
            raise ValueError("Search query must not be empty")

        phrases = [p.strip() for p in _PHRASE_RE.findall(text) if p.strip()]
        working = _PHRASE_RE.sub(" ", text)

        booleans: List[Tuple[str, int]] = []
        for match in _BOOLEAN_RE.finditer(working):
            before = working[:match.start()].split()
            terms_before = [t for t in before if t not in BOOLEAN_OPERATORS]
            booleans.append((match.group(1), max(1, len(terms_before))))

        groups: List[List[str]] = []
        for match in _GROUP_RE.finditer(working):
            groups.append([t for t in match.group(1).split() if t not in BOOLEAN_OPERATORS])
        working = _GROUP_RE.sub(" ", working)

        operators: List[Tuple[str, str]] = []
        for match in _OPERATOR_RE.finditer(working):
            op_type = match.group(1).lower()
            if op_type in SEARCH_OPERATORS:
                operators.append((op_type, match.group(2)))
        # Unknown "word:value" tokens stay as plain terms
        working = _OPERATOR_RE.sub(
            lambda m: " " if m.group(1).lower() in SEARCH_OPERATORS else m.group(0),
            working,
        )

        terms = [t for t in working.split() if t not in BOOLEAN_OPERATORS]
        return _ParsedQuery(terms, phrases, operators, booleans, groups)

    def normalize(self, query: str) -> SearchQuery:
        """
        Normalize a raw query

        Raises:
            ValueError: If the query is empty
        """
        parsed = self.parse(query)

        operators = sorted((t, v.lower()) for t, v in parsed.operators)
        parts: List[str] = sorted(t.lower() for t in parsed.terms)
        parts.extend(f'"{p}"' for p in sorted(p.lower() for p in parsed.phrases))
        parts.extend(
            "(" + " ".join(sorted(t.lower() for t in group)) + ")"
            for group in parsed.groups
        )
        parts.extend(f"{t}:{v}" for t, v in operators)
        parts.extend(b for b, _ in sorted(parsed.booleans, key=lambda item: item[1]))
        normalized = " ".join(parts).lower().strip()

        channels = [v.lstrip("#") for t, v in operators if t == "in" and v.lstrip("#")]
        users = [v.lstrip("@") for t, v in operators if t == "from" and v.lstrip("@")]
        date_range = self._extract_date_range(operators)

        score = self.complexity_score(parsed, channels, users, date_range)
        metadata = {
            "channels": channels,
            "users": users,
            "date_range": [
                str(date_range.start) if date_range and date_range.start else None,
                str(date_range.end) if date_range and date_range.end else None,
            ],
            "operators": [t for t, _ in operators],
        }

        return SearchQuery(
            raw=query.strip(),
            normalized=normalized,
            hash=_sha256(f"{normalized}:{json.dumps(metadata, sort_keys=True)}"),
            complexity=self.classify(score),
            complexity_score=score,
            channels=channels,
            users=users,
            date_range=date_range,
            operators=[t for t, _ in operators],
        )

    @staticmethod
    def complexity_score(parsed: _ParsedQuery, channels: List[str], users: List[str],
                         date_range: Optional[DateRange]) -> int:
        score = (
            len(parsed.terms) * COMPLEXITY_WEIGHTS["terms"]
            + len(parsed.phrases) * COMPLEXITY_WEIGHTS["phrases"]
            + len(parsed.operators) * COMPLEXITY_WEIGHTS["operators"]
            + len(parsed.booleans) * COMPLEXITY_WEIGHTS["booleans"]
            + len(parsed.groups) * COMPLEXITY_WEIGHTS["groups"]
        )
        if date_range is not None:
            score += 5
        if len(channels) > 1:
            score += 3
        if len(users) > 1:
            score += 3
        return score

    @staticmethod
    def classify(score: int) -> str:
        if score <= 5:
            return "simple"
        if score <= 15:
            return "moderate"
        return "complex"

    @staticmethod
    def _extract_date_range(operators: Iterable[Tuple[str, str]]) -> Optional[DateRange]:
        start = end = None
        for op_type, value in operators:
            if op_type == "after":
                start = _parse_date(value) or start
            elif op_type == "before":
                end = _parse_date(value) or end
        if start is None and end is None:
            return None
        return DateRange(start=start, end=end)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def options_digest(options: Optional[Dict[str, Any]]) -> str:
    """Short stable digest of request options, empty when there are none"""
    if not options:
        return ""
    return _sha256(json.dumps(options, sort_keys=True, default=str))[:8]


def estimate_size(value: Any, key: str) -> int:
    """Rough byte estimate: UTF-16 width of the JSON form plus overhead"""
    try:
        payload = json.dumps(value, default=str)
    except (TypeError, ValueError):
        return 1000
    return len(payload) * 2 + len(key) * 2 + 100


@dataclass
class SearchCacheConfig:
    max_queries: int = 100
    max_results: int = 5000
    query_ttl: float = 900
    result_ttl: float = 900
    adaptive_ttl: bool = True
    enable_pattern_invalidation: bool = True
    memory_limit: Optional[int] = None
    complexity_ttl_multipliers: Dict[str, float] = field(
        default_factory=lambda: {"simple": 3.0, "moderate": 2.0, "complex": 1.0}
    )
    volatile_ttl_factor: float = 0.25

    def validate(self) -> None:
        if isinstance(self.max_queries, bool) or not isinstance(self.max_queries, int) \
                or self.max_queries <= 0:
            raise ConfigurationError("max_queries must be a positive integer")
        if isinstance(self.max_results, bool) or not isinstance(self.max_results, int) \
                or self.max_results <= 0:
            raise ConfigurationError("max_results must be a positive integer")
        if self.query_ttl < 0:
            raise ConfigurationError("query_ttl must be non-negative")
        if self.result_ttl < 0:
            raise ConfigurationError("result_ttl must be non-negative")
        if self.memory_limit is not None and self.memory_limit <= 0:
            raise ConfigurationError("memory_limit must be positive")
        missing = set(COMPLEXITY_SCORES) - set(self.complexity_ttl_multipliers)
        if missing:
            raise ConfigurationError(f"complexity_ttl_multipliers missing {sorted(missing)}")
        if any(m <= 0 for m in self.complexity_ttl_multipliers.values()):
            raise ConfigurationError("complexity_ttl_multipliers must be positive")
        if not 0 < self.volatile_ttl_factor <= 1:
            raise ConfigurationError("volatile_ttl_factor must be in (0, 1]")


@dataclass
class CacheInvalidationPattern:
    """What to invalidate: type is channel, user, date or query_pattern"""

    type: str
    value: Union[str, Pattern[str]] = ""
    reason: str = ""


@dataclass
class SearchResult:
    query: SearchQuery
    payload: Any
    cache_key: str
    ttl: Optional[float]
    volatile: bool = False
    cached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SearchCacheMetrics:
    query_hits: int = 0
    query_misses: int = 0
    result_hits: int = 0
    result_misses: int = 0
    invalidations: int = 0
    adaptive_ttl_adjustments: int = 0
    memory_usage: int = 0
    avg_query_complexity: float = 0.0
    cached_queries: int = 0
    cached_results: int = 0

    @property
    def result_hit_rate(self) -> float:
        total = self.result_hits + self.result_misses
        return round(self.result_hits / total * 100, 2) if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_hits": self.query_hits,
            "query_misses": self.query_misses,
            "result_hits": self.result_hits,
            "result_misses": self.result_misses,
            "result_hit_rate": self.result_hit_rate,
            "invalidations": self.invalidations,
            "adaptive_ttl_adjustments": self.adaptive_ttl_adjustments,
            "memory_usage": self.memory_usage,
            "avg_query_complexity": self.avg_query_complexity,
            "cached_queries": self.cached_queries,
            "cached_results": self.cached_results,
        }


class SearchCache:
    """Two-tier search cache with adaptive TTL and pattern invalidation"""

    def __init__(self, config: Optional[SearchCacheConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or SearchCacheConfig()
        self.config.validate()
        self.normalizer = SearchQueryNormalizer()

        self._results: LRUCache[str, SearchResult] = LRUCache(
            max=self.config.max_results,
            ttl=self.config.result_ttl,
            size_calculation=lambda value, key: estimate_size(value.payload, key),
            max_size=self.config.memory_limit,
            clock=clock,
        )
        self._queries: LRUCache[str, str] = LRUCache(
            max=self.config.max_queries,
            ttl=self.config.query_ttl,
            clock=clock,
        )
        self._results.add_dispose_listener(self._unindex_result)
        self._queries.add_dispose_listener(self._drop_orphaned_result)

        self._channel_index: Dict[str, Set[str]] = {}
        self._user_index: Dict[str, Set[str]] = {}
        self._dated_results: Set[str] = set()

        self._reset_counters()

    def _reset_counters(self) -> None:
        self._query_hits = 0
        self._query_misses = 0
        self._result_hits = 0
        self._result_misses = 0
        self._invalidations = 0
        self._adaptive_adjustments = 0
        self._complexity_sum = 0
        self._complexity_count = 0

    # Keys

    def query_key(self, query: SearchQuery, options: Optional[Dict[str, Any]] = None) -> str:
        return f"{query.normalized}|{options_digest(options)}"

    def result_key(self, query: SearchQuery, options: Optional[Dict[str, Any]] = None) -> str:
        parts = ["search", query.hash, query.complexity]
        digest = options_digest(options)
        if digest:
            parts.append(digest)
        return ":".join(parts)

    # Lookups

    def get(self, query: str, options: Optional[Dict[str, Any]] = None) -> Optional[SearchResult]:
        """Return the cached result for a query, or None; unparseable queries are misses"""
        try:
            normalized = self.normalizer.normalize(query)
        except ValueError:
            self._result_misses += 1
            return None

        query_key = self.query_key(normalized, options)
        result_key = self._queries.get(query_key)
        if result_key is None:
            self._query_misses += 1
            self._result_misses += 1
            return None
        self._query_hits += 1

        result = self._results.get(result_key)
        if result is None:
            self._queries.delete(query_key)
            self._result_misses += 1
            return None

        self._result_hits += 1
        logger.debug("Search cache hit for %r", normalized.normalized)
        return result

    def set(self, query: str, payload: Any, options: Optional[Dict[str, Any]] = None,
            volatile: bool = False) -> bool:
        """
        Cache a search payload

        Args:
            query: Raw search query
            payload: Result to cache (opaque)
            options: Request options that change the result (count, sort, ...)
            volatile: Result likely to change soon; shortens the TTL

        Returns:
            True if both tiers accepted the entry
        """
        try:
            normalized = self.normalizer.normalize(query)
        except ValueError as e:
            logger.debug("Not caching search %r: %s", query, e)
            return False

        ttl = self.calculate_ttl(normalized, volatile)
        result_key = self.result_key(normalized, options)
        result = SearchResult(
            query=normalized, payload=payload, cache_key=result_key, ttl=ttl, volatile=volatile
        )

        if not self._results.set(result_key, result, ttl=ttl):
            return False
        self._index_result(result_key, normalized)

        query_ttl = max(self.config.query_ttl, ttl) if self.config.query_ttl and ttl else 0
        if not self._queries.set(self.query_key(normalized, options), result_key, ttl=query_ttl):
            self._results.delete(result_key)
            return False

        self._complexity_sum += COMPLEXITY_SCORES[normalized.complexity]
        self._complexity_count += 1
        return True

    def calculate_ttl(self, query: SearchQuery, volatile: bool = False) -> float:
        ttl = float(self.config.result_ttl)
        if not self.config.adaptive_ttl:
            return ttl
        ttl *= self.config.complexity_ttl_multipliers[query.complexity]
        if volatile:
            ttl *= self.config.volatile_ttl_factor
        self._adaptive_adjustments += 1
        return ttl

    def get_batch(self, queries: List[str]) -> Dict[str, Optional[SearchResult]]:
        return {query: self.get(query) for query in queries}

    def set_batch(self, entries: List[Dict[str, Any]]) -> int:
        """Cache several {"query", "payload", "options"?, "volatile"?} entries"""
        stored = 0
        for entry in entries:
            if self.set(entry["query"], entry.get("payload"), entry.get("options"),
                        entry.get("volatile", False)):
                stored += 1
        return stored

    # Indexes

    def _index_result(self, result_key: str, query: SearchQuery) -> None:
        for channel in query.channels:
            self._channel_index.setdefault(channel.lower(), set()).add(result_key)
        for user in query.users:
            self._user_index.setdefault(user.lower(), set()).add(result_key)
        if query.date_range is not None:
            self._dated_results.add(result_key)

    def _unindex_result(self, result_key: str, result: SearchResult, reason: str) -> None:
        for index, names in ((self._channel_index, result.query.channels),
                             (self._user_index, result.query.users)):
            for name in names:
                keys = index.get(name.lower())
                if keys is None:
                    continue
                keys.discard(result_key)
                if not keys:
                    del index[name.lower()]
        self._dated_results.discard(result_key)

    def _drop_orphaned_result(self, query_key: str, result_key: str, reason: str) -> None:
        if reason in (EVICT, DELETE):
            self._results.delete(result_key)

    # Invalidation

    def invalidate_pattern(self, pattern: CacheInvalidationPattern) -> int:
        """
        Drop cached results matching a pattern

        Returns:
            Number of result entries removed (0 when pattern invalidation is off)
        """
        if not self.config.enable_pattern_invalidation:
            return 0

        if pattern.type == "channel":
            keys = self._match_index(self._channel_index, pattern.value, "#")
        elif pattern.type == "user":
            keys = self._match_index(self._user_index, pattern.value, "@")
        elif pattern.type == "date":
            keys = set(self._dated_results)
        elif pattern.type == "query_pattern":
            value = pattern.value
            if isinstance(value, str):
                glob = value.lower()
                keys = self._match_queries(lambda normalized: fnmatch.fnmatchcase(normalized, glob))
            else:
                keys = self._match_queries(lambda normalized: value.search(normalized) is not None)
        else:
            raise ValueError(f"Unknown invalidation pattern type: {pattern.type}")

        label = f"{pattern.type}={getattr(pattern.value, 'pattern', pattern.value)}"
        return self._drop_results(keys, label, pattern.reason)

    def invalidate_matching(self, predicate: Callable[[str], bool], reason: str = "") -> int:
        """Drop results whose normalized query satisfies `predicate`"""
        if not self.config.enable_pattern_invalidation:
            return 0
        return self._drop_results(self._match_queries(predicate), "query predicate", reason)

    def _drop_results(self, keys: Set[str], label: str, reason: str) -> int:
        removed = sum(1 for key in keys if self._results.delete(key))
        self._invalidations += removed
        if removed:
            logger.info("Invalidated %d search results (%s) %s", removed, label, reason)
        return removed

    def invalidate_channel(self, channel_id: str) -> int:
        return self.invalidate_pattern(CacheInvalidationPattern(
            type="channel", value=channel_id, reason=f"Channel {channel_id} invalidation"
        ))

    def invalidate_user(self, user_id: str) -> int:
        return self.invalidate_pattern(CacheInvalidationPattern(
            type="user", value=user_id, reason=f"User {user_id} invalidation"
        ))

    @staticmethod
    def _match_index(index: Dict[str, Set[str]], value: Union[str, Pattern[str]],
                     prefix: str) -> Set[str]:
        if isinstance(value, str):
            return set(index.get(value.lstrip(prefix).lower(), ()))
        keys: Set[str] = set()
        for name, result_keys in index.items():
            if value.search(name):
                keys |= result_keys
        return keys

    def _match_queries(self, predicate: Callable[[str], bool]) -> Set[str]:
        keys: Set[str] = set()
        for query_key in self._queries.keys():
            if predicate(query_key.rsplit("|", 1)[0]):
                result_key = self._queries.peek(query_key)
                if result_key is not None:
                    keys.add(result_key)
        return keys

    # Maintenance

    def purge_stale(self) -> int:
        return self._queries.purge_stale() + self._results.purge_stale()

    def clear(self) -> None:
        self._results.clear()
        self._queries.clear()
        self._channel_index.clear()
        self._user_index.clear()
        self._dated_results.clear()
        self._reset_counters()

    @property
    def memory_usage(self) -> int:
        return self._results.memory_usage

    def get_metrics(self) -> SearchCacheMetrics:
        return SearchCacheMetrics(
            query_hits=self._query_hits,
            query_misses=self._query_misses,
            result_hits=self._result_hits,
            result_misses=self._result_misses,
            invalidations=self._invalidations,
            adaptive_ttl_adjustments=self._adaptive_adjustments,
            memory_usage=self._results.memory_usage,
            avg_query_complexity=(
                round(self._complexity_sum / self._complexity_count, 2)
                if self._complexity_count else 0.0
            ),
            cached_queries=len(self._queries),
            cached_results=len(self._results),
        )
