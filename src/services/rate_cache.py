from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from enum import StrEnum
from itertools import combinations
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol
from zoneinfo import ZoneInfo

import redis

from config import config
from domain.pairs import ALL_PAIRS, Pair
from domain.rates import utcnow

from .monitoring import PerformanceMonitor

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"
PAIR_LIST_SEPARATOR = ","

_ESCAPES = (("%", "%25"), (KEY_SEPARATOR, "%3A"), (PAIR_LIST_SEPARATOR, "%2C"), ("/", "%2F"))


class CacheTier(StrEnum):
    RECENT = "recent"
    HISTORICAL = "historical"
    SNAPSHOT = "snapshot"
    STATISTICS = "statistics"


class KeyCategory(StrEnum):
    RECENT = "rates_recent"
    DAY = "rates_day"
    SNAPSHOT = "latest_rates"
    STATISTICS = "rate_stats"


def default_ttls() -> Mapping[CacheTier, int]:
    settings = config()
    return MappingProxyType(
        {
            CacheTier.RECENT: settings.cache_ttl_recent,
            CacheTier.HISTORICAL: settings.cache_ttl_historical,
            CacheTier.SNAPSHOT: settings.cache_ttl_snapshot,
            CacheTier.STATISTICS: settings.cache_ttl_stats,
        }
    )


class CacheBackend(Protocol):
    def get(self, key: str) -> tuple[Any, bool]: ...

    def set(self, key: str, value: Any, ttl: int) -> None: ...

    def delete(self, *keys: str) -> None: ...


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend; entries expire ``ttl`` seconds after being set."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None, False
            return value, True

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key)[1]


class RedisCacheBackend(CacheBackend):
    """Stores JSON-encoded values in Redis with a native expiry."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheBackend:
        return cls(redis.Redis.from_url(url))

    def get(self, key: str) -> tuple[Any, bool]:
        raw = self._client.get(key)
        if raw is None:
            return None, False
        return json.loads(raw), True

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._client.set(key, json.dumps(value), ex=ttl)

    def delete(self, *keys: str) -> None:
        if keys:
            self._client.delete(*keys)


@dataclass
class CacheCounters:
    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_ratio(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def escape_key_part(part: str) -> str:
    for raw, escaped in _ESCAPES:
        part = part.replace(raw, escaped)
    return part


def build_key(category: KeyCategory, *parts: str) -> str:
    return KEY_SEPARATOR.join([category.value, *(escape_key_part(part) for part in parts)])


class RateCache:
    """Advisory cache for rate reads.

    Callers do the cache-aside branch themselves: ``get`` then, on a miss,
    compute and ``set``. There is no single-flight: concurrent misses on the
    same key each compute and each write. Backend failures are logged and
    behave like a miss, so reads never depend on the cache being up.

    Lookups are counted as hits or misses and timed under ``cache.get``;
    ``stats()`` reports both together with the configured TTLs.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        ttls: Mapping[CacheTier, int] | None = None,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo | None = None,
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        self.backend = backend
        self.monitor = monitor or PerformanceMonitor()
        self.counters = CacheCounters()
        self._counters_lock = Lock()
        self.ttls = ttls if ttls is not None else default_ttls()
        self._clock = clock
        self.tz = tz or ZoneInfo(config().reference_timezone)

        missing = set(CacheTier) - set(self.ttls)
        if missing:
            msg = f"Missing TTL for cache tiers: {', '.join(sorted(missing))}"
            raise ValueError(msg)

    def get(self, key: str) -> tuple[Any, bool]:
        with self.monitor.measure("cache.get"):
            try:
                value, found = self.backend.get(key)
            except Exception as exc:
                logger.error("Cache read failed for %s, treating as miss: %s", key, exc)
                self._count(found=False, error=True)
                return None, False

        self._count(found=found)
        logger.debug("Cache %s for %s", "hit" if found else "miss", key)
        return value, found

    def _count(self, *, found: bool, error: bool = False) -> None:
        with self._counters_lock:
            if found:
                self.counters.hits += 1
            else:
                self.counters.misses += 1
            if error:
                self.counters.errors += 1

    def stats(self) -> dict[str, Any]:
        with self._counters_lock:
            counters = CacheCounters(self.counters.hits, self.counters.misses, self.counters.errors)
        return {
            "backend": type(self.backend).__name__,
            "hits": counters.hits,
            "misses": counters.misses,
            "errors": counters.errors,
            "hit_ratio": round(counters.hit_ratio, 4),
            "ttls": {tier.value: self.ttl_for(tier) for tier in CacheTier},
            "operations": self.monitor.stats(),
        }

    def reset_stats(self) -> None:
        with self._counters_lock:
            self.counters = CacheCounters()
        self.monitor.reset()

    def set(self, key: str, value: Any, tier: CacheTier) -> None:
        ttl = self.ttl_for(tier)
        try:
            self.backend.set(key, value, ttl)
        except Exception as exc:
            logger.error("Cache write failed for %s: %s", key, exc)

    def ttl_for(self, tier: CacheTier) -> int:
        return self.ttls[tier]

    def today(self) -> date:
        return self._clock().astimezone(self.tz).date()

    def tier_for_day(self, day: date) -> CacheTier:
        """Past days are closed and cached long; today (or later) is still changing."""
        return CacheTier.HISTORICAL if day < self.today() else CacheTier.RECENT

    @staticmethod
    def recent_key(pair: Pair) -> str:
        return build_key(KeyCategory.RECENT, Pair(pair).value)

    @staticmethod
    def day_key(pair: Pair, day: date) -> str:
        return build_key(KeyCategory.DAY, Pair(pair).value, day.isoformat())

    @staticmethod
    def snapshot_key(pairs: Iterable[Pair] | None = None) -> str:
        selected = sorted({Pair(pair) for pair in pairs}) if pairs is not None else sorted(ALL_PAIRS)
        joined = PAIR_LIST_SEPARATOR.join(escape_key_part(pair.value) for pair in selected)
        return KEY_SEPARATOR.join([KeyCategory.SNAPSHOT.value, joined])

    @staticmethod
    def statistics_key(pair: Pair, start: datetime, end: datetime) -> str:
        return build_key(KeyCategory.STATISTICS, Pair(pair).value, start.isoformat(), end.isoformat())

    def keys_for_pair(self, pair: Pair) -> list[str]:
        """Keys that can hold data for ``pair`` that is still changing."""
        pair = Pair(pair)
        keys = [self.recent_key(pair), self.day_key(pair, self.today())]
        for size in range(1, len(ALL_PAIRS) + 1):
            for subset in combinations(ALL_PAIRS, size):
                if pair in subset:
                    keys.append(self.snapshot_key(subset))
        return keys

    def invalidate(self, pair: Pair) -> list[str]:
        """Drop the recent window, today's day and every snapshot that includes ``pair``.

        Past days are immutable and left alone. Statistics entries cover
        arbitrary ranges and are only bounded by their short TTL.
        """
        keys = self.keys_for_pair(pair)
        try:
            self.backend.delete(*keys)
        except Exception as exc:
            logger.warning("Cache invalidation failed for %s: %s", pair, exc)
            return []

        logger.info("Cache invalidated for %s (%d keys)", pair, len(keys))
        return keys


def build_backend(redis_url: str | None = None) -> CacheBackend:
    url = redis_url if redis_url is not None else config().redis_url
    if url:
        return RedisCacheBackend.from_url(url)
    return InMemoryCacheBackend()


__all__ = [
    "CacheBackend",
    "CacheCounters",
    "CacheTier",
    "InMemoryCacheBackend",
    "KeyCategory",
    "RateCache",
    "RedisCacheBackend",
    "build_backend",
    "build_key",
    "default_ttls",
    "escape_key_part",
]
