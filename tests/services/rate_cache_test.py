from __future__ import annotations

import json
from datetime import date, datetime, timezone
from unittest.mock import Mock

import pytest

from domain.pairs import Pair
from services.monitoring import PerformanceMonitor
from services.rate_cache import (
    CacheTier,
    InMemoryCacheBackend,
    RateCache,
    RedisCacheBackend,
    KeyCategory,
    build_key,
    escape_key_part,
)
from tests.constants import TEST_TTLS
from tests.helpers.cache_backends import FailingCacheBackend
from tests.helpers.clock import FrozenClock, MonotonicClock, SteppingTimer


def test_in_memory_backend_expires_after_ttl(cache_backend: InMemoryCacheBackend, cache_clock: MonotonicClock) -> None:
    cache_backend.set("k", {"v": 1}, ttl=60)

    assert cache_backend.get("k") == ({"v": 1}, True)
    cache_clock.advance(59)
    assert "k" in cache_backend
    cache_clock.advance(1)
    assert cache_backend.get("k") == (None, False)


def test_in_memory_backend_distinguishes_cached_none(cache_backend: InMemoryCacheBackend) -> None:
    cache_backend.set("empty", None, ttl=60)

    assert cache_backend.get("empty") == (None, True)
    assert cache_backend.get("missing") == (None, False)


def test_redis_backend_round_trips_json() -> None:
    client = Mock()
    client.get.return_value = None
    backend = RedisCacheBackend(client)

    assert backend.get("k") == (None, False)

    backend.set("k", {"a": "1.00000000"}, ttl=300)
    client.set.assert_called_once_with("k", json.dumps({"a": "1.00000000"}), ex=300)

    client.get.return_value = b'{"a": "1.00000000"}'
    assert backend.get("k") == ({"a": "1.00000000"}, True)

    backend.delete("k", "j")
    client.delete.assert_called_once_with("k", "j")


def test_keys_never_collide_across_pairs_and_dates() -> None:
    keys = {
        RateCache.recent_key(Pair.EUR_BTC),
        RateCache.recent_key(Pair.EUR_ETH),
        RateCache.day_key(Pair.EUR_BTC, date(2025, 3, 14)),
        RateCache.day_key(Pair.EUR_BTC, date(2025, 3, 13)),
        RateCache.day_key(Pair.EUR_ETH, date(2025, 3, 14)),
        RateCache.snapshot_key(),
        RateCache.snapshot_key([Pair.EUR_BTC]),
    }
    assert len(keys) == 7
    assert RateCache.day_key(Pair.EUR_BTC, date(2025, 3, 14)) == "rates_day:EUR%2FBTC:2025-03-14"


def test_key_parts_escape_separators() -> None:
    assert escape_key_part("a:b") == "a%3Ab"
    assert escape_key_part("a%3Ab") == "a%253Ab"
    assert build_key(KeyCategory.DAY, "a:b", "c") != build_key(KeyCategory.DAY, "a", "b:c")


def test_snapshot_key_ignores_pair_order() -> None:
    assert RateCache.snapshot_key([Pair.EUR_LTC, Pair.EUR_BTC]) == RateCache.snapshot_key(
        [Pair.EUR_BTC, Pair.EUR_LTC]
    )


def test_tier_for_day(rate_cache: RateCache) -> None:
    assert rate_cache.tier_for_day(date(2025, 3, 13)) is CacheTier.HISTORICAL
    assert rate_cache.tier_for_day(date(2025, 3, 14)) is CacheTier.RECENT
    assert rate_cache.ttl_for(CacheTier.SNAPSHOT) == 60


def test_set_uses_tier_ttl(rate_cache: RateCache, cache_clock: MonotonicClock) -> None:
    rate_cache.set("recent", 1, CacheTier.RECENT)
    rate_cache.set("historical", 2, CacheTier.HISTORICAL)

    cache_clock.advance(301)

    assert rate_cache.get("recent") == (None, False)
    assert rate_cache.get("historical") == (2, True)


def test_invalidate_removes_recent_today_and_snapshots(
    rate_cache: RateCache, cache_backend: InMemoryCacheBackend
) -> None:
    today = date(2025, 3, 14)
    yesterday = date(2025, 3, 13)
    keys = {
        "recent_btc": RateCache.recent_key(Pair.EUR_BTC),
        "today_btc": RateCache.day_key(Pair.EUR_BTC, today),
        "yesterday_btc": RateCache.day_key(Pair.EUR_BTC, yesterday),
        "recent_eth": RateCache.recent_key(Pair.EUR_ETH),
        "snapshot_all": RateCache.snapshot_key(),
        "snapshot_btc_ltc": RateCache.snapshot_key([Pair.EUR_BTC, Pair.EUR_LTC]),
        "snapshot_eth": RateCache.snapshot_key([Pair.EUR_ETH]),
    }
    for key in keys.values():
        cache_backend.set(key, "cached", ttl=300)

    rate_cache.invalidate(Pair.EUR_BTC)

    remaining = {name for name, key in keys.items() if key in cache_backend}
    assert remaining == {"yesterday_btc", "recent_eth", "snapshot_eth"}


def test_today_follows_reference_timezone(cache_backend: InMemoryCacheBackend) -> None:
    from zoneinfo import ZoneInfo

    clock = FrozenClock(datetime(2025, 3, 14, 23, 30, tzinfo=timezone.utc))
    cache = RateCache(cache_backend, ttls=TEST_TTLS, clock=clock, tz=ZoneInfo("Europe/Warsaw"))

    assert cache.today() == date(2025, 3, 15)
    assert cache.tier_for_day(date(2025, 3, 14)) is CacheTier.HISTORICAL


def test_backend_failures_behave_like_a_miss() -> None:
    backend = FailingCacheBackend()
    cache = RateCache(backend, ttls=TEST_TTLS, clock=FrozenClock())

    assert cache.get("k") == (None, False)
    cache.set("k", 1, CacheTier.RECENT)
    assert cache.invalidate(Pair.EUR_BTC) == []
    assert backend.calls == 3


def test_missing_tier_ttl_is_rejected(cache_backend: InMemoryCacheBackend) -> None:
    with pytest.raises(ValueError):
        RateCache(cache_backend, ttls={CacheTier.RECENT: 1}, clock=FrozenClock())


def test_statistics_key_covers_pair_and_range() -> None:
    start = datetime(2025, 3, 13, tzinfo=timezone.utc)
    end = datetime(2025, 3, 14, tzinfo=timezone.utc)

    key = RateCache.statistics_key(Pair.EUR_BTC, start, end)

    assert key.startswith("rate_stats:EUR%2FBTC:")
    assert key != RateCache.statistics_key(Pair.EUR_BTC, start, end.replace(hour=1))
    assert key != RateCache.statistics_key(Pair.EUR_ETH, start, end)


def test_statistics_tier_has_its_own_ttl(rate_cache: RateCache, cache_clock: MonotonicClock) -> None:
    rate_cache.set("stats", {"count": 1}, CacheTier.STATISTICS)

    assert rate_cache.ttl_for(CacheTier.STATISTICS) == 30
    cache_clock.advance(30)
    assert rate_cache.get("stats") == (None, False)


def test_stats_count_hits_and_misses(cache_backend: InMemoryCacheBackend) -> None:
    monitor = PerformanceMonitor(timer=SteppingTimer(step=0.001))
    cache = RateCache(cache_backend, ttls=TEST_TTLS, clock=FrozenClock(), monitor=monitor)
    cache.set("k", None, CacheTier.RECENT)

    cache.get("k")
    cache.get("k")
    cache.get("missing")

    stats = cache.stats()
    assert (stats["hits"], stats["misses"], stats["errors"]) == (2, 1, 0)
    assert stats["hit_ratio"] == 0.6667
    assert stats["backend"] == "InMemoryCacheBackend"
    assert stats["ttls"] == {"recent": 300, "historical": 3600, "snapshot": 60, "statistics": 30}
    assert stats["operations"]["cache.get"]["count"] == 3
    assert stats["operations"]["cache.get"]["avg_duration_ms"] == 1.0


def test_backend_failures_are_counted_as_errors() -> None:
    cache = RateCache(FailingCacheBackend(), ttls=TEST_TTLS, clock=FrozenClock())

    cache.get("k")

    stats = cache.stats()
    assert (stats["hits"], stats["misses"], stats["errors"]) == (0, 1, 1)
    assert stats["operations"]["cache.get"]["count"] == 1


def test_reset_stats(rate_cache: RateCache) -> None:
    rate_cache.get("k")

    rate_cache.reset_stats()

    stats = rate_cache.stats()
    assert (stats["hits"], stats["misses"], stats["hit_ratio"]) == (0, 0, 0.0)
    assert stats["operations"] == {}
