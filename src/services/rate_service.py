from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, Iterable, Protocol
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from config import config
from domain.pairs import ALL_PAIRS, Pair
from domain.rates import (
    NO_DATA,
    RESPONSE_TYPE_RECENT,
    NoDataAvailable,
    PeriodStatistics,
    PricePoint,
    RateReport,
    as_utc,
    day_period,
    utcnow,
)

from .monitoring import PerformanceMonitor
from .rate_cache import CacheTier, RateCache

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)


class ServiceError(RuntimeError):
    """Unexpected failure while answering a read."""


class InvalidDateError(ValueError):
    def __init__(self, message: str, *, value: str | None = None) -> None:
        super().__init__(message)
        self.value = value


class FutureDateError(InvalidDateError):
    """A well-formed date that lies after today."""


class RateReader(Protocol):
    def find_range(self, pair: Pair, start: datetime, end: datetime) -> list[PricePoint]: ...

    def find_latest(self, pair: Pair) -> PricePoint | None: ...

    def compute_statistics(self, pair: Pair, start: datetime, end: datetime) -> PeriodStatistics | None: ...


def parse_day(value: str, *, today: date) -> date:
    """Parse an ISO calendar date, rejecting malformed input and future days."""
    try:
        day = date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise InvalidDateError(f"Invalid date format: {value!r}, expected YYYY-MM-DD", value=value) from exc

    if day > today:
        raise FutureDateError(f"Date {value} is in the future", value=value)
    return day


class RateQueryService:
    def __init__(
        self,
        *,
        repository: RateReader,
        cache: RateCache,
        clock: Callable[[], datetime] = utcnow,
        freshness_threshold: timedelta | None = None,
        tz: tzinfo | None = None,
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        settings = config()
        self.repository = repository
        self.cache = cache
        self.monitor = monitor or PerformanceMonitor()
        self._clock = clock
        self.freshness_threshold = freshness_threshold or timedelta(seconds=settings.freshness_threshold_seconds)
        self.tz = tz or ZoneInfo(settings.reference_timezone)

    def today(self) -> date:
        return self._clock().astimezone(self.tz).date()

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day, time.max, tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def get_recent_window(self, pair: Pair, window: timedelta = RECENT_WINDOW) -> RateReport | NoDataAvailable:
        pair = Pair.parse(pair)
        if window != RECENT_WINDOW:
            # Only the default window is shared through the cache.
            return self._guarded("get_recent_window", pair, "recent window", lambda: self._build_recent(pair, window))

        key = self.cache.recent_key(pair)
        return self._guarded(
            "get_recent_window",
            pair,
            "recent window",
            lambda: self._cached_report(key, CacheTier.RECENT, lambda: self._build_recent(pair, window)),
        )

    def get_for_period(self, pair: Pair, day: date | str) -> RateReport | NoDataAvailable:
        pair = Pair.parse(pair)
        today = self.today()
        if isinstance(day, str):
            day = parse_day(day, today=today)
        elif day > today:
            raise FutureDateError(f"Date {day.isoformat()} is in the future", value=day.isoformat())

        key = self.cache.day_key(pair, day)
        tier = self.cache.tier_for_day(day)
        return self._guarded(
            "get_for_period",
            pair,
            f"rates for {day.isoformat()}",
            lambda: self._cached_report(key, tier, lambda: self._build_day(pair, day)),
        )

    def get_latest_snapshot(self, pairs: Iterable[Pair] | None = None) -> dict[Pair, datetime]:
        """Latest ``recorded_at`` per pair; pairs without data are left out."""
        selected = sorted({Pair.parse(pair) for pair in pairs}) if pairs is not None else list(ALL_PAIRS)
        key = self.cache.snapshot_key(selected)

        with self.monitor.measure("get_latest_snapshot"):
            cached, found = self.cache.get(key)
            if found:
                try:
                    return {Pair(pair): datetime.fromisoformat(value) for pair, value in cached.items()}
                except (AttributeError, TypeError, ValueError) as exc:
                    logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)

            try:
                snapshot: dict[Pair, datetime] = {}
                for pair in selected:
                    latest = self.repository.find_latest(pair)
                    if latest is not None:
                        snapshot[pair] = latest.recorded_at
            except Exception as exc:
                logger.error("Error fetching latest rates snapshot: %s (%s)", exc, type(exc).__name__)
                raise ServiceError("Failed to fetch latest rates snapshot") from exc

            payload = {pair.value: value.isoformat() for pair, value in snapshot.items()}
            self.cache.set(key, payload, CacheTier.SNAPSHOT)
            return snapshot

    def get_statistics(self, pair: Pair, start: datetime, end: datetime) -> PeriodStatistics | None:
        """Min/max/avg over ``[start, end]``, cached briefly under the statistics tier."""
        pair = Pair.parse(pair)
        key = self.cache.statistics_key(pair, as_utc(start), as_utc(end))
        logger.info("Fetching statistics for %s between %s and %s", pair, start.isoformat(), end.isoformat())

        with self.monitor.measure("get_statistics"):
            cached, found = self.cache.get(key)
            if found:
                if cached is None:
                    return None
                try:
                    return PeriodStatistics.model_validate(cached)
                except ValidationError as exc:
                    logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)

            try:
                statistics = self.repository.compute_statistics(pair, start, end)
            except Exception as exc:
                logger.error("Error fetching statistics for %s: %s", pair, exc)
                raise ServiceError(f"Failed to fetch statistics for {pair}") from exc

            payload = None if statistics is None else statistics.model_dump(mode="json")
            self.cache.set(key, payload, CacheTier.STATISTICS)
            return statistics

    def performance_stats(self) -> dict[str, Any]:
        return {"operations": self.monitor.stats(), "cache": self.cache.stats()}

    def has_recent_data(self, pair: Pair) -> bool:
        try:
            latest = self.repository.find_latest(Pair.parse(pair))
        except Exception as exc:
            logger.error("Error checking recent data for %s: %s", pair, exc)
            return False

        if latest is None:
            return False
        return latest.recorded_at >= self._clock() - self.freshness_threshold

    def _build_recent(self, pair: Pair, window: timedelta) -> RateReport | None:
        now = as_utc(self._clock())
        points = self.repository.find_range(pair, now - window, now)
        if not points:
            return None
        return RateReport.from_points(points, requested_period=RESPONSE_TYPE_RECENT, generated_at=now)

    def _build_day(self, pair: Pair, day: date) -> RateReport | None:
        start, end = self.day_bounds(day)
        points = self.repository.find_range(pair, start, end)
        if not points:
            return None
        return RateReport.from_points(points, requested_period=day_period(day.isoformat()), generated_at=self._clock())

    def _cached_report(
        self, key: str, tier: CacheTier, build: Callable[[], RateReport | None]
    ) -> RateReport | NoDataAvailable:
        cached, found = self.cache.get(key)
        if found:
            if cached is None:
                return NO_DATA
            try:
                return RateReport.model_validate(cached)
            except ValidationError as exc:
                logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)

        report = build()
        self.cache.set(key, None if report is None else report.model_dump(mode="json"), tier)
        return NO_DATA if report is None else report

    def _guarded(
        self, operation: str, pair: Pair, what: str, read: Callable[[], RateReport | NoDataAvailable]
    ) -> RateReport | NoDataAvailable:
        logger.info("Fetching %s for %s", what, pair)
        try:
            with self.monitor.measure(operation):
                result = read()
        except Exception as exc:
            logger.error("Error fetching %s for %s: %s (%s)", what, pair, exc, type(exc).__name__)
            raise ServiceError(f"Failed to fetch {what} for {pair}") from exc

        if result is NO_DATA:
            logger.warning("No rates found: %s for %s", what, pair)
        else:
            logger.info("Fetched %s for %s: %d rates", what, pair, result.count)
        return result


__all__ = ["FutureDateError", "InvalidDateError", "RateQueryService", "ServiceError", "parse_day"]
