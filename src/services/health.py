from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Protocol

from domain.pairs import ALL_PAIRS, Pair
from domain.rates import utcnow

from .rate_service import RateQueryService

logger = logging.getLogger(__name__)


class AvailabilityProbe(Protocol):
    def is_available(self) -> bool: ...


@dataclass(frozen=True)
class Healthy:
    checked_at: datetime
    latest_rates: dict[Pair, datetime]
    freshness: dict[Pair, bool]
    provider_available: bool | None = None
    status: Literal["healthy"] = field(default="healthy", init=False)


@dataclass(frozen=True)
class Degraded:
    """Store is readable but at least one pair has no fresh data."""

    checked_at: datetime
    latest_rates: dict[Pair, datetime]
    freshness: dict[Pair, bool]
    provider_available: bool | None = None
    status: Literal["degraded"] = field(default="degraded", init=False)

    @property
    def stale_pairs(self) -> list[Pair]:
        return [pair for pair, fresh in self.freshness.items() if not fresh]


@dataclass(frozen=True)
class Unhealthy:
    checked_at: datetime
    error: str
    status: Literal["unhealthy"] = field(default="unhealthy", init=False)


HealthStatus = Healthy | Degraded | Unhealthy

_HTTP_STATUS = {"healthy": 200, "degraded": 200, "unhealthy": 503}


def http_status(health: HealthStatus) -> int:
    return _HTTP_STATUS[health.status]


def to_payload(health: HealthStatus) -> dict[str, Any]:
    data: dict[str, Any] = {"status": health.status, "timestamp": health.checked_at.isoformat()}
    if isinstance(health, Unhealthy):
        data["database"] = "error"
        data["error"] = health.error
        return data

    data["database"] = "connected"
    data["latest_rates"] = {pair.value: ts.isoformat() for pair, ts in health.latest_rates.items()}
    data["data_freshness"] = {
        "all_fresh": all(health.freshness.values()),
        "pairs": {pair.value: fresh for pair, fresh in health.freshness.items()},
    }
    if health.provider_available is not None:
        data["provider_available"] = health.provider_available
    return data


class HealthChecker:
    def __init__(
        self,
        *,
        query_service: RateQueryService,
        provider: AvailabilityProbe | None = None,
        pairs: tuple[Pair, ...] = ALL_PAIRS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.query_service = query_service
        self.provider = provider
        self.pairs = pairs
        self._clock = clock

    def check(self) -> HealthStatus:
        checked_at = self._clock()
        try:
            latest_rates = self.query_service.get_latest_snapshot(self.pairs)
        except Exception as exc:
            logger.error("Health check failed: %s (%s)", exc, type(exc).__name__)
            return Unhealthy(checked_at=checked_at, error="Database connection failed")

        freshness = {pair: self.query_service.has_recent_data(pair) for pair in self.pairs}
        provider_available = self.provider.is_available() if self.provider is not None else None

        if all(freshness.values()):
            return Healthy(checked_at, latest_rates, freshness, provider_available)

        logger.warning("Stale rate data for %s", ", ".join(pair for pair, fresh in freshness.items() if not fresh))
        return Degraded(checked_at, latest_rates, freshness, provider_available)


__all__ = ["Degraded", "HealthChecker", "HealthStatus", "Healthy", "Unhealthy", "http_status", "to_payload"]
