from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from domain.pairs import Pair

PRICE_PRECISION = 8
PERCENTAGE_PRECISION = 2

PRICE_QUANTUM = Decimal(1).scaleb(-PRICE_PRECISION)
PERCENTAGE_QUANTUM = Decimal(1).scaleb(-PERCENTAGE_PRECISION)

RESPONSE_TYPE_RECENT = "last-24h"
RESPONSE_TYPE_DAY = "day"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise a timestamp to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def quantize_price(value: Decimal) -> Decimal:
    return value.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def format_price(value: Decimal) -> str:
    return f"{quantize_price(value):.{PRICE_PRECISION}f}"


def format_percentage(value: Decimal) -> str:
    return f"{value.quantize(PERCENTAGE_QUANTUM, rounding=ROUND_HALF_UP):.{PERCENTAGE_PRECISION}f}"


class PricePoint(BaseModel):
    """One immutable price observation for a pair.

    ``recorded_at`` is the moment the quote is considered valid, ``created_at``
    the moment it was ingested. Both are kept in UTC.
    """

    model_config = ConfigDict(frozen=True)

    pair: Pair
    price: Decimal
    recorded_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, value: Any) -> Decimal:
        # Floats go through str() so that 0.1 stays 0.1.
        return quantize_price(Decimal(str(value)))

    @field_validator("recorded_at", "created_at")
    @classmethod
    def _normalise_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _validate_price(self) -> PricePoint:
        if self.price <= 0:
            raise ValueError("PricePoint.price must be > 0")
        return self


class AggregateStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_price: Decimal
    max_price: Decimal
    avg_price: Decimal
    total_records: int
    price_change: Decimal
    price_change_percent: Decimal

    def to_payload(self) -> dict[str, Any]:
        return {
            "min_price": format_price(self.min_price),
            "max_price": format_price(self.max_price),
            "avg_price": format_price(self.avg_price),
            "price_change": format_price(self.price_change),
            "price_change_percent": format_percentage(self.price_change_percent),
            "total_records": self.total_records,
        }


class PeriodStatistics(BaseModel):
    """Aggregates computed by the store without loading the points."""

    model_config = ConfigDict(frozen=True)

    pair: Pair
    min_price: Decimal
    max_price: Decimal
    avg_price: Decimal
    total_records: int
    period_start: datetime
    period_end: datetime


class RateItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: Decimal
    recorded_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "price": format_price(self.price),
            "recorded_at": self.recorded_at.isoformat(),
            "timestamp": int(self.recorded_at.timestamp()),
        }


class RateReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    pair: Pair
    requested_period: str
    statistics: AggregateStatistics
    rates: list[RateItem]
    generated_at: datetime

    @property
    def count(self) -> int:
        return len(self.rates)

    @classmethod
    def from_points(cls, points: Iterable[PricePoint], *, requested_period: str, generated_at: datetime) -> RateReport:
        ordered = sorted(points, key=lambda point: point.recorded_at)
        if not ordered:
            raise ValueError("Cannot build a report from an empty set of points")

        return cls(
            pair=ordered[0].pair,
            requested_period=requested_period,
            statistics=compute_statistics(ordered),
            rates=[RateItem(price=point.price, recorded_at=point.recorded_at) for point in ordered],
            generated_at=generated_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "pair": self.pair.value,
            "requested_period": self.requested_period,
            "statistics": self.statistics.to_payload(),
            "rates": [item.to_payload() for item in self.rates],
            "generated_at": self.generated_at.isoformat(),
            "count": self.count,
        }


class NoDataAvailable(Enum):
    """Marker returned by read operations when the requested range is empty."""

    NO_DATA = "no_data"


NO_DATA = NoDataAvailable.NO_DATA


def compute_statistics(points: Iterable[PricePoint]) -> AggregateStatistics:
    """Compute min/max/avg and first-to-last change over ``points``.

    First and last are taken by ``recorded_at``, not by the order of the input.
    """
    ordered = sorted(points, key=lambda point: point.recorded_at)
    if not ordered:
        raise ValueError("Cannot compute statistics for an empty set of points")

    prices = [point.price for point in ordered]
    first_price = prices[0]
    last_price = prices[-1]
    price_change = last_price - first_price
    if first_price == 0:
        price_change_percent = Decimal(0)
    else:
        price_change_percent = price_change / first_price * 100

    return AggregateStatistics(
        min_price=min(prices),
        max_price=max(prices),
        avg_price=quantize_price(sum(prices, Decimal(0)) / len(prices)),
        total_records=len(prices),
        price_change=price_change,
        price_change_percent=price_change_percent,
    )


def day_period(day_iso: str) -> str:
    return f"{RESPONSE_TYPE_DAY}:{day_iso}"


__all__ = [
    "AggregateStatistics",
    "NO_DATA",
    "NoDataAvailable",
    "PeriodStatistics",
    "PricePoint",
    "RateItem",
    "RateReport",
    "as_utc",
    "compute_statistics",
    "day_period",
    "format_percentage",
    "format_price",
    "utcnow",
]
