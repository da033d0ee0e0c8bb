from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import Insert, delete, func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import models
from domain.pairs import Pair
from domain.rates import PeriodStatistics, PricePoint, as_utc, quantize_price

logger = logging.getLogger(__name__)

_CONFLICT_COLUMNS = ["pair", "recorded_at"]


class RateRepository:
    """Append-only store of price points, unique on (pair, recorded_at)."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def save(self, point: PricePoint) -> bool:
        """Insert ``point`` unless one already exists for its (pair, recorded_at).

        The duplicate check is done by the database's unique constraint, so
        concurrent callers cannot both insert. Returns True when a row was written.
        """
        values = {
            "pair": point.pair.value,
            "price": point.price,
            "recorded_at": point.recorded_at,
            "created_at": point.created_at,
        }
        stmt = self._insert_ignoring_conflicts(values)
        if stmt is None:
            return self._insert_catching_integrity_error(values)

        try:
            result = self._session.execute(stmt)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        inserted = result.rowcount == 1
        if not inserted:
            logger.info("Rate for %s at %s already stored, skipping", point.pair, point.recorded_at.isoformat())
        return inserted

    def exists_for_pair_and_time(self, pair: Pair, recorded_at: datetime) -> bool:
        stmt = (
            select(func.count(models.RateOrm.id))
            .where(models.RateOrm.pair == Pair(pair).value)
            .where(models.RateOrm.recorded_at == as_utc(recorded_at))
        )
        return (self._session.scalar(stmt) or 0) > 0

    def find_range(self, pair: Pair, start: datetime, end: datetime) -> list[PricePoint]:
        """Points for ``pair`` with ``start <= recorded_at <= end``, oldest first."""
        stmt = (
            select(models.RateOrm)
            .where(models.RateOrm.pair == Pair(pair).value)
            .where(models.RateOrm.recorded_at >= as_utc(start))
            .where(models.RateOrm.recorded_at <= as_utc(end))
            .order_by(models.RateOrm.recorded_at.asc())
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def find_latest(self, pair: Pair) -> PricePoint | None:
        stmt = (
            select(models.RateOrm)
            .where(models.RateOrm.pair == Pair(pair).value)
            .order_by(models.RateOrm.recorded_at.desc())
            .limit(1)
        )
        row = self._session.scalars(stmt).first()
        if row is None:
            return None
        return self._to_domain(row)

    def compute_statistics(self, pair: Pair, start: datetime, end: datetime) -> PeriodStatistics | None:
        stmt = (
            select(
                func.min(models.RateOrm.price),
                func.max(models.RateOrm.price),
                func.sum(models.RateOrm.price),
                func.count(models.RateOrm.id),
            )
            .where(models.RateOrm.pair == Pair(pair).value)
            .where(models.RateOrm.recorded_at >= as_utc(start))
            .where(models.RateOrm.recorded_at <= as_utc(end))
        )
        min_price, max_price, total, count = self._session.execute(stmt).one()
        if not count:
            return None

        return PeriodStatistics(
            pair=Pair(pair),
            min_price=Decimal(min_price),
            max_price=Decimal(max_price),
            avg_price=quantize_price(Decimal(total) / count),
            total_records=count,
            period_start=as_utc(start),
            period_end=as_utc(end),
        )

    def delete_older_than(self, cutoff: datetime) -> int:
        stmt = delete(models.RateOrm).where(models.RateOrm.recorded_at < as_utc(cutoff))
        try:
            result = self._session.execute(stmt)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info("Deleted %d rates recorded before %s", result.rowcount, as_utc(cutoff).isoformat())
        return result.rowcount

    def _insert_ignoring_conflicts(self, values: dict[str, Any]) -> Insert | None:
        dialect = self._session.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite_insert(models.RateOrm).values(**values).on_conflict_do_nothing(index_elements=_CONFLICT_COLUMNS)
        if dialect == "postgresql":
            return (
                postgresql_insert(models.RateOrm)
                .values(**values)
                .on_conflict_do_nothing(index_elements=_CONFLICT_COLUMNS)
            )
        return None

    def _insert_catching_integrity_error(self, values: dict[str, Any]) -> bool:
        try:
            with self._session.begin_nested():
                self._session.add(models.RateOrm(**values))
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            logger.info("Rate for %s at %s already stored, skipping", values["pair"], values["recorded_at"])
            return False
        return True

    @staticmethod
    def _to_domain(row: models.RateOrm) -> PricePoint:
        recorded_at = row.recorded_at
        if recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=timezone.utc)
        created_at = row.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        return PricePoint(
            pair=Pair(row.pair),
            price=row.price,
            recorded_at=recorded_at,
            created_at=created_at,
        )


__all__ = ["RateRepository"]
