from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from utils import decimal_to_int, int_to_decimal

PRICE_SCALE = 8


class ScaledDecimal(TypeDecorator):
    """Stores a Decimal as an integer count of 10**-scale units.

    MIN, MAX and SUM over the column stay exact.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, scale: int = PRICE_SCALE) -> None:
        super().__init__()
        self.scale = scale

    def process_bind_param(self, value: Decimal | None, dialect: object) -> int | None:
        if value is None:
            return None
        return decimal_to_int(Decimal(value), precision=self.scale)

    def process_result_value(self, value: int | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return int_to_decimal(int(value), precision=self.scale)


class Base(DeclarativeBase):
    pass


class RateOrm(Base):
    __tablename__ = "rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pair: Mapped[str] = mapped_column(String(10), nullable=False)
    price: Mapped[Decimal] = mapped_column(ScaledDecimal(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("pair", "recorded_at", name="uq_rates_pair_recorded_at"),
        Index("idx_pair_recorded_at", "pair", "recorded_at"),
        Index("idx_recorded_at", "recorded_at"),
    )
