from decimal import ROUND_HALF_UP, Decimal


def decimal_to_int(d: Decimal, precision: int = 8) -> int:
    return int(d.scaleb(precision).to_integral_value(rounding=ROUND_HALF_UP))


def int_to_decimal(value: int, precision: int = 8) -> Decimal:
    return Decimal(value).scaleb(-precision)
