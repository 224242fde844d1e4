"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator, String

# Prices, shares and USD amounts are stored with 18 fractional digits.
DECIMAL_PLACES = 18
DECIMAL_SCALE = Decimal(1).scaleb(-DECIMAL_PLACES)
# Wide enough that quantizing any realistic USD amount to 18 places never overflows.
DECIMAL_CONTEXT = Context(prec=60, rounding=ROUND_HALF_EVEN)


def to_decimal(value: Any) -> Decimal:
    """Coerce ``value`` to Decimal via ``str`` so floats keep their printed form."""
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid numeric value: {value!r}")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Invalid numeric value: {value!r}")
    return result


class PreciseDecimal(TypeDecorator):
    """Fixed-point NUMERIC(36, 18) column that round-trips exact ``Decimal``.

    SQLite has no native decimal type and SQLAlchemy's Numeric on SQLite goes
    through float, so values are stored as canonical strings there and as
    NUMERIC everywhere else.
    """

    impl = Numeric(36, DECIMAL_PLACES, asdecimal=True)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, DECIMAL_PLACES, asdecimal=True))

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        quantized = to_decimal(value).quantize(DECIMAL_SCALE, context=DECIMAL_CONTEXT)
        if dialect.name == "sqlite":
            return format(quantized, "f")
        return quantized

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return to_decimal(value).quantize(DECIMAL_SCALE, context=DECIMAL_CONTEXT)
