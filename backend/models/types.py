"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, String, TypeDecorator


def to_decimal(value: Any) -> Decimal:
    """Coerce floats, ints and numeric strings to ``Decimal`` via ``str``."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc


class PreciseFloat(TypeDecorator):
    """Persist USD figures through Decimal-backed NUMERIC storage.

    Services keep working with Python ``float``; the DB boundary never sees
    binary float artifacts.
    """

    impl = Numeric(24, 12, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        return to_decimal(value)

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)


class DecimalString(TypeDecorator):
    """Token quantities stored as canonical decimal strings.

    Amounts cross chains with 18-decimal precision, so they are never
    round-tripped through float. ``"1.50"`` is stored as ``"1.5"``.
    """

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        amount = to_decimal(value)
        if not amount.is_finite():
            raise ValueError(f"Amount must be finite: {value!r}")
        text = format(amount.normalize(), "f")
        return "0" if text in {"-0", ""} else text

    def process_result_value(self, value: Any, dialect):
        return value
