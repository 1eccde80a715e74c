"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import BigInteger, Numeric, TypeDecorator


class BigAmount(TypeDecorator):
    """Persist exact integer amounts (lamports, wei, token base units).

    Values travel as Python ``int`` on both sides. Backends with native
    decimals store scale-0 NUMERIC; SQLite (whose NUMERIC goes through
    float) stores a 64-bit INTEGER instead, so the value is never rounded.
    """

    impl = Numeric(40, 0, asdecimal=True)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(40, 0, asdecimal=True))

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValueError(f"Invalid amount for BigAmount: {value!r}")
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"Fractional amount for BigAmount: {value!r}")
            value = int(value)
        try:
            amount = Decimal(value) if isinstance(value, (int, Decimal)) else Decimal(str(value).strip())
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid amount for BigAmount: {value!r}") from exc
        if amount != amount.to_integral_value():
            raise ValueError(f"Fractional amount for BigAmount: {value!r}")
        if dialect.name == "sqlite":
            return int(amount)
        return amount

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return int(value)
