# src/lockdrop/db/types.py
"""Custom column types."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Text
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator

# Largest value a signed 64-bit BIGINT column holds.
MAX_BIGINT = 2**63 - 1


class IntegerText(TypeDecorator[int]):
    """Arbitrary-precision integer stored as its decimal text.

    Used for accumulators that outgrow BIGINT. SQLite has no lossless wide
    numeric type, so values never pass through float on any backend.
    Not meant for SQL-side arithmetic or ordering.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"IntegerText expects an int, got {value!r}")
        return str(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> int | None:
        if value is None:
            return None
        return int(value)
