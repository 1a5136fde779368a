"""
Value type tags shared by statement parameters and row schemas.

Tags are checked against Python runtime types, never coerced: a bool is not
an INTEGER and a datetime is not a DATE.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class SqlType(str, Enum):
    """Type tag of a parameter or column."""

    NULL = "null"
    INTEGER = "integer"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    FLOAT = "float"
    DECIMAL = "decimal"
    DATE = "date"
    BYTES = "bytes"
    UUID = "uuid"
    ANY = "any"


def _is_integer(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _is_float(v: Any) -> bool:
    return isinstance(v, float) or _is_integer(v)


def _is_date(v: Any) -> bool:
    return isinstance(v, date) and not isinstance(v, datetime)


_CHECKS: dict[SqlType, Any] = {
    SqlType.NULL: lambda v: v is None,
    SqlType.INTEGER: _is_integer,
    SqlType.TEXT: lambda v: isinstance(v, str),
    SqlType.TIMESTAMP: lambda v: isinstance(v, datetime),
    SqlType.BOOLEAN: lambda v: isinstance(v, bool),
    SqlType.FLOAT: _is_float,
    SqlType.DECIMAL: lambda v: isinstance(v, Decimal) or _is_integer(v),
    SqlType.DATE: _is_date,
    SqlType.BYTES: lambda v: isinstance(v, (bytes, bytearray, memoryview)),
    SqlType.UUID: lambda v: isinstance(v, uuid.UUID),
    SqlType.ANY: lambda v: True,
}


def matches(sql_type: SqlType, value: Any) -> bool:
    """True if *value* (not None) has the runtime type *sql_type* expects."""
    return _CHECKS[sql_type](value)


def infer(value: Any) -> SqlType | None:
    """Tag for a plain Python value, or None if the type is not supported."""
    if value is None:
        return SqlType.NULL
    if isinstance(value, bool):
        return SqlType.BOOLEAN
    if isinstance(value, int):
        return SqlType.INTEGER
    if isinstance(value, str):
        return SqlType.TEXT
    if isinstance(value, datetime):
        return SqlType.TIMESTAMP
    if isinstance(value, date):
        return SqlType.DATE
    if isinstance(value, float):
        return SqlType.FLOAT
    if isinstance(value, Decimal):
        return SqlType.DECIMAL
    if isinstance(value, (bytes, bytearray, memoryview)):
        return SqlType.BYTES
    if isinstance(value, uuid.UUID):
        return SqlType.UUID
    return None
