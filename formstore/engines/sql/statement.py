"""
Parameterized statements with positional, type-tagged parameters.

SQL is written with ``%s`` placeholders (``%%`` for a literal percent sign).
Text inside quoted literals and comments is taken as is, so
``LIKE '%smith'`` holds no placeholder. Placeholder/parameter agreement is
checked before the statement reaches a connection, so a mismatch never costs
a round trip.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from formstore.core.errors import ParameterMismatch
from formstore.engines.types import SqlType, infer, matches
from formstore.models import ProductTypeEnum


@dataclass(frozen=True)
class Param:
    """A parameter value with an explicit type tag. ``None`` binds SQL NULL for any tag."""

    type: SqlType
    value: Any = None

    def __post_init__(self) -> None:
        if self.value is None:
            return
        if self.type == SqlType.NULL or not matches(self.type, self.value):
            raise ParameterMismatch(
                f"value {self.value!r} ({type(self.value).__name__}) does not match tag {self.type.value}"
            )


def _to_param(position: int, value: Any) -> Param:
    if isinstance(value, Param):
        return value
    tag = infer(value)
    if tag is None:
        raise ParameterMismatch(
            f"parameter {position}: unsupported type {type(value).__name__}"
        )
    return Param(tag, value)


def _literal_end(sql: str, start: int) -> int:
    """End index (exclusive) of the quoted literal or comment opening at *start*, else -1."""
    ch = sql[start]
    if ch in ("'", '"'):
        # a doubled quote closes this literal and opens the next one
        close = sql.find(ch, start + 1)
        return len(sql) if close < 0 else close + 1
    if sql.startswith("--", start):
        close = sql.find("\n", start + 2)
        return len(sql) if close < 0 else close + 1
    if sql.startswith("/*", start):
        close = sql.find("*/", start + 2)
        return len(sql) if close < 0 else close + 2
    return -1


def _scan(sql: str) -> tuple[int, list[tuple[int, str]]]:
    """
    Count ``%s`` placeholders outside quoted literals and comments.

    Also returns (index, token) for each ``%s`` / ``%%`` in SQL text and each
    bare ``%`` inside a literal or comment, where it is plain text.
    """
    tokens: list[tuple[int, str]] = []
    count = 0
    i = 0
    length = len(sql)
    while i < length:
        end = _literal_end(sql, i)
        if end >= 0:
            tokens.extend((j, "%") for j in range(i, end) if sql[j] == "%")
            i = end
            continue
        if sql[i] == "%" and i + 1 < length:
            nxt = sql[i + 1]
            if nxt == "s":
                tokens.append((i, "%s"))
                count += 1
                i += 2
                continue
            if nxt == "%":
                tokens.append((i, "%%"))
                i += 2
                continue
        i += 1
    return count, tokens


def _adapt(product_type: ProductTypeEnum, value: Any) -> Any:
    """Driver-specific value adaptation (only sqlite3 and pymysql need any)."""
    if value is None:
        return None
    if product_type == ProductTypeEnum.SQLITE:
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, (Decimal, uuid.UUID)):
            return str(value)
        if isinstance(value, memoryview):
            return bytes(value)
    elif product_type == ProductTypeEnum.MYSQL:
        if isinstance(value, uuid.UUID):
            return str(value)
        if isinstance(value, memoryview):
            return bytes(value)
    return value


@dataclass(frozen=True)
class Statement:
    """
    SQL text plus ordered parameters.

    - params: plain values (tag inferred) or Param (explicit tag).
    - idempotent: safe to re-run after a transient failure; only such statements
      are retried by the executor.
    """

    sql: str
    params: tuple[Param, ...] = field(default=())
    idempotent: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.sql, str) or not self.sql.strip():
            raise ValueError("statement SQL must be a non-empty string")
        raw = self.params
        if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
            raise ParameterMismatch("params must be a sequence of values")
        object.__setattr__(
            self, "params", tuple(_to_param(i + 1, v) for i, v in enumerate(raw))
        )

    @property
    def placeholder_count(self) -> int:
        return _scan(self.sql)[0]

    def check(self) -> None:
        """Raise ParameterMismatch unless each placeholder has exactly one parameter."""
        expected = self.placeholder_count
        if expected != len(self.params):
            raise ParameterMismatch(
                f"statement declares {expected} placeholder(s) but {len(self.params)} "
                f"parameter(s) were supplied"
            )

    def bind(self, product_type: ProductTypeEnum, paramstyle: str) -> tuple[str, tuple[Any, ...]]:
        """
        Final (sql, values) for a driver. ``paramstyle`` is "format" (%s) or "qmark" (?).

        With parameters a "format" driver does its own % processing, so only a
        ``%`` inside a literal or comment is escaped. Otherwise placeholders
        become ``?`` and ``%%`` is unescaped here.
        """
        self.check()
        values = tuple(_adapt(product_type, p.value) for p in self.params)
        if values and paramstyle == "format":
            subs = {"%": "%%"}
        else:
            subs = {"%s": "?", "%%": "%"}
        out: list[str] = []
        pos = 0
        for index, token in _scan(self.sql)[1]:
            if token not in subs:
                continue
            out.append(self.sql[pos:index])
            out.append(subs[token])
            pos = index + len(token)
        out.append(self.sql[pos:])
        return "".join(out), values

    def __str__(self) -> str:
        return self.sql


def sql(text: str, *values: Any, idempotent: bool = False) -> Statement:
    """Shorthand: ``sql("SELECT * FROM t WHERE id = %s", 5)``."""
    return Statement(text, values, idempotent=idempotent)
