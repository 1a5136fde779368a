"""
Row mapper: result rows -> typed records.

Mapping is declared per query with a RowSchema and is positional: column i of
the row fills field i of the schema, whatever name the database reported.
Joins that return two ``id`` columns therefore map without ambiguity.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable

from formstore.core.errors import MappingError
from formstore.engines.types import SqlType, matches


@dataclass(frozen=True)
class Column:
    """One declared field: record field name, expected type, whether NULL is allowed."""

    name: str
    type: SqlType = SqlType.ANY
    nullable: bool = False


@dataclass(frozen=True)
class RowSchema:
    """
    Ordered columns plus the record factory.

    The factory is called with one keyword argument per column (``dict`` by
    default); a dataclass, NamedTuple or pydantic model works as well.
    """

    columns: tuple[Column, ...]
    factory: Callable[..., Any] = field(default=dict)

    def __post_init__(self) -> None:
        cols = tuple(self.columns)
        if not cols:
            raise ValueError("row schema needs at least one column")
        names = [c.name for c in cols]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate field names in row schema: {', '.join(dupes)}")
        object.__setattr__(self, "columns", cols)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)


def schema(*columns: Column, factory: Callable[..., Any] = dict) -> RowSchema:
    return RowSchema(columns, factory)


def map_row(row: Sequence[Any], row_schema: RowSchema) -> Any:
    """Build one record from *row*. Raises MappingError on arity, type or NULL mismatch."""
    if len(row) != len(row_schema.columns):
        raise MappingError(
            f"row has {len(row)} column(s), schema declares {len(row_schema.columns)}"
        )
    values: dict[str, Any] = {}
    for position, (col, value) in enumerate(zip(row_schema.columns, row), start=1):
        if value is None:
            if not col.nullable:
                raise MappingError(f"column {position} ({col.name}): NULL in non-nullable column")
        elif col.type == SqlType.NULL or not matches(col.type, value):
            raise MappingError(
                f"column {position} ({col.name}): expected {col.type.value}, "
                f"got {type(value).__name__}"
            )
        values[col.name] = value
    try:
        return row_schema.factory(**values)
    except (TypeError, ValueError) as e:
        name = getattr(row_schema.factory, "__name__", repr(row_schema.factory))
        raise MappingError(f"record factory {name} rejected row: {e}") from e


def map_rows(rows: Iterable[Sequence[Any]], row_schema: RowSchema) -> list[Any]:
    return [map_row(row, row_schema) for row in rows]
