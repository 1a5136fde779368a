"""
Engines: statements and executor, row mapper, session / unit of work.
"""

from formstore.engines.mapper import Column, RowSchema, map_row, map_rows, schema
from formstore.engines.session import Session, SessionState, run_in_transaction
from formstore.engines.sql import (
    Param,
    QueryExecutor,
    ResultRow,
    ResultSet,
    SqlType,
    Statement,
    sql,
)

__all__ = [
    "Column",
    "RowSchema",
    "map_row",
    "map_rows",
    "schema",
    "Session",
    "SessionState",
    "run_in_transaction",
    "Param",
    "QueryExecutor",
    "ResultRow",
    "ResultSet",
    "SqlType",
    "Statement",
    "sql",
]
