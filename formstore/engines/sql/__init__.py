"""
Statements and their execution.

Exports: Statement, Param, SqlType, sql, QueryExecutor, ResultSet, ResultRow.
"""

from formstore.engines.sql.executor import QueryExecutor, ResultRow, ResultSet
from formstore.engines.sql.statement import Param, Statement, sql
from formstore.engines.types import SqlType

__all__ = [
    "Statement",
    "Param",
    "SqlType",
    "sql",
    "QueryExecutor",
    "ResultSet",
    "ResultRow",
]
