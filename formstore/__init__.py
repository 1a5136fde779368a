"""
formstore: pooled connections, sessions and row mapping for relational-store
backed desktop forms.
"""

from formstore.core.config import DatabaseSettings, load_settings
from formstore.core.errors import (
    ConfigInvalid,
    FormstoreError,
    MappingError,
    ParameterMismatch,
    PoolClosed,
    PoolError,
    PoolExhausted,
    QueryError,
    QueryErrorKind,
    ResultConsumed,
    SessionStateError,
)
from formstore.core.pool import ConnectionHandle, ConnectionPool, PoolConfig
from formstore.core.retry import RetryPolicy
from formstore.database import Database
from formstore.engines import (
    Column,
    Param,
    QueryExecutor,
    ResultRow,
    ResultSet,
    RowSchema,
    Session,
    SessionState,
    SqlType,
    Statement,
    map_row,
    map_rows,
    run_in_transaction,
    schema,
    sql,
)
from formstore.models import ConnectionParams, ProductTypeEnum
from formstore.repository import Page, Pageable, Repository

__all__ = [
    "Database",
    "DatabaseSettings",
    "load_settings",
    "ConnectionParams",
    "ProductTypeEnum",
    "ConnectionPool",
    "ConnectionHandle",
    "PoolConfig",
    "RetryPolicy",
    "QueryExecutor",
    "ResultSet",
    "ResultRow",
    "Statement",
    "Param",
    "SqlType",
    "sql",
    "Column",
    "RowSchema",
    "schema",
    "map_row",
    "map_rows",
    "Session",
    "SessionState",
    "run_in_transaction",
    "Repository",
    "Page",
    "Pageable",
    "FormstoreError",
    "ConfigInvalid",
    "PoolError",
    "PoolExhausted",
    "PoolClosed",
    "QueryError",
    "QueryErrorKind",
    "MappingError",
    "ParameterMismatch",
    "SessionStateError",
    "ResultConsumed",
]
