"""
DB connection helpers: open a physical connection, run one statement with a
per-statement timeout, and classify driver errors.

Uses psycopg (PostgreSQL), pymysql (MySQL) or sqlite3 (local stores) based on product_type.
"""

import logging
import sqlite3
import time
from typing import Any

import psycopg
import pymysql

from formstore.core.errors import QueryError, QueryErrorKind
from formstore.models import ConnectionParams, ProductTypeEnum

_log = logging.getLogger(__name__)

# DB-API paramstyle per driver; statements are written with %s placeholders.
PARAMSTYLES: dict[ProductTypeEnum, str] = {
    ProductTypeEnum.POSTGRES: "format",
    ProductTypeEnum.MYSQL: "format",
    ProductTypeEnum.SQLITE: "qmark",
}

_SQLITE_PROGRESS_STEPS = 1000


def connect(params: ConnectionParams) -> Any:
    """
    Open a connection described by *params*. Transactions are left to the caller
    (no autocommit); the pool rolls back on return.
    """
    pt = params.product_type
    if pt == ProductTypeEnum.SQLITE:
        conn = sqlite3.connect(
            params.database,
            timeout=params.connect_timeout,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    for name, val in [
        ("host", params.host),
        ("database", params.database),
        ("username", params.username),
    ]:
        if not val:
            raise ValueError(f"connection params must provide {name}")
    password = params.password.get_secret_value()

    if pt == ProductTypeEnum.POSTGRES:
        return psycopg.connect(
            host=params.host,
            port=params.effective_port,
            dbname=params.database,
            user=params.username,
            password=password,
            connect_timeout=params.connect_timeout,
        )
    if pt == ProductTypeEnum.MYSQL:
        return pymysql.connect(
            host=params.host,
            port=params.effective_port,
            database=params.database,
            user=params.username,
            password=password,
            connect_timeout=params.connect_timeout,
            autocommit=False,
        )
    raise ValueError(f"Unsupported product_type: {pt}")


def _set_timeout(conn: Any, product_type: ProductTypeEnum, timeout_sec: float) -> None:
    if product_type == ProductTypeEnum.SQLITE:
        deadline = time.monotonic() + timeout_sec
        # Non-zero return aborts the running statement with "interrupted".
        conn.set_progress_handler(lambda: int(time.monotonic() > deadline), _SQLITE_PROGRESS_STEPS)
        return
    timeout_ms = max(1, int(timeout_sec * 1000))
    cur = conn.cursor()
    try:
        if product_type == ProductTypeEnum.POSTGRES:
            cur.execute(f"SET statement_timeout = {timeout_ms}")
        elif product_type == ProductTypeEnum.MYSQL:
            cur.execute("SET SESSION max_execution_time = %s", (timeout_ms,))
    finally:
        cur.close()


def _reset_timeout(conn: Any, product_type: ProductTypeEnum) -> None:
    try:
        if product_type == ProductTypeEnum.SQLITE:
            conn.set_progress_handler(None, 0)
            return
        cur = conn.cursor()
        try:
            if product_type == ProductTypeEnum.POSTGRES:
                cur.execute("SET statement_timeout = 0")
            elif product_type == ProductTypeEnum.MYSQL:
                cur.execute("SET SESSION max_execution_time = 0")
        finally:
            cur.close()
    except Exception:
        # Aborted transactions reject the reset; rollback restores the setting.
        _log.debug("statement timeout reset failed", exc_info=True)


def execute(
    conn: Any,
    sql: str,
    params: list | tuple | None = None,
    *,
    product_type: ProductTypeEnum,
    timeout_sec: float | None = None,
) -> Any:
    """
    Execute one statement and return the cursor. Caller reads rows or
    cursor.rowcount and closes the cursor.

    - timeout_sec: when set, applied before the query (Postgres statement_timeout,
      MySQL max_execution_time, SQLite progress handler) and reset after.
    """
    use_timeout = timeout_sec is not None and timeout_sec > 0
    if use_timeout:
        _set_timeout(conn, product_type, timeout_sec)
    cur = conn.cursor()
    try:
        if params:
            cur.execute(sql, params)
        else:
            cur.execute(sql)
    except BaseException:
        try:
            cur.close()
        except Exception:
            _log.debug("cursor close failed", exc_info=True)
        raise
    finally:
        if use_timeout:
            _reset_timeout(conn, product_type)
    return cur


def column_names(cursor: Any) -> tuple[str, ...] | None:
    """Column names from cursor.description, or None for statements without a result set."""
    desc = cursor.description
    if not desc:
        return None
    return tuple(d[0] for d in desc)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_PG_TIMEOUT_STATES = {"57014", "55P03"}
_PG_CONFLICT_STATES = {"40001", "40P01"}
_PG_LOST_STATES = {"57P01", "57P02", "57P03"}

_MYSQL_SYNTAX_CODES = {1054, 1064, 1146, 1149}
_MYSQL_CONSTRAINT_CODES = {1048, 1062, 1216, 1217, 1451, 1452, 3819}
_MYSQL_TIMEOUT_CODES = {1205, 3024}
_MYSQL_CONFLICT_CODES = {1213}
_MYSQL_LOST_CODES = {2003, 2006, 2013, 2055}

_SQLITE_SYNTAX_MARKERS = ("syntax error", "no such table", "no such column", "has no column")
_SQLITE_CONFLICT_MARKERS = ("database is locked", "database table is locked", "busy")


def _classify_postgres(exc: Exception) -> QueryErrorKind:
    state = getattr(exc, "sqlstate", None) or ""
    if state in _PG_TIMEOUT_STATES:
        return QueryErrorKind.TIMEOUT
    if state in _PG_CONFLICT_STATES:
        return QueryErrorKind.SERIALIZATION_CONFLICT
    if state.startswith("08") or state in _PG_LOST_STATES:
        return QueryErrorKind.CONNECTION_LOST
    if state.startswith("23"):
        return QueryErrorKind.CONSTRAINT_VIOLATION
    if state.startswith("42"):
        return QueryErrorKind.SYNTAX_INVALID
    if not state and isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
        # No SQLSTATE: the server never answered (socket closed, server gone).
        return QueryErrorKind.CONNECTION_LOST
    return QueryErrorKind.DRIVER


def _classify_mysql(exc: Exception) -> QueryErrorKind:
    code = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
    if isinstance(exc, pymysql.err.InterfaceError):
        return QueryErrorKind.CONNECTION_LOST
    if code in _MYSQL_LOST_CODES:
        return QueryErrorKind.CONNECTION_LOST
    if code in _MYSQL_TIMEOUT_CODES:
        return QueryErrorKind.TIMEOUT
    if code in _MYSQL_CONFLICT_CODES:
        return QueryErrorKind.SERIALIZATION_CONFLICT
    if code in _MYSQL_CONSTRAINT_CODES or isinstance(exc, pymysql.err.IntegrityError):
        return QueryErrorKind.CONSTRAINT_VIOLATION
    if code in _MYSQL_SYNTAX_CODES or isinstance(exc, pymysql.err.ProgrammingError):
        return QueryErrorKind.SYNTAX_INVALID
    return QueryErrorKind.DRIVER


def _classify_sqlite(exc: Exception) -> QueryErrorKind:
    msg = str(exc).lower()
    if isinstance(exc, sqlite3.IntegrityError):
        return QueryErrorKind.CONSTRAINT_VIOLATION
    if isinstance(exc, sqlite3.ProgrammingError) and "closed" in msg:
        return QueryErrorKind.CONNECTION_LOST
    if isinstance(exc, sqlite3.OperationalError):
        if "interrupted" in msg:
            return QueryErrorKind.TIMEOUT
        if any(m in msg for m in _SQLITE_CONFLICT_MARKERS):
            return QueryErrorKind.SERIALIZATION_CONFLICT
        if any(m in msg for m in _SQLITE_SYNTAX_MARKERS):
            return QueryErrorKind.SYNTAX_INVALID
        if "unable to open" in msg or "disk i/o" in msg:
            return QueryErrorKind.CONNECTION_LOST
    return QueryErrorKind.DRIVER


def classify_error(exc: Exception, product_type: ProductTypeEnum) -> QueryError:
    """Wrap a driver (or socket) exception in a QueryError of the matching kind."""
    if isinstance(exc, QueryError):
        return exc
    if isinstance(exc, TimeoutError):
        kind = QueryErrorKind.TIMEOUT
    elif isinstance(exc, (ConnectionError, OSError)):
        kind = QueryErrorKind.CONNECTION_LOST
    elif isinstance(exc, psycopg.Error):
        kind = _classify_postgres(exc)
    elif isinstance(exc, pymysql.err.Error):
        kind = _classify_mysql(exc)
    elif isinstance(exc, sqlite3.Error):
        kind = _classify_sqlite(exc)
    else:
        kind = QueryErrorKind.DRIVER
    sqlstate = getattr(exc, "sqlstate", None)
    return QueryError(kind, f"{product_type.value}: {exc}", sqlstate=sqlstate)
