"""
Execute statements on a leased connection.

Supports:
- Writes (no result set): returns the affected-row count (int).
- Reads (cursor has a description, including INSERT ... RETURNING): returns a
  lazy, forward-only ResultSet of ResultRow.

Outside a transaction writes are committed immediately, and a result set is
committed once it is fully read or closed (so INSERT ... RETURNING sticks). Driver errors are
classified into QueryError; CONNECTION_LOST and TIMEOUT invalidate the handle.
Idempotent statements outside a transaction are retried on transient errors.
"""

import functools
import logging
import time
from collections.abc import Iterator
from typing import Any, Callable

from formstore.core.errors import (
    MappingError,
    QueryError,
    QueryErrorKind,
    ResultConsumed,
)
from formstore.core.pool import ConnectionHandle, classify_error, column_names, execute
from formstore.core.pool.connect import PARAMSTYLES
from formstore.core.retry import RetryPolicy
from formstore.engines.mapper import RowSchema, map_row
from formstore.engines.sql.statement import Statement

_log = logging.getLogger(__name__)

_DEFAULT_FETCH_SIZE = 100


class ResultRow(tuple):
    """Positional values of one row; ``columns`` is shared by every row of the query."""

    def __new__(cls, values: Any, columns: tuple[str, ...]) -> "ResultRow":
        row = super().__new__(cls, values)
        row.columns = columns
        return row

    def as_dict(self) -> dict[str, Any]:
        """Name -> value. Duplicate column names keep the last value; use positions for joins."""
        return dict(zip(self.columns, self))


class ResultSet:
    """
    Lazy, finite, forward-only rows of one query.

    Iterating twice raises ResultConsumed: re-execute the statement, or call
    ``all()`` once and keep the list.
    """

    def __init__(
        self,
        cursor: Any,
        columns: tuple[str, ...],
        *,
        on_error: Callable[[Exception], QueryError],
        on_close: Callable[[], None] | None = None,
        fetch_size: int = _DEFAULT_FETCH_SIZE,
    ) -> None:
        self._cursor = cursor
        self._columns = columns
        self._on_error = on_error
        self._on_close = on_close
        self._fetch_size = fetch_size
        self._consumed = False
        self._closed = False

    @property
    def columns(self) -> tuple[str, ...]:
        return self._columns

    def __iter__(self) -> Iterator[ResultRow]:
        if self._consumed:
            raise ResultConsumed("result set is forward-only; re-execute the statement")
        self._consumed = True
        return self._rows()

    def _rows(self) -> Iterator[ResultRow]:
        width = len(self._columns)
        try:
            while True:
                try:
                    batch = self._cursor.fetchmany(self._fetch_size)
                except Exception as e:
                    raise self._on_error(e) from e
                if not batch:
                    return
                for raw in batch:
                    if len(raw) != width:
                        raise QueryError(
                            QueryErrorKind.DRIVER,
                            f"row width {len(raw)} differs from {width} result columns",
                        )
                    yield ResultRow(raw, self._columns)
        except Exception:
            # nothing to commit after a failed read
            self._on_close = None
            raise
        finally:
            self.close()

    def all(self) -> list[ResultRow]:
        """Materialize every remaining row."""
        return list(self)

    def one_or_none(self) -> ResultRow | None:
        rows = self.all()
        return rows[0] if rows else None

    def map(self, row_schema: RowSchema) -> Iterator[Any]:
        """Lazily map rows to records with *row_schema*."""
        for row in self:
            yield map_row(row, row_schema)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._cursor.close()
        except Exception:
            _log.debug("cursor close failed", exc_info=True)
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            on_close()

    def __enter__(self) -> "ResultSet":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class QueryExecutor:
    """
    execute(handle, statement) -> int | ResultSet
    query(handle, statement, schema) -> list[record]

    Thread-safe: holds no per-call state. ``sleep`` is injectable for tests.
    """

    def __init__(
        self,
        retry: RetryPolicy | None = None,
        *,
        statement_timeout: float | None = None,
        fetch_size: int = _DEFAULT_FETCH_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry = retry or RetryPolicy()
        self._statement_timeout = statement_timeout
        self._fetch_size = fetch_size
        self._sleep = sleep

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def execute(
        self,
        handle: ConnectionHandle,
        statement: Statement,
        *,
        timeout: float | None = None,
    ) -> int | ResultSet:
        """
        Run *statement* on *handle*.

        - ParameterMismatch is raised before the connection is touched.
        - timeout: per-statement deadline in seconds (default: executor's statement_timeout).
        - Transient failures are retried only for ``statement.idempotent`` outside a transaction.
        """
        if not isinstance(statement, Statement):
            raise TypeError(f"expected Statement, got {type(statement).__name__}")
        product_type = handle.product_type
        sql_text, values = statement.bind(product_type, PARAMSTYLES[product_type])
        effective_timeout = timeout if timeout is not None else self._statement_timeout

        attempt = 0
        while True:
            try:
                return self._run_once(handle, sql_text, values, effective_timeout)
            except QueryError as e:
                retryable = (
                    statement.idempotent
                    and not handle.in_transaction
                    and self._retry.should_retry(attempt, e)
                )
                if not retryable:
                    raise
                delay = self._retry.next_delay(attempt)
                attempt += 1
                _log.warning(
                    "Transient %s on idempotent statement; retry %d/%d in %.2fs",
                    e.kind.value,
                    attempt,
                    self._retry.max_retries,
                    delay,
                )
                self._sleep(delay)
                if handle.invalidated:
                    handle.renew()

    def query(
        self,
        handle: ConnectionHandle,
        statement: Statement,
        row_schema: RowSchema,
        *,
        timeout: float | None = None,
    ) -> list[Any]:
        """Execute a read and map every row with *row_schema*."""
        result = self.execute(handle, statement, timeout=timeout)
        if not isinstance(result, ResultSet):
            raise MappingError("statement returned no result set to map")
        with result:
            return [map_row(row, row_schema) for row in result]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_once(
        self,
        handle: ConnectionHandle,
        sql_text: str,
        values: tuple[Any, ...],
        timeout: float | None,
    ) -> int | ResultSet:
        conn = handle.connection
        if handle.invalidated:
            raise QueryError(
                QueryErrorKind.CONNECTION_LOST,
                "connection was invalidated by an earlier failure",
            )
        try:
            cur = execute(
                conn,
                sql_text,
                values,
                product_type=handle.product_type,
                timeout_sec=timeout,
            )
        except Exception as e:
            raise self._fail(handle, e) from e
        except BaseException:
            # Abandoned mid-statement: connection state is unknown.
            handle.invalidate()
            raise

        columns = column_names(cur)
        if columns is not None:
            commit = None if handle.in_transaction else functools.partial(self._commit, handle)
            return ResultSet(
                cur,
                columns,
                on_error=functools.partial(self._fail, handle),
                on_close=commit,
                fetch_size=self._fetch_size,
            )

        rowcount = cur.rowcount if cur.rowcount is not None and cur.rowcount >= 0 else 0
        try:
            cur.close()
        except Exception:
            _log.debug("cursor close failed", exc_info=True)
        if not handle.in_transaction:
            self._commit(handle)
        return rowcount

    def _commit(self, handle: ConnectionHandle) -> None:
        if handle.released or handle.invalidated:
            return
        try:
            handle.connection.commit()
        except Exception as e:
            raise self._fail(handle, e) from e

    def _fail(self, handle: ConnectionHandle, exc: Exception) -> QueryError:
        err = classify_error(exc, handle.product_type)
        if err.invalidates_connection:
            handle.invalidate()
            _log.warning("Statement failed, connection invalidated: %s", err)
            return err
        if err.kind == QueryErrorKind.DRIVER:
            _log.error("Statement failed: %s", err, exc_info=True)
        else:
            _log.debug("Statement failed: %s", err)
        if not handle.in_transaction:
            # Leave the implicit transaction so the next statement on this lease can run.
            try:
                handle.connection.rollback()
            except Exception:
                _log.debug("rollback after failed statement failed", exc_info=True)
                handle.invalidate()
        return err
