"""
Database facade: one pool plus one executor, built at startup and passed down.

    db = Database.from_settings(load_settings())
    with db:
        with db.session() as s:
            s.execute(sql("UPDATE form SET title = %s WHERE id = %s", "Draft", 7))
"""

import logging
from typing import Any, Callable, TypeVar

from formstore.core.config import DatabaseSettings
from formstore.core.pool import ConnectionPool, readiness_check
from formstore.engines.mapper import RowSchema
from formstore.engines.session import Session, run_in_transaction
from formstore.engines.sql.executor import QueryExecutor, ResultSet
from formstore.engines.sql.statement import Statement

_log = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """Owns the pool lifecycle; hands out Sessions and runs standalone statements."""

    def __init__(self, pool: ConnectionPool, executor: QueryExecutor | None = None) -> None:
        self._pool = pool
        self._executor = executor or QueryExecutor()

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        params = settings.connection_params()
        pool = ConnectionPool.from_params(params, settings.pool_config())
        executor = QueryExecutor(
            settings.retry_policy(),
            statement_timeout=settings.DB_STATEMENT_TIMEOUT,
        )
        _log.info("Database configured for %s", params.describe())
        return cls(pool, executor)

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def executor(self) -> QueryExecutor:
        return self._executor

    def open(self) -> "Database":
        self._pool.open()
        return self

    def close(self, grace: float | None = None) -> None:
        self._pool.shutdown(grace)

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def session(self, *, deadline: float | None = None, commit_on_exit: bool = True) -> Session:
        """A new IDLE session; ``with db.session() as s:`` begins it."""
        return Session(self._pool, self._executor, deadline=deadline, commit_on_exit=commit_on_exit)

    def begin(self, timeout: float | None = None, *, deadline: float | None = None) -> Session:
        """A new session, already OPEN."""
        return self.session(deadline=deadline).begin(timeout)

    def run_in_transaction(self, work: Callable[[Session], T], *, attempts: int = 3) -> T:
        return run_in_transaction(self._pool, work, executor=self._executor, attempts=attempts)

    # ------------------------------------------------------------------
    # Standalone statements (autocommit)
    # ------------------------------------------------------------------

    def execute(self, statement: Statement, *, timeout: float | None = None) -> int:
        """Run one statement on a short lease, committed immediately."""
        with self._pool.connection() as handle:
            result = self._executor.execute(handle, statement, timeout=timeout)
            if isinstance(result, ResultSet):
                return len(result.all())
            return result

    def query(
        self, statement: Statement, row_schema: RowSchema, *, timeout: float | None = None
    ) -> list[Any]:
        """Run one read on a short lease and return mapped records."""
        with self._pool.connection() as handle:
            return self._executor.query(handle, statement, row_schema, timeout=timeout)

    def query_one(
        self, statement: Statement, row_schema: RowSchema, *, timeout: float | None = None
    ) -> Any | None:
        records = self.query(statement, row_schema, timeout=timeout)
        return records[0] if records else None

    def readiness(self) -> tuple[bool, list[str]]:
        return readiness_check(self._pool)
