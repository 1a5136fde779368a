"""
Session / unit of work: one transaction on one leased connection.

    IDLE --begin--> OPEN --commit--> COMMITTED
                         --rollback--> ROLLED_BACK
                         --error / deadline--> FAILED

Terminal states are final. The lease is released on every exit path: healthy
after commit/rollback, invalidated after a failure. A Session belongs to one
thread at a time.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, TypeVar

from formstore.core.errors import (
    ParameterMismatch,
    QueryError,
    QueryErrorKind,
    SessionStateError,
)
from formstore.core.pool import ConnectionHandle, ConnectionPool, classify_error
from formstore.engines.mapper import RowSchema
from formstore.engines.sql.executor import QueryExecutor, ResultSet
from formstore.engines.sql.statement import Statement

_log = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class Session:
    """
    Groups statements into one atomic transaction.

    - deadline: seconds from begin() after which the transaction is abandoned
      (FAILED, connection invalidated) on its next use. A lease still held past
      it is reclaimed by the pool on its next eviction pass.
    - commit_on_exit: when used as a context manager, commit if the block
      finishes without an exception (otherwise roll back).
    """

    def __init__(
        self,
        pool: ConnectionPool,
        executor: QueryExecutor | None = None,
        *,
        deadline: float | None = None,
        commit_on_exit: bool = True,
    ) -> None:
        self._pool = pool
        self._executor = executor or QueryExecutor()
        self._deadline = deadline
        self._commit_on_exit = commit_on_exit
        self._state = SessionState.IDLE
        self._handle: ConnectionHandle | None = None
        self._expires_at: float | None = None
        self._lease_reclaimed = False
        self.error: BaseException | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == SessionState.OPEN

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    def begin(self, timeout: float | None = None) -> "Session":
        """Lease a connection and open the transaction. Pool errors leave the session IDLE."""
        self._require(SessionState.IDLE, "begin")
        handle = self._pool.acquire(timeout)
        handle.in_transaction = True
        self._handle = handle
        self._state = SessionState.OPEN
        if self._deadline is not None:
            self._expires_at = time.monotonic() + self._deadline
            handle.expires_at = self._expires_at
            handle.on_reclaim = self._reclaimed
        _log.debug("Session began on lease %s", handle.lease_id)
        return self

    def commit(self) -> None:
        self._require(SessionState.OPEN, "commit")
        self._check_deadline()
        handle = self._handle
        try:
            handle.connection.commit()
        except Exception as e:
            err = classify_error(e, handle.product_type)
            self._fail(err)
            raise err from e
        self._finish(SessionState.COMMITTED, handle)

    def rollback(self) -> None:
        self._require(SessionState.OPEN, "rollback")
        handle = self._handle
        try:
            handle.connection.rollback()
        except Exception as e:
            err = classify_error(e, handle.product_type)
            self._fail(err)
            raise err from e
        self._finish(SessionState.ROLLED_BACK, handle)

    def close(self) -> None:
        """Roll back if still open; no-op in any other state."""
        if self._state == SessionState.OPEN:
            try:
                self.rollback()
            except QueryError:
                _log.debug("rollback on close failed", exc_info=True)

    def __enter__(self) -> "Session":
        if self._state == SessionState.IDLE:
            self.begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._state != SessionState.OPEN:
            if exc_type is None and self._commit_on_exit:
                # the pool took the lease back before the block could commit
                self._raise_if_reclaimed()
            return
        if exc_type is None and self._commit_on_exit:
            self.commit()
            return
        try:
            self.rollback()
        except QueryError:
            # Already FAILED; the block's own exception (if any) wins.
            if exc_type is None:
                raise
            _log.debug("rollback after error failed", exc_info=True)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def execute(self, statement: Statement, *, timeout: float | None = None) -> int:
        """Run a write and return the affected-row count (a read returns its row count)."""
        _check_statement(statement)
        result = self._run(lambda h, t: self._executor.execute(h, statement, timeout=t), timeout)
        if isinstance(result, ResultSet):
            return len(self._run(lambda h, t: result.all(), None))
        return result

    def query(
        self, statement: Statement, row_schema: RowSchema, *, timeout: float | None = None
    ) -> list[Any]:
        """Run a read and return its rows mapped to records."""
        _check_statement(statement)
        return self._run(
            lambda h, t: self._executor.query(h, statement, row_schema, timeout=t), timeout
        )

    def query_one(
        self, statement: Statement, row_schema: RowSchema, *, timeout: float | None = None
    ) -> Any | None:
        records = self.query(statement, row_schema, timeout=timeout)
        return records[0] if records else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, fn: Callable[[ConnectionHandle, float | None], T], timeout: float | None) -> T:
        self._require(SessionState.OPEN, "execute")
        self._check_deadline()
        if self._expires_at is not None:
            remaining = max(0.001, self._expires_at - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        try:
            return fn(self._handle, timeout)
        except ParameterMismatch:
            # Rejected before any I/O; the transaction is untouched.
            raise
        except BaseException as e:
            self._fail(e)
            raise

    def _check_deadline(self) -> None:
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            err = QueryError(QueryErrorKind.TIMEOUT, "transaction deadline exceeded")
            self._fail(err)
            raise err

    def _require(self, state: SessionState, action: str) -> None:
        if self._state != state:
            if state == SessionState.OPEN:
                self._raise_if_reclaimed()
            raise SessionStateError(f"cannot {action} a session in state {self._state.value}")

    def _raise_if_reclaimed(self) -> None:
        if self._lease_reclaimed:
            raise QueryError(
                QueryErrorKind.TIMEOUT, "transaction deadline exceeded; connection reclaimed"
            )

    def _reclaimed(self, handle: ConnectionHandle) -> None:
        """Called from the pool's evictor when the deadline passed with the lease still held."""
        if self._state != SessionState.OPEN or self._handle is not handle:
            return
        self._state = SessionState.FAILED
        self._lease_reclaimed = True
        self.error = QueryError(
            QueryErrorKind.TIMEOUT, "transaction deadline exceeded; connection reclaimed"
        )
        handle.in_transaction = False
        self._handle = None
        _log.warning("Session on lease %s abandoned past its deadline", handle.lease_id)

    def _finish(self, state: SessionState, handle: ConnectionHandle) -> None:
        handle.in_transaction = False
        self._handle = None
        self._state = state
        self._pool.release(handle)
        _log.debug("Session %s on lease %s", state.value, handle.lease_id)

    def _fail(self, error: BaseException) -> None:
        """OPEN -> FAILED: implicit rollback, invalidate and release the lease."""
        handle = self._handle
        if self._state != SessionState.OPEN or handle is None:
            return
        try:
            handle.connection.rollback()
        except Exception:
            _log.debug("rollback of failed session failed", exc_info=True)
        handle.invalidate()
        handle.in_transaction = False
        self._handle = None
        self._state = SessionState.FAILED
        self.error = error
        self._pool.release(handle, healthy=False)
        _log.warning("Session failed on lease %s: %s", handle.lease_id, error)


def _check_statement(statement: Any) -> None:
    if not isinstance(statement, Statement):
        raise TypeError(f"expected Statement, got {type(statement).__name__}")


def run_in_transaction(
    pool: ConnectionPool,
    work: Callable[[Session], T],
    *,
    executor: QueryExecutor | None = None,
    attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run *work* in a fresh Session and commit; on a transient QueryError
    (lost connection, serialization conflict) retry the whole unit of work,
    up to *attempts* times in total. *work* must be safe to repeat.
    """
    executor = executor or QueryExecutor()
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    attempt = 1
    while True:
        try:
            with Session(pool, executor) as session:
                return work(session)
        except QueryError as e:
            if not e.transient or attempt >= attempts:
                raise
            delay = executor.retry_policy.next_delay(attempt - 1)
            _log.warning(
                "Transaction hit %s; retrying unit of work (%d/%d) in %.2fs",
                e.kind.value,
                attempt,
                attempts - 1,
                delay,
            )
            sleep(delay)
            attempt += 1
