"""Session / unit-of-work tests against a SQLite file database."""

import time
from pathlib import Path

import psycopg
import pytest

from formstore.core.errors import (
    ParameterMismatch,
    PoolExhausted,
    QueryError,
    QueryErrorKind,
    SessionStateError,
)
from formstore.core.retry import RetryPolicy
from formstore.engines.mapper import Column, schema
from formstore.engines.session import Session, SessionState, run_in_transaction
from formstore.engines.sql.executor import QueryExecutor
from formstore.engines.sql.statement import sql
from tests.utils.fakes import ConnectionFactory, make_conn, make_pool
from tests.utils.sqlite import ITEM_SCHEMA, Item, count_items, make_database


def _insert(name: str, qty: int = 1):
    return sql("INSERT INTO item (name, qty) VALUES (%s, %s)", name, qty)


def test_commit_is_visible_to_a_new_session(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    with db.session() as s:
        assert s.execute(_insert("bolt", 4)) == 1
        assert s.state == SessionState.OPEN
    assert s.state == SessionState.COMMITTED

    with db.session() as s2:
        items = s2.query(sql("SELECT id, name, qty FROM item"), ITEM_SCHEMA)
    assert items == [Item(1, "bolt", 4)]
    db.close()


def test_uncommitted_writes_are_not_seen_elsewhere(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    s = db.begin()
    s.execute(_insert("nut"))
    assert count_items(db) == 0
    s.commit()
    assert count_items(db) == 1
    db.close()


def test_rollback_discards_writes(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    s = db.begin()
    s.execute(_insert("washer"))
    s.rollback()
    assert s.state == SessionState.ROLLED_BACK
    assert count_items(db) == 0
    db.close()


def test_rollback_of_read_only_session(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    with db.session(commit_on_exit=False) as s:
        assert s.query(sql("SELECT id, name, qty FROM item"), ITEM_SCHEMA) == []
    assert s.state == SessionState.ROLLED_BACK
    assert db.pool.stats()["idle"] == 1
    db.close()


def test_exception_in_block_rolls_back(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    with pytest.raises(RuntimeError):
        with db.session() as s:
            s.execute(_insert("gear"))
            raise RuntimeError("abort")
    assert s.state == SessionState.ROLLED_BACK
    assert count_items(db) == 0
    db.close()


def test_constraint_violation_fails_session_and_drops_connection(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    db.execute(_insert("cog"))
    assert db.pool.stats() == {"max_size": 3, "idle": 1, "in_use": 0, "total": 1}

    s = db.begin()
    s.execute(_insert("spring"))
    with pytest.raises(QueryError) as exc_info:
        s.execute(_insert("cog"))

    assert exc_info.value.kind == QueryErrorKind.CONSTRAINT_VIOLATION
    assert s.state == SessionState.FAILED
    assert s.error is exc_info.value
    # the lease was released unhealthy: closed, not parked
    assert db.pool.stats()["total"] == 0
    # the implicit rollback discarded "spring"
    assert count_items(db) == 1
    with pytest.raises(SessionStateError):
        s.execute(_insert("late"))
    with pytest.raises(SessionStateError):
        s.commit()
    db.close()


def test_parameter_mismatch_keeps_session_open(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    with db.session() as s:
        with pytest.raises(ParameterMismatch):
            s.execute(sql("INSERT INTO item (name, qty) VALUES (%s, %s)", "x"))
        assert s.is_open
        s.execute(_insert("x"))
    assert count_items(db) == 1
    db.close()


def test_deadline_fails_session(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    s = db.session(deadline=0.05).begin()
    s.execute(_insert("slow"))
    time.sleep(0.08)

    with pytest.raises(QueryError) as exc_info:
        s.execute(_insert("slower"))

    assert exc_info.value.kind == QueryErrorKind.TIMEOUT
    assert s.state == SessionState.FAILED
    assert count_items(db) == 0
    db.close()


def test_state_machine_rejects_invalid_transitions(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    s = db.session()
    with pytest.raises(SessionStateError):
        s.commit()
    with pytest.raises(SessionStateError):
        s.query(sql("SELECT id, name, qty FROM item"), ITEM_SCHEMA)
    s.begin()
    with pytest.raises(SessionStateError):
        s.begin()
    s.commit()
    with pytest.raises(SessionStateError):
        s.rollback()
    s.close()
    assert s.state == SessionState.COMMITTED
    db.close()


def test_begin_on_exhausted_pool_leaves_session_idle(tmp_path: Path) -> None:
    db = make_database(tmp_path, max_size=1)
    held = db.pool.acquire()
    s = Session(db.pool, db.executor)
    with pytest.raises(PoolExhausted):
        s.begin(timeout=0.05)
    assert s.state == SessionState.IDLE
    db.pool.release(held)
    s.begin()
    s.close()
    assert s.state == SessionState.ROLLED_BACK
    db.close()


def test_query_one_and_read_execute(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    db.execute(_insert("a"))
    db.execute(_insert("b"))
    with db.session() as s:
        first = s.query_one(sql("SELECT id, name, qty FROM item WHERE name = %s", "a"), ITEM_SCHEMA)
        missing = s.query_one(sql("SELECT id, name, qty FROM item WHERE name = %s", "z"), ITEM_SCHEMA)
        n = s.execute(sql("SELECT id FROM item"))
    assert first == Item(1, "a", 1)
    assert missing is None
    assert n == 2
    db.close()


def test_run_in_transaction_retries_transient_failure(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    sleeps: list[float] = []
    calls = []

    def work(session: Session) -> int:
        calls.append(1)
        session.execute(_insert(f"try-{len(calls)}"))
        if len(calls) == 1:
            raise QueryError(QueryErrorKind.SERIALIZATION_CONFLICT, "could not serialize")
        return len(calls)

    assert run_in_transaction(db.pool, work, executor=db.executor, sleep=sleeps.append) == 2
    assert len(sleeps) == 1
    names = [i.name for i in db.query(sql("SELECT id, name, qty FROM item"), ITEM_SCHEMA)]
    assert names == ["try-2"]
    db.close()


def test_run_in_transaction_does_not_retry_permanent_errors(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    sleeps: list[float] = []
    calls = []

    def work(session: Session) -> None:
        calls.append(1)
        session.execute(sql("INSERT INTO nowhere VALUES (1)"))

    with pytest.raises(QueryError) as exc_info:
        run_in_transaction(db.pool, work, executor=db.executor, sleep=sleeps.append)
    assert exc_info.value.kind == QueryErrorKind.SYNTAX_INVALID
    assert calls == [1]
    assert sleeps == []
    db.close()


def test_run_in_transaction_gives_up_after_attempts(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    sleeps: list[float] = []

    def work(session: Session) -> None:
        raise QueryError(QueryErrorKind.CONNECTION_LOST, "gone")

    with pytest.raises(QueryError):
        run_in_transaction(db.pool, work, executor=db.executor, attempts=3, sleep=sleeps.append)
    assert len(sleeps) == 2
    db.close()


def _fake_executor() -> QueryExecutor:
    return QueryExecutor(RetryPolicy(max_retries=2), sleep=lambda d: None)


def test_abandoned_session_lease_reclaimed_by_evictor(tmp_path: Path) -> None:
    """A session left open past its deadline gives its connection back without another call."""
    db = make_database(tmp_path, max_size=1)
    s = db.session(deadline=0.05).begin()
    s.execute(_insert("forgotten"))
    time.sleep(0.1)

    assert db.pool.evict() >= 1
    assert db.pool.stats()["in_use"] == 0
    assert s.state == SessionState.FAILED
    with db.pool.connection(timeout=0.1):
        pass

    with pytest.raises(QueryError) as exc_info:
        s.execute(_insert("again"))
    assert exc_info.value.kind == QueryErrorKind.TIMEOUT
    with pytest.raises(QueryError):
        s.commit()
    assert count_items(db) == 0
    db.close()


def test_reclaimed_session_block_exit_raises_timeout(tmp_path: Path) -> None:
    db = make_database(tmp_path, max_size=1)
    with pytest.raises(QueryError) as exc_info:
        with db.session(deadline=0.05) as s:
            s.execute(_insert("slow"))
            time.sleep(0.1)
            db.pool.evict()
    assert exc_info.value.kind == QueryErrorKind.TIMEOUT
    assert count_items(db) == 0
    db.close()


def test_session_without_deadline_not_reclaimed(tmp_path: Path) -> None:
    db = make_database(tmp_path)
    with db.session() as s:
        s.execute(_insert("kept"))
        assert db.pool.evict() == 0
        assert s.is_open
    assert count_items(db) == 1
    db.close()


def test_lost_connection_fails_session_and_pool_hands_out_new_connection() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory)
    s = Session(pool, _fake_executor()).begin()
    conn = factory.created[0]
    conn.cursor.return_value.execute.side_effect = psycopg.OperationalError(
        "server closed the connection unexpectedly"
    )

    with pytest.raises(QueryError) as exc_info:
        s.execute(sql("UPDATE t SET a = 1"))

    assert exc_info.value.kind == QueryErrorKind.CONNECTION_LOST
    assert s.state == SessionState.FAILED
    conn.close.assert_called_once()
    assert pool.stats()["in_use"] == 0
    handle = pool.acquire()
    assert handle.connection is not conn
    pool.release(handle)
    pool.shutdown()


def test_raw_string_statement_keeps_session_open() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory)
    s = Session(pool, _fake_executor()).begin()
    with pytest.raises(TypeError):
        s.execute("UPDATE t SET a = 1")  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        s.query("SELECT a FROM t", schema(Column("a")))  # type: ignore[arg-type]
    assert s.is_open
    s.rollback()
    assert s.state == SessionState.ROLLED_BACK
    pool.shutdown()


def test_type_error_from_malformed_driver_rows_fails_session() -> None:
    conn = make_conn(description=[("a",)], batches=[[5]])
    pool = make_pool(lambda: conn)
    s = Session(pool, _fake_executor()).begin()

    with pytest.raises(TypeError):
        s.query(sql("SELECT a FROM t"), schema(Column("a")))

    assert s.state == SessionState.FAILED
    conn.close.assert_called_once()
    pool.shutdown()
