"""Unit tests for ConnectionPool: bounds, timeouts, invalidation, eviction, shutdown."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from formstore.core.errors import (
    ConfigInvalid,
    PoolClosed,
    PoolError,
    PoolExhausted,
    QueryError,
    QueryErrorKind,
)
from formstore.core.pool import PoolConfig
from tests.utils.fakes import ConnectionFactory, make_pool


def test_acquire_opens_and_release_parks_connection() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory)

    handle = pool.acquire()
    assert pool.stats() == {"max_size": 3, "idle": 0, "in_use": 1, "total": 1}
    conn = handle.connection
    pool.release(handle)

    conn.rollback.assert_called_once()
    conn.close.assert_not_called()
    assert pool.stats()["idle"] == 1

    again = pool.acquire()
    assert again.connection is conn
    assert len(factory.created) == 1
    pool.release(again)


def test_release_twice_is_noop() -> None:
    pool = make_pool()
    handle = pool.acquire()
    pool.release(handle)
    pool.release(handle)
    handle.release()
    assert pool.stats()["idle"] == 1
    assert pool.stats()["in_use"] == 0


def test_released_handle_rejects_connection_access() -> None:
    pool = make_pool()
    handle = pool.acquire()
    pool.release(handle)
    with pytest.raises(PoolError):
        _ = handle.connection


def test_acquire_times_out_with_pool_exhausted() -> None:
    """max_size=1: a second caller waiting 100ms gets PoolExhausted after ~100ms."""
    pool = make_pool(max_size=1)
    held = pool.acquire()

    start = time.monotonic()
    with pytest.raises(PoolExhausted):
        pool.acquire(timeout=0.1)
    elapsed = time.monotonic() - start

    assert 0.09 <= elapsed < 1.0
    pool.release(held)


def test_waiting_acquire_served_when_slot_frees() -> None:
    pool = make_pool(max_size=1)
    held = pool.acquire()
    got: list = []

    def waiter() -> None:
        got.append(pool.acquire(timeout=2.0))

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    pool.release(held)
    t.join(timeout=2.0)

    assert len(got) == 1
    pool.release(got[0])


def test_concurrent_use_never_exceeds_max_size() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, max_size=3, acquire_timeout=5.0)
    peak = 0
    peak_lock = threading.Lock()

    def worker() -> None:
        nonlocal peak
        for _ in range(20):
            with pool.connection() as handle:
                with peak_lock:
                    peak = max(peak, factory.live, pool.stats()["total"])
                if handle.lease_id % 7 == 0:
                    handle.invalidate()
                time.sleep(0.001)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert peak <= 3
    assert factory.live <= 3
    assert pool.stats()["in_use"] == 0


def test_invalidated_connection_is_closed_not_reused() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory)
    handle = pool.acquire()
    bad = handle.connection
    handle.invalidate()
    pool.release(handle)

    bad.close.assert_called_once()
    assert pool.stats()["idle"] == 0

    fresh = pool.acquire()
    assert fresh.connection is not bad
    pool.release(fresh)


def test_release_unhealthy_closes_connection() -> None:
    pool = make_pool()
    handle = pool.acquire()
    conn = handle.connection
    pool.release(handle, healthy=False)
    conn.close.assert_called_once()


def test_rollback_failure_on_release_closes_connection() -> None:
    pool = make_pool()
    handle = pool.acquire()
    conn = handle.connection
    conn.rollback.side_effect = RuntimeError("broken")
    pool.release(handle)
    conn.close.assert_called_once()
    assert pool.stats()["idle"] == 0


def test_connection_past_max_lifetime_is_replaced_on_release() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, min_size=1, max_lifetime=0.05)
    handle = pool.acquire()
    old = handle.connection
    time.sleep(0.08)
    pool.release(handle)

    old.close.assert_called_once()
    # topped back up to min_size with a new connection
    assert pool.stats()["idle"] == 1
    assert len(factory.created) == 2


def test_idle_connections_are_evicted_and_replaced() -> None:
    """Connections idle past idle_timeout are closed and replaced without errors."""
    factory = ConnectionFactory()
    pool = make_pool(factory, min_size=2, idle_timeout=0.05, eviction_interval=60)
    pool.open()
    first = list(factory.created)
    assert len(first) == 2

    time.sleep(0.08)
    assert pool.evict() == 2

    for conn in first:
        conn.close.assert_called_once()
    assert pool.stats()["idle"] == 2
    handle = pool.acquire()
    assert handle.connection not in first
    pool.release(handle)
    pool.shutdown()


def test_evict_reclaims_lease_held_past_deadline() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, max_size=1, eviction_interval=60)
    handle = pool.acquire()
    on_reclaim = MagicMock()
    handle.expires_at = time.monotonic() - 1
    handle.on_reclaim = on_reclaim

    assert pool.evict() == 1

    on_reclaim.assert_called_once_with(handle)
    assert handle.released
    assert handle.invalidated
    factory.created[0].close.assert_called_once()
    assert pool.stats()["in_use"] == 0
    with pool.connection(timeout=0.1) as fresh:
        assert fresh.connection is not factory.created[0]
    pool.shutdown()


def test_evict_leaves_leases_within_deadline() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, eviction_interval=60)
    handle = pool.acquire()
    handle.expires_at = time.monotonic() + 60
    other = pool.acquire()

    assert pool.evict() == 0
    assert pool.stats()["in_use"] == 2
    pool.release(handle)
    pool.release(other)
    pool.shutdown()


def test_failing_reclaim_callback_still_frees_the_slot() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, max_size=1, eviction_interval=60)
    handle = pool.acquire()
    handle.expires_at = time.monotonic() - 1
    handle.on_reclaim = MagicMock(side_effect=RuntimeError("boom"))

    assert pool.evict() == 1
    assert pool.stats()["in_use"] == 0
    pool.shutdown()


def test_background_evictor_runs() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, min_size=1, idle_timeout=0.02, eviction_interval=0.02)
    pool.open()
    deadline = time.monotonic() + 2.0
    while len(factory.created) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    pool.shutdown()
    assert len(factory.created) >= 2
    factory.created[0].close.assert_called()


def test_stale_idle_connection_skipped_on_acquire() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, idle_timeout=0.03, eviction_interval=60)
    handle = pool.acquire()
    stale = handle.connection
    pool.release(handle)
    time.sleep(0.05)

    handle = pool.acquire()
    assert handle.connection is not stale
    stale.close.assert_called_once()
    pool.release(handle)


def test_dead_idle_connection_fails_ping_and_is_replaced() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, ping_idle_threshold=0.0)
    handle = pool.acquire()
    dead = handle.connection
    pool.release(handle)
    dead.cursor.return_value.execute.side_effect = OSError("socket closed")

    handle = pool.acquire()
    assert handle.connection is not dead
    dead.close.assert_called_once()
    pool.release(handle)


def test_failed_open_frees_slot_and_raises_query_error() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, max_size=1)
    factory.fail_next = ConnectionRefusedError("refused")

    with pytest.raises(QueryError) as exc_info:
        pool.acquire()
    assert exc_info.value.kind == QueryErrorKind.CONNECTION_LOST
    assert pool.stats()["total"] == 0

    handle = pool.acquire(timeout=0.1)
    pool.release(handle)


def test_shutdown_rejects_new_acquires_and_is_idempotent() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory, min_size=2)
    pool.open()
    pool.shutdown()
    pool.shutdown()

    for conn in factory.created:
        conn.close.assert_called_once()
    with pytest.raises(PoolClosed):
        pool.acquire()


def test_shutdown_waits_for_outstanding_lease() -> None:
    pool = make_pool()
    handle = pool.acquire()
    conn = handle.connection

    def late_release() -> None:
        time.sleep(0.05)
        pool.release(handle)

    t = threading.Thread(target=late_release)
    t.start()
    start = time.monotonic()
    pool.shutdown(grace=2.0)
    t.join()

    assert time.monotonic() - start >= 0.04
    conn.close.assert_called_once()


def test_lease_returned_after_grace_is_closed() -> None:
    pool = make_pool()
    handle = pool.acquire()
    pool.shutdown(grace=0.01)
    conn = handle.connection
    pool.release(handle)
    conn.close.assert_called_once()
    conn.rollback.assert_not_called()


def test_waiters_get_pool_closed_on_shutdown() -> None:
    pool = make_pool(max_size=1)
    held = pool.acquire()
    errors: list[Exception] = []

    def waiter() -> None:
        try:
            pool.acquire(timeout=2.0)
        except Exception as e:
            errors.append(e)

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    pool.shutdown(grace=0.01)
    t.join(timeout=2.0)

    assert len(errors) == 1
    assert isinstance(errors[0], PoolClosed)
    pool.release(held)


def test_renew_swaps_physical_connection() -> None:
    factory = ConnectionFactory()
    pool = make_pool(factory)
    handle = pool.acquire()
    old = handle.connection
    handle.invalidate()
    handle.renew()

    assert handle.connection is not old
    assert not handle.invalidated
    old.close.assert_called_once()
    assert pool.stats()["total"] == 1
    pool.release(handle)


def test_context_manager_opens_and_shuts_down() -> None:
    factory = ConnectionFactory()
    with make_pool(factory, min_size=1) as pool:
        assert pool.stats()["idle"] == 1
    assert pool.closed
    factory.created[0].close.assert_called_once()


class TestPoolConfig:
    def test_defaults_are_valid(self) -> None:
        cfg = PoolConfig()
        assert cfg.min_size <= cfg.max_size

    def test_min_above_max_rejected(self) -> None:
        with pytest.raises(ConfigInvalid):
            PoolConfig(min_size=5, max_size=2)

    def test_zero_max_rejected(self) -> None:
        with pytest.raises(ConfigInvalid):
            PoolConfig(min_size=0, max_size=0)

    def test_negative_timeout_rejected(self) -> None:
        with pytest.raises(ConfigInvalid):
            PoolConfig(acquire_timeout=-1)

    def test_frozen(self) -> None:
        cfg = PoolConfig()
        with pytest.raises(Exception):
            cfg.max_size = 99  # type: ignore[misc]
