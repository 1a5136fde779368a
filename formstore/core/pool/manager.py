"""
Bounded connection pool.

Hands out exclusive leases (ConnectionHandle) on physical connections, never
more than ``max_size`` live at once. Includes health-check on checkout,
max-lifetime and idle-timeout eviction, replacement of broken connections and
a draining shutdown. The idle/in-use sets are guarded by one Condition; no
other component touches them.
"""

import functools
import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, NamedTuple

from formstore.core.errors import ConfigInvalid, PoolClosed, PoolError, PoolExhausted
from formstore.models import ConnectionParams, ProductTypeEnum

from .connect import classify_error, connect
from .health import health_check

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolConfig:
    """Pool sizing and timeouts (seconds). Immutable once the pool is built."""

    min_size: int = 1
    max_size: int = 10
    acquire_timeout: float = 30.0
    idle_timeout: float = 300.0
    max_lifetime: float = 1800.0
    shutdown_grace: float = 10.0
    eviction_interval: float = 30.0
    # only ping connections idle longer than this on checkout
    ping_idle_threshold: float = 30.0

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ConfigInvalid(f"max_size must be >= 1, got {self.max_size}")
        if self.min_size < 0 or self.min_size > self.max_size:
            raise ConfigInvalid(
                f"min_size must be within [0, max_size={self.max_size}], got {self.min_size}"
            )
        for name in ("acquire_timeout", "shutdown_grace", "ping_idle_threshold"):
            if getattr(self, name) < 0:
                raise ConfigInvalid(f"{name} must be >= 0")
        for name in ("idle_timeout", "max_lifetime", "eviction_interval"):
            if getattr(self, name) <= 0:
                raise ConfigInvalid(f"{name} must be > 0")


class _PoolEntry(NamedTuple):
    conn: Any
    created_at: float  # time.monotonic() when the connection was opened
    last_used: float  # time.monotonic() when last returned to pool


class ConnectionHandle:
    """
    Exclusive lease on one pooled connection.

    Release it exactly once (extra releases are ignored), preferably through
    ``with pool.connection() as handle:``. An invalidated handle's connection
    is closed on release instead of going back to the idle set.
    """

    def __init__(self, pool: "ConnectionPool", entry: _PoolEntry, lease_id: int) -> None:
        self._pool = pool
        self._conn = entry.conn
        self.created_at = entry.created_at
        self.lease_id = lease_id
        self.acquired_at = time.monotonic()
        self.in_transaction = False
        # lease deadline (time.monotonic()); the evictor reclaims it once passed
        self.expires_at: float | None = None
        self.on_reclaim: Callable[["ConnectionHandle"], None] | None = None
        self._invalid = False
        self._released = False

    @property
    def connection(self) -> Any:
        """The raw DB-API connection. Only valid until release."""
        if self._released:
            raise PoolError(f"connection lease {self.lease_id} was already released")
        return self._conn

    @property
    def product_type(self) -> ProductTypeEnum:
        return self._pool.product_type

    @property
    def invalidated(self) -> bool:
        return self._invalid

    @property
    def released(self) -> bool:
        return self._released

    def invalidate(self) -> None:
        """Mark the connection as unusable; it will be closed, never reused."""
        if not self._invalid:
            _log.debug("Lease %s invalidated", self.lease_id)
        self._invalid = True

    def renew(self) -> None:
        """Swap in a fresh physical connection under the same lease."""
        self._pool._renew(self)

    def release(self, *, healthy: bool = True) -> None:
        self._pool.release(self, healthy=healthy)

    def __enter__(self) -> "ConnectionHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else ("invalid" if self._invalid else "leased")
        return f"<ConnectionHandle lease={self.lease_id} {state}>"


class ConnectionPool:
    """Thread-safe bounded pool of connections produced by *connect_fn*."""

    def __init__(
        self,
        connect_fn: Callable[[], Any],
        config: PoolConfig | None = None,
        *,
        product_type: ProductTypeEnum = ProductTypeEnum.POSTGRES,
    ) -> None:
        self._connect = connect_fn
        self._config = config or PoolConfig()
        self._product_type = product_type
        self._cond = threading.Condition(threading.Lock())
        self._idle: list[_PoolEntry] = []
        self._in_use: dict[int, ConnectionHandle] = {}
        # slots reserved for connections being opened, validated or closed
        self._pending = 0
        self._closing = False
        self._closed = False
        self._lease_ids = itertools.count(1)
        self._stop = threading.Event()
        self._evictor: threading.Thread | None = None

    @classmethod
    def from_params(
        cls, params: ConnectionParams, config: PoolConfig | None = None
    ) -> "ConnectionPool":
        return cls(functools.partial(connect, params), config, product_type=params.product_type)

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def product_type(self) -> ProductTypeEnum:
        return self._product_type

    @property
    def closed(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "ConnectionPool":
        """Pre-open ``min_size`` connections and start the background evictor."""
        with self._cond:
            if self._closing:
                raise PoolClosed("pool is closed")
            start = self._evictor is None
            if start:
                self._evictor = threading.Thread(
                    target=self._evict_loop, name="formstore-pool-evictor", daemon=True
                )
        self._replenish()
        if start:
            self._evictor.start()
            _log.info(
                "Connection pool opened (min=%d, max=%d)",
                self._config.min_size,
                self._config.max_size,
            )
        return self

    def shutdown(self, grace: float | None = None) -> None:
        """
        Stop handing out connections, wait up to *grace* seconds for leases to
        come back, then close everything. Safe to call more than once.
        """
        wait = self._config.shutdown_grace if grace is None else grace
        deadline = time.monotonic() + max(0.0, wait)
        with self._cond:
            if self._closed:
                return
            self._closing = True
            self._cond.notify_all()
            while self._in_use:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            outstanding = len(self._in_use)
            idle, self._idle = self._idle, []
            self._closed = True

        self._stop.set()
        evictor = self._evictor
        if evictor is not None and evictor.is_alive() and evictor is not threading.current_thread():
            evictor.join(timeout=1.0)
        for entry in idle:
            self._close_quiet(entry.conn)
        if outstanding:
            _log.warning(
                "Pool shut down with %d connection(s) still leased; they are closed on release",
                outstanding,
            )
        _log.info("Connection pool shut down (closed %d idle)", len(idle))

    def __enter__(self) -> "ConnectionPool":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, timeout: float | None = None) -> ConnectionHandle:
        """
        Lease a connection: an idle one if available, else a new one while under
        ``max_size``, else wait. Raises PoolExhausted after *timeout* seconds
        (default ``acquire_timeout``) and PoolClosed once shutdown has begun.
        """
        wait = self._config.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + max(0.0, wait)
        while True:
            entry = self._checkout(deadline, wait)
            if entry is None:
                entry = self._open_reserved()
            elif not self._usable(entry):
                self._discard(entry.conn)
                continue
            return self._lease(entry)

    def release(self, handle: ConnectionHandle, *, healthy: bool = True) -> None:
        """
        Return a lease. The connection is rolled back and parked in the idle set,
        or closed (and replaced up to ``min_size``) when it is invalidated,
        unhealthy, past ``max_lifetime``, or the pool is shutting down.
        """
        with self._cond:
            if handle._released:
                return
            handle._released = True
            self._in_use.pop(handle.lease_id, None)
            self._pending += 1
        conn = handle._conn
        reuse = (
            healthy
            and not handle._invalid
            and not self._closing
            and not self._expired(handle.created_at)
        )
        if reuse:
            try:
                conn.rollback()
            except Exception:
                _log.debug("Rollback on release failed; closing connection", exc_info=True)
                reuse = False
        if reuse:
            with self._cond:
                self._pending -= 1
                if not self._closing:
                    self._idle.append(_PoolEntry(conn, handle.created_at, time.monotonic()))
                    self._cond.notify_all()
                    _log.debug("Lease %s released", handle.lease_id)
                    return
                self._cond.notify_all()
            self._close_quiet(conn)
            return

        _log.debug("Lease %s released; closing connection", handle.lease_id)
        self._discard(conn)
        self._replenish()

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[ConnectionHandle]:
        """Acquire a handle for the duration of the block; always released."""
        handle = self.acquire(timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict(self) -> int:
        """
        Close idle connections past ``idle_timeout`` or ``max_lifetime``, reclaim
        leases past their ``expires_at`` and top the pool back up to ``min_size``.
        Returns the number of connections closed plus leases reclaimed.
        """
        now = time.monotonic()
        with self._cond:
            overdue = [
                h
                for h in self._in_use.values()
                if h.expires_at is not None and now >= h.expires_at
            ]
            keep: list[_PoolEntry] = []
            stale: list[_PoolEntry] = []
            for entry in self._idle:
                if (
                    now - entry.last_used > self._config.idle_timeout
                    or now - entry.created_at > self._config.max_lifetime
                ):
                    stale.append(entry)
                else:
                    keep.append(entry)
            self._idle = keep
            self._pending += len(stale)
        for entry in stale:
            self._close_quiet(entry.conn)
        if stale:
            with self._cond:
                self._pending -= len(stale)
                self._cond.notify_all()
            _log.info("Evicted %d stale idle connection(s)", len(stale))
        for handle in overdue:
            self._reclaim(handle)
        self._replenish()
        return len(stale) + len(overdue)

    def stats(self) -> dict[str, int]:
        """Return pool statistics for monitoring."""
        with self._cond:
            idle = len(self._idle)
            in_use = len(self._in_use)
            return {
                "max_size": self._config.max_size,
                "idle": idle,
                "in_use": in_use,
                "total": idle + in_use + self._pending,
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _total(self) -> int:
        return len(self._idle) + len(self._in_use) + self._pending

    def _checkout(self, deadline: float, wait: float) -> _PoolEntry | None:
        """Pop an idle entry, or reserve a slot for a new one (returns None)."""
        with self._cond:
            while True:
                if self._closing:
                    raise PoolClosed("pool is closed")
                if self._idle:
                    self._pending += 1
                    return self._idle.pop()
                if self._total() < self._config.max_size:
                    self._pending += 1
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PoolExhausted(
                        f"no connection available within {wait:.3f}s "
                        f"(max_size={self._config.max_size})"
                    )
                self._cond.wait(remaining)

    def _open_reserved(self) -> _PoolEntry:
        """Open a connection into a slot already reserved by _checkout."""
        try:
            conn = self._connect()
        except Exception as e:
            with self._cond:
                self._pending -= 1
                self._cond.notify_all()
            _log.warning("Opening a database connection failed: %s", e)
            raise classify_error(e, self._product_type) from e
        now = time.monotonic()
        return _PoolEntry(conn, now, now)

    def _lease(self, entry: _PoolEntry) -> ConnectionHandle:
        with self._cond:
            self._pending -= 1
            if self._closing:
                self._cond.notify_all()
                closing = True
            else:
                handle = ConnectionHandle(self, entry, next(self._lease_ids))
                self._in_use[handle.lease_id] = handle
                in_use = len(self._in_use)
                closing = False
        if closing:
            self._close_quiet(entry.conn)
            raise PoolClosed("pool is closed")
        _log.debug("Lease %s acquired (%d in use)", handle.lease_id, in_use)
        return handle

    def _usable(self, entry: _PoolEntry) -> bool:
        now = time.monotonic()
        if self._expired(entry.created_at):
            return False
        idle_sec = now - entry.last_used
        if idle_sec > self._config.idle_timeout:
            return False
        if idle_sec > self._config.ping_idle_threshold:
            return health_check(entry.conn, self._product_type)
        return True

    def _expired(self, created_at: float) -> bool:
        return (time.monotonic() - created_at) > self._config.max_lifetime

    def _discard(self, conn: Any) -> None:
        """Close a connection whose slot is counted in _pending and free the slot."""
        self._close_quiet(conn)
        with self._cond:
            self._pending -= 1
            self._cond.notify_all()

    def _renew(self, handle: ConnectionHandle) -> None:
        if handle._released:
            raise PoolError(f"connection lease {handle.lease_id} was already released")
        if self._closing:
            raise PoolClosed("pool is closed")
        self._close_quiet(handle._conn)
        try:
            conn = self._connect()
        except Exception as e:
            handle._invalid = True
            _log.warning("Reconnecting lease %s failed: %s", handle.lease_id, e)
            raise classify_error(e, self._product_type) from e
        handle._conn = conn
        handle.created_at = time.monotonic()
        handle._invalid = False
        _log.info("Lease %s reconnected", handle.lease_id)

    def _reclaim(self, handle: ConnectionHandle) -> None:
        """Take back a lease held past its deadline: notify the holder, then close it."""
        if handle.released:
            return
        _log.warning("Lease %s held past its deadline; reclaiming connection", handle.lease_id)
        handle.invalidate()
        callback = handle.on_reclaim
        if callback is not None:
            try:
                callback(handle)
            except Exception:
                _log.warning("Reclaim callback for lease %s failed", handle.lease_id, exc_info=True)
        self.release(handle, healthy=False)

    def _replenish(self) -> None:
        """Open connections until ``min_size`` is reached. Failures are logged only."""
        while True:
            with self._cond:
                if self._closing or self._total() >= self._config.min_size:
                    return
                self._pending += 1
            try:
                conn = self._connect()
            except Exception as e:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()
                _log.warning("Replacing pooled connection failed: %s", e)
                return
            now = time.monotonic()
            with self._cond:
                self._pending -= 1
                closing = self._closing
                if not closing:
                    self._idle.append(_PoolEntry(conn, now, now))
                self._cond.notify_all()
            if closing:
                self._close_quiet(conn)
                return

    def _evict_loop(self) -> None:
        while not self._stop.wait(self._config.eviction_interval):
            try:
                self.evict()
            except Exception:
                _log.warning("Eviction pass failed", exc_info=True)

    @staticmethod
    def _close_quiet(conn: Any) -> None:
        try:
            conn.close()
        except Exception:
            _log.debug("Closing connection failed", exc_info=True)
