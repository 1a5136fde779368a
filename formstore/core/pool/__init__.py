"""
Connection pool and driver glue for the relational store.

psycopg and pymysql are installed via pip; sqlite3 ships with Python.
"""

from .connect import classify_error, column_names, connect, execute
from .health import health_check, readiness_check
from .manager import ConnectionHandle, ConnectionPool, PoolConfig

__all__ = [
    "connect",
    "execute",
    "column_names",
    "classify_error",
    "health_check",
    "readiness_check",
    "ConnectionHandle",
    "ConnectionPool",
    "PoolConfig",
]
