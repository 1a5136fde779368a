"""
Connection health checks for pooled connections and readiness checks.
"""

import logging
from typing import TYPE_CHECKING, Any

from formstore.core.errors import FormstoreError
from formstore.models import ProductTypeEnum

from .connect import execute

if TYPE_CHECKING:
    from .manager import ConnectionPool

_log = logging.getLogger(__name__)


def health_check(conn: Any, product_type: ProductTypeEnum) -> bool:
    """
    Run SELECT 1 and return True if no exception. All supported products accept SELECT 1.
    """
    cur = None
    try:
        cur = execute(conn, "SELECT 1", product_type=product_type)
        cur.fetchone()
        return True
    except Exception:
        return False
    finally:
        if cur is not None:
            try:
                cur.close()
            except Exception:
                pass


def readiness_check(pool: "ConnectionPool", timeout: float | None = 5.0) -> tuple[bool, list[str]]:
    """
    Borrow a connection and ping it.
    Returns (ok, list of failure messages) so callers can show why the store is unavailable.
    """
    failures: list[str] = []
    try:
        with pool.connection(timeout=timeout) as handle:
            if not health_check(handle.connection, pool.product_type):
                handle.invalidate()
                failures.append("ping_failed")
    except FormstoreError as e:
        _log.warning("Readiness check failed: %s", e)
        failures.append(type(e).__name__)
    return (len(failures) == 0, failures)
