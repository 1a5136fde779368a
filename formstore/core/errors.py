"""
Error taxonomy for the data-access layer.

Every error raised to callers derives from FormstoreError. Driver exceptions are
never surfaced directly: they are classified into QueryError and chained.
"""

from __future__ import annotations

from enum import Enum


class FormstoreError(Exception):
    """Base class for all errors raised by formstore."""

    pass


class ConfigInvalid(FormstoreError, ValueError):
    """Raised when required settings are absent or out of range."""

    pass


class PoolError(FormstoreError):
    """Base class for connection pool errors."""

    pass


class PoolExhausted(PoolError):
    """No connection became available before the acquire deadline."""

    pass


class PoolClosed(PoolError):
    """The pool has been shut down (or is shutting down)."""

    pass


class ParameterMismatch(FormstoreError, ValueError):
    """Statement parameters do not match its placeholders (count or type tag)."""

    pass


class MappingError(FormstoreError, ValueError):
    """A result row does not fit the declared row schema."""

    pass


class SessionStateError(FormstoreError, RuntimeError):
    """Operation not allowed in the session's current state."""

    pass


class ResultConsumed(FormstoreError, RuntimeError):
    """A forward-only result set was iterated a second time."""

    pass


class QueryErrorKind(str, Enum):
    """Classification of driver failures."""

    SYNTAX_INVALID = "syntax_invalid"
    CONSTRAINT_VIOLATION = "constraint_violation"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    SERIALIZATION_CONFLICT = "serialization_conflict"
    DRIVER = "driver"


_TRANSIENT_KINDS = frozenset(
    {QueryErrorKind.CONNECTION_LOST, QueryErrorKind.SERIALIZATION_CONFLICT}
)

# Kinds after which the connection state is unknown and must not be reused.
_INVALIDATING_KINDS = frozenset({QueryErrorKind.CONNECTION_LOST, QueryErrorKind.TIMEOUT})


class QueryError(FormstoreError):
    """Classified statement failure. ``kind`` is a QueryErrorKind."""

    def __init__(self, kind: QueryErrorKind, message: str, *, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.sqlstate = sqlstate

    @property
    def transient(self) -> bool:
        """True when re-running the whole operation may succeed."""
        return self.kind in _TRANSIENT_KINDS

    @property
    def invalidates_connection(self) -> bool:
        return self.kind in _INVALIDATING_KINDS

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"

    def __repr__(self) -> str:
        return f"QueryError(kind={self.kind.value!r}, message={super().__str__()!r})"
