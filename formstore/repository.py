"""
Generic CRUD + paging repository on top of Database / Session.

Subclasses declare the row schema and the statements; the base class runs them
in the right transactional shape:

- reads (find_one, find_all) use a short standalone lease;
- save/update/delete each run in one Session, so the existence check and the
  write observe the same transaction;
- find_all_page reads the page and the total count in one read-only Session.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar

from formstore.core.errors import QueryError, QueryErrorKind
from formstore.database import Database
from formstore.engines.mapper import Column, RowSchema
from formstore.engines.sql.statement import Statement
from formstore.engines.types import SqlType

_log = logging.getLogger(__name__)

ID = TypeVar("ID")
E = TypeVar("E")

_COUNT_SCHEMA = RowSchema((Column("count", SqlType.INTEGER),))


@dataclass(frozen=True)
class Pageable:
    """Zero-based page request."""

    page_number: int = 0
    page_size: int = 20

    def __post_init__(self) -> None:
        if self.page_number < 0:
            raise ValueError("page_number must be >= 0")
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")

    @property
    def offset(self) -> int:
        return self.page_number * self.page_size


@dataclass(frozen=True)
class Page(Generic[E]):
    elements: list[E] = field(default_factory=list)
    total: int = 0
    pageable: Pageable = field(default_factory=Pageable)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.pageable.page_size) if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.pageable.page_number + 1 < self.total_pages


class Repository(ABC, Generic[ID, E]):
    """
    CRUD repository for entities of type E identified by ID.

    - schema: RowSchema producing E from the rows of the find statements.
    - save_returns_row: save_statement yields the stored row (``RETURNING ...``),
      which is mapped and returned instead of the input entity.
    - validator: optional callable run on every entity before save/update.
    """

    schema: RowSchema
    save_returns_row: bool = False

    def __init__(self, database: Database, validator: Callable[[E], None] | None = None) -> None:
        self._db = database
        self._validator = validator

    # -- statements supplied by subclasses ---------------------------------

    @abstractmethod
    def find_one_statement(self, id: ID) -> Statement: ...

    @abstractmethod
    def find_all_statement(self) -> Statement: ...

    @abstractmethod
    def save_statement(self, entity: E) -> Statement: ...

    @abstractmethod
    def update_statement(self, entity: E) -> Statement: ...

    @abstractmethod
    def delete_statement(self, id: ID) -> Statement: ...

    def entity_id(self, entity: E) -> ID:
        return getattr(entity, "id")

    def page_statement(self, pageable: Pageable) -> Statement:
        base = self.find_all_statement()
        return Statement(
            f"{base.sql} LIMIT %s OFFSET %s",
            base.params + (pageable.page_size, pageable.offset),
            idempotent=True,
        )

    def count_statement(self) -> Statement:
        base = self.find_all_statement()
        return Statement(
            f"SELECT COUNT(*) FROM ({base.sql}) counted", base.params, idempotent=True
        )

    # -- operations ----------------------------------------------------------

    def find_one(self, id: ID) -> E | None:
        if id is None:
            raise ValueError("ID cannot be None")
        return self._db.query_one(self.find_one_statement(id), self.schema)

    def find_all(self) -> list[E]:
        return self._db.query(self.find_all_statement(), self.schema)

    def save(self, entity: E) -> E | None:
        """Insert *entity*. Returns None when a constraint (e.g. unique key) rejects it."""
        if entity is None:
            raise ValueError("Entity must not be None")
        self._validate(entity)
        try:
            with self._db.session() as session:
                if self.save_returns_row:
                    return session.query_one(self.save_statement(entity), self.schema)
                session.execute(self.save_statement(entity))
                return entity
        except QueryError as e:
            if e.kind == QueryErrorKind.CONSTRAINT_VIOLATION:
                _log.info("Save rejected by constraint: %s", e)
                return None
            raise

    def update(self, entity: E) -> E | None:
        """Update an existing entity. Returns None when it does not exist."""
        if entity is None:
            raise ValueError("Entity must not be None")
        self._validate(entity)
        with self._db.session() as session:
            existing = session.query_one(self.find_one_statement(self.entity_id(entity)), self.schema)
            if existing is None:
                session.rollback()
                return None
            session.execute(self.update_statement(entity))
        return entity

    def delete(self, id: ID) -> E | None:
        """Delete by id and return the deleted entity, or None when absent."""
        if id is None:
            raise ValueError("ID cannot be None")
        with self._db.session() as session:
            existing = session.query_one(self.find_one_statement(id), self.schema)
            if existing is None:
                session.rollback()
                return None
            session.execute(self.delete_statement(id))
        return existing

    def find_all_page(self, pageable: Pageable) -> Page[E]:
        with self._db.session(commit_on_exit=False) as session:
            total = session.query_one(self.count_statement(), _COUNT_SCHEMA)["count"]
            elements = session.query(self.page_statement(pageable), self.schema) if total else []
        return Page(elements=elements, total=total, pageable=pageable)

    def _validate(self, entity: E) -> None:
        if self._validator is not None:
            self._validator(entity)
