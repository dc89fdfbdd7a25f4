"""
Order Pipeline — Order store gateway

Row-level select / insert / update against the order tables, always handing
the affected rows back as plain dicts (SQL RETURNING) so callers can derive
follow-up values from what was actually written.

Filters are a mapping of column name to:
  scalar           → column = value
  list/tuple/set   → column IN (...)
  None             → column IS NULL
  gte(value)       → column >= value
  not_in(values)   → column NOT IN (...)
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Mapping

from sqlalchemy import Table, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from orderflow.core.retry import TRANSIENT_DB_ERRORS, with_store_retry
from orderflow.db.database import Base
from orderflow.models import notification, order  # noqa: F401  (registers tables)

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class StoreError(Exception):
    NOT_FOUND = "not_found"
    DUPLICATE_KEY = "duplicate_key"
    PERMISSION_DENIED = "permission_denied"
    CONSTRAINT = "constraint"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    def __init__(self, message: str, code: str = UNKNOWN, table: str | None = None):
        super().__init__(message)
        self.code = code
        self.table = table


@dataclass(frozen=True)
class gte:
    value: Any


@dataclass(frozen=True)
class not_in:
    values: tuple

    def __init__(self, values: Iterable[Any]):
        object.__setattr__(self, "values", tuple(values))


def _table(name: str) -> Table:
    try:
        return Base.metadata.tables[name]
    except KeyError:
        raise StoreError(f"Unknown table '{name}'", StoreError.NOT_FOUND, name) from None


def _where(table: Table, filters: Mapping[str, Any] | None) -> list:
    clauses = []
    for name, value in (filters or {}).items():
        column = table.c[name]
        if isinstance(value, gte):
            clauses.append(column >= value.value)
        elif isinstance(value, not_in):
            clauses.append(column.not_in(value.values))
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(column.in_(list(value)))
        elif value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == value)
    return clauses


def _translate(exc: SQLAlchemyError, table: str) -> StoreError:
    """Map a driver/ORM failure to a StoreError code."""
    text = str(getattr(exc, "orig", None) or exc).lower()
    sqlstate = getattr(getattr(exc, "orig", None), "sqlstate", None) or getattr(
        getattr(exc, "orig", None), "pgcode", None
    )
    if isinstance(exc, IntegrityError):
        if sqlstate == "23505" or "unique" in text or "duplicate" in text:
            return StoreError(f"Duplicate key on {table}: {text}", StoreError.DUPLICATE_KEY, table)
        return StoreError(f"Constraint violation on {table}: {text}", StoreError.CONSTRAINT, table)
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return StoreError(f"Order store unavailable: {text}", StoreError.UNAVAILABLE, table)
    if isinstance(exc, DBAPIError) and (sqlstate == "42501" or "permission denied" in text):
        return StoreError(f"Permission denied on {table}", StoreError.PERMISSION_DENIED, table)
    return StoreError(f"Store call on {table} failed: {text}", StoreError.UNKNOWN, table)


class _RowGateway:
    """Shared statement building; subclasses decide where statements run."""

    def _connect(self):
        raise NotImplementedError

    async def _execute(self, stmt, params=None) -> list[Row]:
        async with self._connect() as conn:
            if params is None:
                result = await conn.execute(stmt)
            else:
                result = await conn.execute(stmt, params)
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

    async def _run(self, table_name: str, stmt, params=None) -> list[Row]:
        try:
            return await self._execute(stmt, params)
        except SQLAlchemyError as exc:
            error = _translate(exc, table_name)
            logger.error("Store error [%s] on %s: %s", error.code, table_name, error)
            raise error from exc

    async def select(
        self,
        table_name: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        for_update: bool = False,
    ) -> list[Row]:
        table = _table(table_name)
        stmt = select(table).where(*_where(table, filters))
        if order_by:
            column = table.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if for_update:
            stmt = stmt.with_for_update()
        return await self._run(table_name, stmt)

    async def insert(self, table_name: str, rows: list[Mapping[str, Any]]) -> list[Row]:
        if not rows:
            return []
        table = _table(table_name)
        stmt = insert(table).returning(*table.c)
        return await self._run(table_name, stmt, [dict(r) for r in rows])

    async def update(
        self,
        table_name: str,
        filters: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> list[Row]:
        if not filters:
            raise StoreError("Refusing unfiltered update", StoreError.CONSTRAINT, table_name)
        table = _table(table_name)
        stmt = (
            update(table)
            .where(*_where(table, filters))
            .values(**patch)
            .returning(*table.c)
        )
        return await self._run(table_name, stmt)


class StoreTransaction(_RowGateway):
    """Gateway bound to one open database transaction."""

    def __init__(self, conn: AsyncConnection):
        self._conn = conn

    @asynccontextmanager
    async def _connect(self):
        yield self._conn


class OrderStore(_RowGateway):
    """
    Each call runs in its own short transaction and retries transient
    connectivity errors. Use transaction() to group calls atomically.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    def _connect(self):
        return self._engine.begin()

    @with_store_retry()
    async def _execute(self, stmt, params=None) -> list[Row]:
        return await super()._execute(stmt, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        try:
            async with self._engine.begin() as conn:
                yield StoreTransaction(conn)
        except SQLAlchemyError as exc:
            # commit-time failures surface here rather than inside a call
            error = _translate(exc, "transaction")
            raise error from exc

    async def ping(self) -> None:
        async with self._engine.connect() as conn:
            await conn.exec_driver_sql("SELECT 1")
