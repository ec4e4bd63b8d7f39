"""SQLAlchemy Core backend for ``Query`` filter trees."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy import Table, and_, delete, false, func, insert, or_, select, update
from sqlmodel import SQLModel

from tenantguard.storage.backends.base import QueryResult
from tenantguard.storage.query import (
    LIKE_ESCAPE,
    AnyOf,
    Eq,
    Filter,
    Gte,
    ILike,
    IsNull,
    Lte,
    NotNull,
    Query,
    comparable,
)

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement, MetaData
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SqlAlchemyBackend:
    """Runs queries against any async SQLAlchemy engine.

    Every call is bounded by ``timeout`` seconds; on expiry the pending
    statement is cancelled and ``TimeoutError`` propagates.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        metadata: MetaData | None = None,
        timeout: float | None = 10.0,
    ) -> None:
        self._engine = engine
        self._metadata = metadata if metadata is not None else SQLModel.metadata
        self._timeout = timeout

    def _table(self, name: str) -> Table:
        try:
            return self._metadata.tables[name]
        except KeyError:
            msg = f"Unknown table: {name}"
            raise LookupError(msg) from None

    def _clause(self, table: Table, node: Filter) -> ColumnElement[bool]:
        match node:
            case AnyOf(filters=children):
                if not children:
                    return false()
                return or_(*(self._clause(table, child) for child in children))
            case Eq(column=column, value=value):
                return table.c[column] == comparable(value)
            case IsNull(column=column):
                return table.c[column].is_(None)
            case NotNull(column=column):
                return table.c[column].is_not(None)
            case ILike(column=column, pattern=pattern):
                return table.c[column].ilike(pattern, escape=LIKE_ESCAPE)
            case Gte(column=column, value=value):
                return table.c[column] >= comparable(value)
            case Lte(column=column, value=value):
                return table.c[column] <= comparable(value)
        msg = f"Unsupported filter node: {node!r}"
        raise TypeError(msg)

    def _where(self, table: Table, query: Query) -> ColumnElement[bool] | None:
        clauses = [self._clause(table, f) for f in query.filters]
        return and_(*clauses) if clauses else None

    async def _bounded(self, call: Awaitable[T]) -> T:
        if self._timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self._timeout)

    @staticmethod
    def _values(table: Table, values: dict[str, Any]) -> dict[str, Any]:
        return {k: comparable(v) for k, v in values.items() if k in table.c}

    @staticmethod
    def _row(row: Mapping[str, Any]) -> dict[str, Any]:
        # SQLite hands timestamps back without tzinfo
        return {k: comparable(v) for k, v in row.items()}

    async def select(self, query: Query, *, count: bool = False, head: bool = False) -> QueryResult:
        return await self._bounded(self._select(query, count=count, head=head))

    async def _select(self, query: Query, *, count: bool, head: bool) -> QueryResult:
        table = self._table(query.table)
        where = self._where(table, query)
        async with self._engine.connect() as conn:
            total = await self._count(conn, table, where) if count else None
            if head:
                return QueryResult(data=[], count=total)

            cols = [table.c[c] for c in query.columns] if query.columns else [table]
            stmt = select(*cols)
            if where is not None:
                stmt = stmt.where(where)
            for order in query.ordering:
                col = table.c[order.column]
                stmt = stmt.order_by(col.asc() if order.ascending else col.desc())
            if query.offset:
                stmt = stmt.offset(query.offset)
            if query.limit is not None:
                stmt = stmt.limit(query.limit)
            rows = (await conn.execute(stmt)).mappings().all()
        return QueryResult(data=[self._row(r) for r in rows], count=total)

    @staticmethod
    async def _count(conn: AsyncConnection, table: Table, where: ColumnElement[bool] | None) -> int:
        stmt = select(func.count()).select_from(table)
        if where is not None:
            stmt = stmt.where(where)
        return int((await conn.execute(stmt)).scalar_one())

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return await self._bounded(self._insert(table, row))

    async def _insert(self, name: str, row: dict[str, Any]) -> dict[str, Any]:
        table = self._table(name)
        values = self._values(table, row)
        # The id is generated here so the inserted row can be read back
        if "id" in table.c:
            values.setdefault("id", str(uuid.uuid4()))
        now = datetime.now(UTC)
        for stamp in ("created_at", "updated_at"):
            if stamp in table.c:
                values.setdefault(stamp, now)

        async with self._engine.begin() as conn:
            await conn.execute(insert(table).values(**values))
            stored = (
                (await conn.execute(select(table).where(table.c.id == values["id"])))
                .mappings()
                .one()
            )
        return self._row(stored)

    async def update(self, query: Query, values: dict[str, Any]) -> list[dict[str, Any]]:
        return await self._bounded(self._update(query, values))

    async def _update(self, query: Query, values: dict[str, Any]) -> list[dict[str, Any]]:
        table = self._table(query.table)
        where = self._where(table, query)
        async with self._engine.begin() as conn:
            ids_stmt = select(table.c.id)
            if where is not None:
                ids_stmt = ids_stmt.where(where)
            ids = list((await conn.execute(ids_stmt)).scalars().all())
            if not ids:
                return []
            # The write keeps the caller's filters so a concurrent change of
            # tenant between the read and the write cannot widen the update.
            stmt = update(table).where(table.c.id.in_(ids))
            if where is not None:
                stmt = stmt.where(where)
            await conn.execute(stmt.values(**self._values(table, values)))
            rows = (
                (await conn.execute(select(table).where(table.c.id.in_(ids)))).mappings().all()
            )
        return [self._row(r) for r in rows]

    async def delete(self, query: Query) -> int:
        return await self._bounded(self._delete(query))

    async def _delete(self, query: Query) -> int:
        table = self._table(query.table)
        where = self._where(table, query)
        stmt = delete(table)
        if where is not None:
            stmt = stmt.where(where)
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        logger.debug("rows_deleted", table=query.table, count=result.rowcount)
        return result.rowcount or 0
