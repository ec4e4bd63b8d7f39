"""In-memory storage backend (SQL-backed version in production)."""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

import structlog

from tenantguard.storage.backends.base import QueryResult
from tenantguard.storage.query import (
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
    like_to_regex,
)

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def matches(row: dict[str, Any], node: Filter) -> bool:
    """Evaluate one filter node against a row; missing columns read as NULL."""
    if isinstance(node, AnyOf):
        return any(matches(row, child) for child in node.filters)
    value = row.get(node.column)
    if isinstance(node, Eq):
        return value is not None and comparable(value) == comparable(node.value)
    if isinstance(node, IsNull):
        return value is None
    if isinstance(node, NotNull):
        return value is not None
    if isinstance(node, ILike):
        return value is not None and bool(like_to_regex(node.pattern).match(str(value)))
    if value is None:
        return False
    if isinstance(node, Gte):
        return comparable(value) >= comparable(node.value)
    if isinstance(node, Lte):
        return comparable(value) <= comparable(node.value)
    msg = f"Unsupported filter node: {node!r}"
    raise TypeError(msg)


class InMemoryBackend:
    """Dict-backed store for local development and tests.

    Rows are copied on the way in and out so callers can never mutate
    stored state by accident.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Unscoped raw rows; for fixtures and assertions only."""
        with self._lock:
            return [copy.deepcopy(r) for r in self._tables.get(table, {}).values()]

    def seed(self, table: str, rows: list[dict[str, Any]]) -> None:
        with self._lock:
            store = self._tables.setdefault(table, {})
            for row in rows:
                stored = self._with_defaults(row)
                store[stored["id"]] = stored

    def _with_defaults(self, row: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        now = _now()
        stored.setdefault("created_at", now)
        stored.setdefault("updated_at", now)
        return stored

    def _matching(self, query: Query) -> list[dict[str, Any]]:
        rows = self._tables.get(query.table, {}).values()
        return [r for r in rows if all(matches(r, f) for f in query.filters)]

    async def select(self, query: Query, *, count: bool = False, head: bool = False) -> QueryResult:
        with self._lock:
            found = self._matching(query)
            total = len(found) if count else None
            if head:
                return QueryResult(data=[], count=total)
            for order in reversed(query.ordering):
                found.sort(
                    key=lambda r, c=order.column: (r.get(c) is None, comparable(r.get(c))),
                    reverse=not order.ascending,
                )
            start = query.offset or 0
            end = start + query.limit if query.limit is not None else None
            page = found[start:end]
            if query.columns:
                page = [{c: r.get(c) for c in query.columns} for r in page]
            return QueryResult(data=copy.deepcopy(page), count=total)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            stored = self._with_defaults(row)
            self._tables.setdefault(table, {})[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def update(self, query: Query, values: dict[str, Any]) -> list[dict[str, Any]]:
        with self._lock:
            found = self._matching(query)
            for row in found:
                row.update(copy.deepcopy(values))
            return copy.deepcopy(found)

    async def delete(self, query: Query) -> int:
        with self._lock:
            found = self._matching(query)
            table = self._tables.get(query.table, {})
            for row in found:
                table.pop(row["id"], None)
            if found:
                logger.debug("rows_deleted", table=query.table, count=len(found))
            return len(found)
