"""Composable query description interpreted by storage backends.

A ``Query`` is an immutable value: each builder call returns a new query
with one more filter, ordering or range clause. Backends translate the
filter nodes into their own dialect, which keeps tenant scoping testable
without a database.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
LIKE_ESCAPE = "\\"


@dataclass(frozen=True, slots=True)
class Eq:
    column: str
    value: Any


@dataclass(frozen=True, slots=True)
class IsNull:
    column: str


@dataclass(frozen=True, slots=True)
class NotNull:
    column: str


@dataclass(frozen=True, slots=True)
class ILike:
    """Case-insensitive SQL ``LIKE`` match (``%`` and ``_`` wildcards)."""

    column: str
    pattern: str


@dataclass(frozen=True, slots=True)
class Gte:
    column: str
    value: Any


@dataclass(frozen=True, slots=True)
class Lte:
    column: str
    value: Any


@dataclass(frozen=True, slots=True)
class AnyOf:
    """OR-group: matches when at least one child filter matches."""

    filters: tuple[Filter, ...]


Filter = Eq | IsNull | NotNull | ILike | Gte | Lte | AnyOf


@dataclass(frozen=True, slots=True)
class OrderBy:
    column: str
    ascending: bool = True


@dataclass(frozen=True, slots=True)
class Query:
    table: str
    filters: tuple[Filter, ...] = ()
    ordering: tuple[OrderBy, ...] = ()
    offset: int | None = None
    limit: int | None = None
    columns: tuple[str, ...] | None = None

    def where(self, *filters: Filter) -> Query:
        return replace(self, filters=self.filters + filters)

    def eq(self, column: str, value: Any) -> Query:
        return self.where(Eq(column, value))

    def is_null(self, column: str) -> Query:
        return self.where(IsNull(column))

    def not_null(self, column: str) -> Query:
        return self.where(NotNull(column))

    def ilike(self, column: str, pattern: str) -> Query:
        return self.where(ILike(column, pattern))

    def gte(self, column: str, value: Any) -> Query:
        return self.where(Gte(column, value))

    def lte(self, column: str, value: Any) -> Query:
        return self.where(Lte(column, value))

    def or_(self, *filters: Filter) -> Query:
        if not filters:
            return self
        return self.where(AnyOf(tuple(filters)))

    def order(self, column: str, *, ascending: bool = True) -> Query:
        return replace(self, ordering=self.ordering + (OrderBy(column, ascending),))

    def range(self, start: int, end: int) -> Query:
        """Restrict to rows ``start``..``end`` inclusive (zero based)."""
        return replace(self, offset=start, limit=max(0, end - start + 1))

    def select(self, *columns: str) -> Query:
        return replace(self, columns=columns or None)

    def unpaged(self) -> Query:
        return replace(self, offset=None, limit=None, ordering=())


def camel_to_snake(name: str) -> str:
    """``createdAt`` -> ``created_at``; snake_case input is returned as is."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so ``term`` matches literally."""
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def contains_pattern(term: str) -> str:
    return f"%{escape_like(term)}%"


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a LIKE pattern (with backslash escapes) to a regex."""
    out: list[str] = []
    escaped = False
    for ch in pattern:
        if escaped:
            out.append(re.escape(ch))
            escaped = False
        elif ch == LIKE_ESCAPE:
            escaped = True
        elif ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return re.compile("^" + "".join(out) + "$", re.IGNORECASE | re.DOTALL)


def comparable(value: Any) -> Any:
    """Normalise datetimes to aware UTC; naive values are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value
