"""Storage backend contract used by the generic repository."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from tenantguard.storage.query import Query


@dataclass(slots=True)
class QueryResult:
    data: list[dict[str, Any]] = field(default_factory=list)
    count: int | None = None


class StorageBackend(Protocol):
    """A store that can interpret ``Query`` filter trees.

    Implementations raise on failure; they never encode errors in the
    returned value.
    """

    async def select(self, query: Query, *, count: bool = False, head: bool = False) -> QueryResult:
        """Return matching rows; ``count`` adds the unpaged total, ``head`` skips rows."""
        ...

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, query: Query, values: dict[str, Any]) -> list[dict[str, Any]]:
        """Apply ``values`` to every row matching ``query`` and return them."""
        ...

    async def delete(self, query: Query) -> int: ...
