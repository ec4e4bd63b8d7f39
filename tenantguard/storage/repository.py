"""Tenant-scoped generic repository.

Every query this class sends to a backend passes through ``_scoped``,
which appends the tenant filter (unless the acting principal is a
super-admin) and the soft-delete filter. Writes re-apply the same scope
on the write statement itself.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError

from tenantguard.auth.context import TenantContextResolver
from tenantguard.auth.policy import is_super_admin
from tenantguard.auth.validation import UNSET, scope_query
from tenantguard.exceptions import (
    ConflictError,
    NotFoundError,
    RepositoryError,
    ServiceError,
    TenantIsolationError,
    UnauthorizedError,
    ValidationError,
)
from tenantguard.models.domain import PaginatedResponse, QueryFilters
from tenantguard.storage.query import ILike, Query, camel_to_snake, contains_pattern, escape_like
from tenantguard.types import SortOrder

if TYPE_CHECKING:
    from tenantguard.auth.context import Principal
    from tenantguard.storage.backends.base import StorageBackend

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

FilterHandler = Callable[[Query, Any], Query]

DEFAULT_READ_ONLY_FIELDS = frozenset({"id", "tenant_id", "created_at", "created_by"})


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class SoftDeleteConfig:
    enabled: bool = True
    field: str = "deleted_at"


@dataclass(slots=True)
class RepositoryConfig(Generic[T]):
    """Static description of one table and how rows map to entities."""

    table: str
    mapper: Callable[[dict[str, Any]], T]
    reverse_mapper: Callable[[Mapping[str, Any]], dict[str, Any]] | None = None
    resource: str | None = None
    tenant_scoped: bool = True
    soft_delete: SoftDeleteConfig = field(default_factory=SoftDeleteConfig)
    search_fields: tuple[str, ...] = ()
    default_sort: str = "created_at"
    default_sort_order: SortOrder = SortOrder.DESC
    # Columns a caller may sort by; ``None`` allows the audit columns and search fields
    sortable_fields: tuple[str, ...] | None = None
    read_only_fields: frozenset[str] = DEFAULT_READ_ONLY_FIELDS
    filter_handlers: Mapping[str, FilterHandler] = field(default_factory=dict)
    select_fields: tuple[str, ...] | None = None
    tenant_column: str = "tenant_id"

    @property
    def resource_name(self) -> str:
        return self.resource or self.table

    def sort_columns(self) -> frozenset[str]:
        if self.sortable_fields is not None:
            return frozenset((*self.sortable_fields, self.default_sort))
        return frozenset(
            ("id", "created_at", "updated_at", self.default_sort, *self.search_fields)
        )


class GenericRepository(Generic[T]):
    """CRUD over one table with tenant and soft-delete scoping on every query.

    Each public method resolves the acting principal once (or takes it via
    ``principal=``) and threads it through the whole operation.
    """

    def __init__(
        self,
        backend: StorageBackend,
        config: RepositoryConfig[T],
        resolver: TenantContextResolver | None = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._resolver = resolver or TenantContextResolver()

    @property
    def config(self) -> RepositoryConfig[T]:
        return self._config

    @property
    def resource(self) -> str:
        return self._config.resource_name

    # -- public operations -------------------------------------------------

    async def find_many(
        self, filters: QueryFilters | None = None, *, principal: Principal | None = UNSET
    ) -> PaginatedResponse[T]:
        filters = filters or QueryFilters()
        actor = await self._principal(principal)
        query = self._filtered(self._scoped(self._base(), actor), filters)

        sort_by = self._sort_column(filters.sort_by)
        order = filters.sort_order or self._config.default_sort_order
        offset = (filters.page - 1) * filters.page_size
        query = query.order(sort_by, ascending=order == SortOrder.ASC).range(
            offset, offset + filters.page_size - 1
        )

        result = await self._call(
            self._backend.select(query, count=True),
            f"Failed to fetch {self.resource}",
        )
        return PaginatedResponse(
            data=[self._config.mapper(row) for row in result.data],
            total=result.count if result.count is not None else len(result.data),
            page=filters.page,
            page_size=filters.page_size,
        )

    async def find_by_id(self, record_id: str, *, principal: Principal | None = UNSET) -> T:
        actor = await self._principal(principal)
        return self._config.mapper(await self._fetch_row(record_id, actor))

    async def create(self, data: Mapping[str, Any], *, principal: Principal | None = UNSET) -> T:
        actor = await self._principal(principal)
        if actor is None:
            raise UnauthorizedError("Authentication required")

        row = self._to_row(data)
        if self._config.tenant_scoped:
            row[self._config.tenant_column] = self._stamp_tenant(
                actor, row.get(self._config.tenant_column)
            )
        row["created_by"] = actor.id
        if "updated_by" not in self._config.read_only_fields:
            row["updated_by"] = actor.id

        stored = await self._call(
            self._backend.insert(self._config.table, row),
            f"Failed to create {self.resource}",
        )
        logger.info(
            "record_created",
            resource=self.resource,
            id=stored.get("id"),
            tenant_id=stored.get(self._config.tenant_column),
        )
        return self._config.mapper(stored)

    async def update(
        self, record_id: str, data: Mapping[str, Any], *, principal: Principal | None = UNSET
    ) -> T:
        actor = await self._principal(principal)
        await self._fetch_row(record_id, actor)

        values = {
            k: v
            for k, v in self._to_row(data).items()
            if k not in self._config.read_only_fields and k != self._config.tenant_column
        }
        values["updated_at"] = _now()
        if actor is not None and "updated_by" not in self._config.read_only_fields:
            values["updated_by"] = actor.id

        query = self._scoped(self._base().eq("id", record_id), actor)
        rows = await self._call(
            self._backend.update(query, values),
            f"Failed to update {self.resource}",
            id=record_id,
        )
        if not rows:
            # Row vanished or changed tenant between the check and the write
            raise NotFoundError(self.resource, record_id)
        return self._config.mapper(rows[0])

    async def delete(self, record_id: str, *, principal: Principal | None = UNSET) -> None:
        actor = await self._principal(principal)
        await self._fetch_row(record_id, actor)

        query = self._tenant_only(self._base().eq("id", record_id), actor)
        soft = self._config.soft_delete
        if soft.enabled:
            values: dict[str, Any] = {soft.field: _now(), "updated_at": _now()}
            if actor is not None and "updated_by" not in self._config.read_only_fields:
                values["updated_by"] = actor.id
            await self._call(
                self._backend.update(query, values),
                f"Failed to soft delete {self.resource}",
                id=record_id,
            )
        else:
            await self._call(
                self._backend.delete(query),
                f"Failed to delete {self.resource}",
                id=record_id,
            )
        logger.info("record_deleted", resource=self.resource, id=record_id, soft=soft.enabled)

    async def restore(self, record_id: str, *, principal: Principal | None = UNSET) -> T:
        """Clear the soft-delete marker on a row the caller can see."""
        soft = self._config.soft_delete
        if not soft.enabled:
            raise ValidationError(f"{self.resource} does not support restore")
        actor = await self._principal(principal)

        query = self._tenant_only(self._base().eq("id", record_id), actor).not_null(soft.field)
        values: dict[str, Any] = {soft.field: None, "updated_at": _now()}
        if actor is not None and "updated_by" not in self._config.read_only_fields:
            values["updated_by"] = actor.id
        rows = await self._call(
            self._backend.update(query, values),
            f"Failed to restore {self.resource}",
            id=record_id,
        )
        if not rows:
            raise NotFoundError(self.resource, record_id)
        logger.info("record_restored", resource=self.resource, id=record_id)
        return self._config.mapper(rows[0])

    async def count(
        self, filters: QueryFilters | None = None, *, principal: Principal | None = UNSET
    ) -> int:
        actor = await self._principal(principal)
        query = self._filtered(self._scoped(self._base(), actor), filters or QueryFilters())
        result = await self._call(
            self._backend.select(query, count=True, head=True),
            f"Failed to count {self.resource}",
        )
        return result.count or 0

    async def exists(self, record_id: str, *, principal: Principal | None = UNSET) -> bool:
        actor = await self._principal(principal)
        query = self._scoped(self._base().eq("id", record_id), actor)
        result = await self._call(
            self._backend.select(query, count=True, head=True),
            f"Failed to check {self.resource} existence",
            id=record_id,
        )
        return bool(result.count)

    # -- query pipeline ----------------------------------------------------

    async def _principal(self, principal: Principal | None) -> Principal | None:
        if principal is UNSET:
            return await self._resolver.resolve()
        return principal

    def _base(self) -> Query:
        return Query(self._config.table).select(*(self._config.select_fields or ()))

    def _tenant_only(self, query: Query, actor: Principal | None) -> Query:
        if not self._config.tenant_scoped:
            return query
        return scope_query(query, actor, self.resource, self._config.tenant_column)

    def _scoped(self, query: Query, actor: Principal | None) -> Query:
        query = self._tenant_only(query, actor)
        if self._config.soft_delete.enabled:
            query = query.is_null(self._config.soft_delete.field)
        return query

    def _sort_column(self, requested: str | None) -> str:
        if not requested:
            return self._config.default_sort
        column = camel_to_snake(requested)
        allowed = self._config.sort_columns()
        if column not in allowed:
            choices = ", ".join(sorted(allowed))
            message = f"Sort field must be one of: {choices}"
            raise ValidationError.from_fields({"sort_by": [message]})
        return column

    def _filtered(self, query: Query, filters: QueryFilters) -> Query:
        if filters.search and self._config.search_fields:
            pattern = contains_pattern(filters.search)
            query = query.or_(*(ILike(f, pattern) for f in self._config.search_fields))
        if filters.status:
            query = query.ilike("status", escape_like(filters.status))
        if filters.date_from:
            query = query.gte("created_at", filters.date_from)
        if filters.date_to:
            query = query.lte("created_at", filters.date_to)
        if filters.created_by:
            query = query.eq("created_by", filters.created_by)
        if filters.assigned_to:
            query = query.eq("assigned_to", filters.assigned_to)
        for key, handler in self._config.filter_handlers.items():
            value = filters.value_of(key)
            if value is not None:
                query = handler(query, value)
        return query

    async def _fetch_row(self, record_id: str, actor: Principal | None) -> dict[str, Any]:
        query = self._scoped(self._base().eq("id", record_id), actor)
        result = await self._call(
            self._backend.select(query),
            f"Failed to fetch {self.resource} by ID",
            id=record_id,
        )
        if not result.data:
            raise NotFoundError(self.resource, record_id)
        return result.data[0]

    def _to_row(self, data: Mapping[str, Any]) -> dict[str, Any]:
        if self._config.reverse_mapper is not None:
            return dict(self._config.reverse_mapper(data))
        return dict(data)

    def _stamp_tenant(self, actor: Principal, provided: str | None) -> str:
        if is_super_admin(actor):
            tenant_id = provided or actor.tenant_id
            if not tenant_id:
                raise ValidationError.from_fields({"tenant_id": ["A tenant is required"]})
            return tenant_id
        if not actor.tenant_id:
            logger.warning("create_without_tenant_denied", user_id=actor.id, resource=self.resource)
            raise TenantIsolationError("Access denied", self.resource)
        if provided and provided != actor.tenant_id:
            logger.warning(
                "tenant_override_ignored",
                user_id=actor.id,
                resource=self.resource,
                requested_tenant=provided,
            )
        return actor.tenant_id

    async def _call(self, call: Awaitable[R], message: str, **details: Any) -> R:
        try:
            return await call
        except ServiceError:
            raise
        except IntegrityError as exc:
            logger.warning("storage_conflict", resource=self.resource, **details)
            original = exc.orig if exc.orig is not None else exc
            raise ConflictError(
                "Resource already exists", {**details, "originalError": str(original)}
            ) from exc
        except TimeoutError as exc:
            logger.error("storage_timeout", resource=self.resource, **details)
            raise RepositoryError(f"{message}: storage timed out", exc, details) from exc
        except Exception as exc:
            logger.exception("storage_call_failed", resource=self.resource, **details)
            raise RepositoryError(message, exc, details) from exc

