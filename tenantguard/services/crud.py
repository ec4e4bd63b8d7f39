"""Generic CRUD service with a fixed lifecycle-hook pipeline.

Order per operation::

    get_all    before_get_all -> find_many -> after_get_all
    get_by_id  before_get_by_id -> find_by_id -> gateway -> check_read_authorization
               -> after_get_by_id
    create     gateway -> validate_create -> before_create -> create -> after_create
               -> on_created (background)
    update     find_by_id -> gateway -> check_update_authorization -> validate_update
               -> before_update -> update -> after_update -> on_updated (background)
    delete     find_by_id -> gateway -> check_delete_authorization -> before_delete
               -> delete -> after_delete -> on_deleted (background)

Every failure is logged and normalised by ``ErrorHandler`` before it
leaves the service. Event hooks run as background tasks; their failures
are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Coroutine, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from tenantguard.auth.context import TenantContextResolver
from tenantguard.auth.validation import UNSET
from tenantguard.exceptions import ValidationError
from tenantguard.models.domain import (
    BatchDeleteFailure,
    BatchDeleteResult,
    PaginatedResponse,
    QueryFilters,
)
from tenantguard.services.errors import ErrorHandler
from tenantguard.types import Operation

if TYPE_CHECKING:
    from tenantguard.auth.context import Principal
    from tenantguard.auth.validation import TenantValidationGateway
    from tenantguard.storage.repository import GenericRepository

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class FieldConstraint:
    min_length: int | None = None
    max_length: int | None = None
    min: float | None = None
    max: float | None = None
    pattern: re.Pattern[str] | None = None
    pattern_message: str | None = None
    validator: Callable[[Any], str | None] | None = None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return dict(vars(value))


def _tenant_of(entity: Any, column: str = "tenant_id") -> str | None:
    if isinstance(entity, Mapping):
        return entity.get(column)
    return getattr(entity, column, None)


def _id_of(entity: Any) -> str | None:
    if isinstance(entity, Mapping):
        return entity.get("id")
    return getattr(entity, "id", None)


class CrudHooks(Generic[T]):
    """Lifecycle hooks; every hook is a no-op until a subclass overrides it.

    Hooks receive the principal resolved once for the enclosing operation.
    Raising from any hook other than the ``on_*`` events aborts the
    operation.
    """

    async def before_get_all(self, filters: QueryFilters, principal: Principal | None) -> None:
        pass

    async def after_get_all(
        self, result: PaginatedResponse[T], principal: Principal | None
    ) -> None:
        pass

    async def before_get_by_id(self, record_id: str, principal: Principal | None) -> None:
        pass

    async def after_get_by_id(self, entity: T, principal: Principal | None) -> None:
        pass

    async def validate_create(self, data: dict[str, Any], principal: Principal | None) -> None:
        pass

    async def before_create(self, data: dict[str, Any], principal: Principal | None) -> None:
        pass

    async def after_create(self, entity: T, principal: Principal | None) -> None:
        pass

    async def on_created(self, entity: T) -> None:
        pass

    async def validate_update(
        self, record_id: str, data: dict[str, Any], principal: Principal | None
    ) -> None:
        pass

    async def before_update(
        self, existing: T, data: dict[str, Any], principal: Principal | None
    ) -> None:
        pass

    async def after_update(self, entity: T, principal: Principal | None) -> None:
        pass

    async def on_updated(self, before: T, after: T) -> None:
        pass

    async def before_delete(self, entity: T, principal: Principal | None) -> None:
        pass

    async def after_delete(self, entity: T, principal: Principal | None) -> None:
        pass

    async def on_deleted(self, entity: T) -> None:
        pass

    async def before_batch_delete(self, ids: Sequence[str], principal: Principal | None) -> None:
        pass

    async def after_batch_delete(
        self, result: BatchDeleteResult, principal: Principal | None
    ) -> None:
        pass

    async def check_read_authorization(self, entity: T, principal: Principal | None) -> None:
        pass

    async def check_update_authorization(self, entity: T, principal: Principal | None) -> None:
        pass

    async def check_delete_authorization(self, entity: T, principal: Principal | None) -> None:
        pass


class GenericCrudService(CrudHooks[T]):
    """Service layer over a ``GenericRepository``.

    Subclasses override hooks from ``CrudHooks``. When a gateway is
    supplied, record access and tenant assignment are also validated (and
    audited) by it on every single-record path.
    """

    def __init__(
        self,
        repository: GenericRepository[T],
        gateway: TenantValidationGateway | None = None,
        resolver: TenantContextResolver | None = None,
    ) -> None:
        self.repository = repository
        self._gateway = gateway
        self._resolver = resolver or TenantContextResolver()
        self._tenant_column = repository.config.tenant_column
        self._events: set[asyncio.Task[None]] = set()

    @property
    def resource(self) -> str:
        return self.repository.resource

    # -- operations --------------------------------------------------------

    async def get_all(
        self, filters: QueryFilters | None = None, *, principal: Principal | None = UNSET
    ) -> PaginatedResponse[T]:
        filters = filters or QueryFilters()
        with self._boundary("get_all", filters=filters.model_dump(exclude_none=True)):
            actor = await self._principal(principal)
            await self.before_get_all(filters, actor)
            result = await self.repository.find_many(filters, principal=actor)
            await self.after_get_all(result, actor)
            return result

    async def get_by_id(self, record_id: str, *, principal: Principal | None = UNSET) -> T:
        with self._boundary("get_by_id", id=record_id):
            actor = await self._principal(principal)
            await self.before_get_by_id(record_id, actor)
            entity = await self.repository.find_by_id(record_id, principal=actor)
            await self._check_access(entity, Operation.GET, record_id, actor)
            await self.check_read_authorization(entity, actor)
            await self.after_get_by_id(entity, actor)
            return entity

    async def create(self, data: Mapping[str, Any], *, principal: Principal | None = UNSET) -> T:
        payload = dict(data)
        with self._boundary("create", fields=sorted(payload)):
            actor = await self._principal(principal)
            if self._gateway is not None and self.repository.config.tenant_scoped:
                await self._gateway.validate_tenant_for_operation(
                    payload.get(self._tenant_column), Operation.POST, self.resource, principal=actor
                )
            await self.validate_create(payload, actor)
            await self.before_create(payload, actor)
            entity = await self.repository.create(payload, principal=actor)
            await self.after_create(entity, actor)
            self._fire("on_created", self.on_created(entity))
            return entity

    async def update(
        self, record_id: str, data: Mapping[str, Any], *, principal: Principal | None = UNSET
    ) -> T:
        payload = dict(data)
        with self._boundary("update", id=record_id, fields=sorted(payload)):
            actor = await self._principal(principal)
            existing = await self.repository.find_by_id(record_id, principal=actor)
            await self._check_access(existing, Operation.PATCH, record_id, actor)
            await self.check_update_authorization(existing, actor)
            await self.validate_update(record_id, payload, actor)
            await self.before_update(existing, payload, actor)
            updated = await self.repository.update(record_id, payload, principal=actor)
            await self.after_update(updated, actor)
            self._fire("on_updated", self.on_updated(existing, updated))
            return updated

    async def delete(self, record_id: str, *, principal: Principal | None = UNSET) -> None:
        with self._boundary("delete", id=record_id):
            actor = await self._principal(principal)
            await self._delete_one(record_id, actor)

    async def count(
        self, filters: QueryFilters | None = None, *, principal: Principal | None = UNSET
    ) -> int:
        with self._boundary("count"):
            actor = await self._principal(principal)
            return await self.repository.count(filters, principal=actor)

    async def exists(self, record_id: str, *, principal: Principal | None = UNSET) -> bool:
        with self._boundary("exists", id=record_id):
            actor = await self._principal(principal)
            return await self.repository.exists(record_id, principal=actor)

    async def restore(self, record_id: str, *, principal: Principal | None = UNSET) -> T:
        with self._boundary("restore", id=record_id):
            actor = await self._principal(principal)
            return await self.repository.restore(record_id, principal=actor)

    async def batch_delete(
        self, ids: Sequence[str], *, principal: Principal | None = UNSET
    ) -> BatchDeleteResult:
        """Delete ids one at a time; a failing id is recorded and skipped."""
        result = BatchDeleteResult(total=len(ids))
        if not ids:
            return result

        with self._boundary("batch_delete", ids=list(ids)):
            actor = await self._principal(principal)
            await self.before_batch_delete(ids, actor)
            for record_id in ids:
                try:
                    await self._delete_one(record_id, actor)
                except Exception as exc:
                    handled = ErrorHandler.handle(exc)
                    result.failed_ids.append(record_id)
                    result.errors.append(
                        BatchDeleteFailure(
                            id=record_id, message=handled.message or "Delete failed", error=exc
                        )
                    )
                    ErrorHandler.log(
                        exc, operation="batch_delete_item", resource=self.resource, id=record_id
                    )
                    continue
                result.success_ids.append(record_id)
            await self.after_batch_delete(result, actor)

        logger.info(
            "batch_delete_completed",
            resource=self.resource,
            total=result.total,
            succeeded=result.success_count,
            failed=result.failure_count,
        )
        return result

    async def drain_events(self) -> None:
        """Wait for outstanding event hooks (used on shutdown and in tests)."""
        while self._events:
            await asyncio.gather(*list(self._events), return_exceptions=True)

    # -- helpers for subclasses --------------------------------------------

    @staticmethod
    def validate_required_fields(data: Mapping[str, Any], required: Sequence[str]) -> None:
        missing = [name for name in required if not data.get(name)]
        if missing:
            raise ValidationError.from_fields({name: [f"{name} is required"] for name in missing})

    @staticmethod
    def validate_not_null(data: Mapping[str, Any], fields: Sequence[str]) -> None:
        """Reject an explicit ``None`` for columns that cannot hold one."""
        nulled = [name for name in fields if name in data and data[name] is None]
        if nulled:
            raise ValidationError.from_fields({name: [f"{name} cannot be null"] for name in nulled})

    @staticmethod
    def validate_field_constraints(
        data: Mapping[str, Any], constraints: Mapping[str, FieldConstraint]
    ) -> None:
        errors: dict[str, list[str]] = {}
        for name, rule in constraints.items():
            value = data.get(name)
            if value is None:
                continue
            problems: list[str] = []
            if isinstance(value, str):
                if rule.min_length is not None and len(value) < rule.min_length:
                    problems.append(f"Minimum length is {rule.min_length}")
                if rule.max_length is not None and len(value) > rule.max_length:
                    problems.append(f"Maximum length is {rule.max_length}")
                if rule.pattern is not None and not rule.pattern.search(value):
                    problems.append(rule.pattern_message or f"Invalid format for {name}")
            elif isinstance(value, int | float) and not isinstance(value, bool):
                if rule.min is not None and value < rule.min:
                    problems.append(f"Minimum value is {rule.min}")
                if rule.max is not None and value > rule.max:
                    problems.append(f"Maximum value is {rule.max}")
            if rule.validator is not None:
                message = rule.validator(value)
                if message:
                    problems.append(message)
            if problems:
                errors[name] = problems
        if errors:
            raise ValidationError.from_fields(errors)

    @staticmethod
    def get_changes(before: Any, after: Any) -> dict[str, dict[str, Any]]:
        """Field-level diff, useful for audit trails."""
        old, new = _as_dict(before), _as_dict(after)
        return {
            key: {"before": old.get(key), "after": value}
            for key, value in new.items()
            if old.get(key) != value
        }

    # -- internals ---------------------------------------------------------

    async def _principal(self, principal: Principal | None) -> Principal | None:
        if principal is UNSET:
            return await self._resolver.resolve()
        return principal

    async def _delete_one(self, record_id: str, actor: Principal | None) -> None:
        entity = await self.repository.find_by_id(record_id, principal=actor)
        await self._check_access(entity, Operation.DELETE, record_id, actor)
        await self.check_delete_authorization(entity, actor)
        await self.before_delete(entity, actor)
        await self.repository.delete(record_id, principal=actor)
        await self.after_delete(entity, actor)
        self._fire("on_deleted", self.on_deleted(entity))

    async def _check_access(
        self, entity: T, operation: Operation, record_id: str, actor: Principal | None
    ) -> None:
        if self._gateway is None or not self.repository.config.tenant_scoped:
            return
        await self._gateway.validate_tenant_access(
            _tenant_of(entity, self._tenant_column),
            operation,
            self.resource,
            record_id or _id_of(entity),
            principal=actor,
        )

    def _fire(self, hook: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._events.add(task)
        task.add_done_callback(lambda t: self._event_done(hook, t))

    def _event_done(self, hook: str, task: asyncio.Task[None]) -> None:
        self._events.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "event_hook_failed",
                hook=hook,
                resource=self.resource,
                error=str(exc),
                exc_info=exc,
            )

    @contextmanager
    def _boundary(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except Exception as exc:
            ErrorHandler.log(exc, operation=operation, resource=self.resource, **context)
            handled = ErrorHandler.handle(exc)
            if handled is exc:
                raise
            raise handled from exc
