"""Tenant validation gateway.

Every CRUD entry point passes through here. Each call classifies the
request, appends exactly one ``ValidationAuditEntry`` and then either
returns a result or raises ``AccessDeniedError``. There is no silent-deny
path: a denial always raises, and the audit entry is written before the
exception leaves the gateway.

Exception messages are fixed strings. Tenant ids only appear in the audit
entry and in server-side logs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NoReturn, Protocol, TypeVar

import structlog

from tenantguard.audit.ring_buffer import AuditRingBuffer
from tenantguard.auth.context import TenantContextResolver
from tenantguard.auth.policy import is_super_admin
from tenantguard.config.settings import SENTINEL_TENANT_ID
from tenantguard.exceptions import AccessDeniedError
from tenantguard.models.domain import TenantValidationResult, ValidationAuditEntry
from tenantguard.storage.query import Eq
from tenantguard.types import Operation, ValidationOutcome

if TYPE_CHECKING:
    from tenantguard.audit.logger import AuditLogger
    from tenantguard.auth.context import Principal

logger = structlog.get_logger(__name__)

NOT_AUTHENTICATED = "Access denied: User not authenticated"
INVALID_TENANT_CONTEXT = "Access denied: Invalid tenant context"
TENANT_MISMATCH = "Access denied: Tenant mismatch"
CROSS_TENANT_ASSIGNMENT = "Access denied: Cannot assign to different tenant"
UNSUPPORTED_OPERATION = "Access denied: Unsupported operation"

# Marks "resolve the principal from session state" as opposed to an explicit None.
UNSET: Any = object()


class SupportsEq(Protocol):
    def eq(self, column: str, value: Any) -> Any: ...


Q = TypeVar("Q", bound=SupportsEq)


def parse_operation(value: Operation | str) -> Operation | None:
    """``Operation`` for ``value`` (case-insensitive), ``None`` when unknown."""
    try:
        return Operation(str(value).upper())
    except ValueError:
        return None


def tenant_scope_filter(principal: Principal | None, column: str = "tenant_id") -> Eq | None:
    """Return the equality filter that scopes a query to ``principal``.

    ``None`` means "no filter" and is only ever returned for super-admins.
    Principals without a tenant (or no principal at all) get a filter on a
    tenant id no row carries, so the result set is empty rather than
    unfiltered.
    """
    if is_super_admin(principal):
        return None
    if principal is not None and principal.tenant_id:
        return Eq(column, principal.tenant_id)
    return Eq(column, SENTINEL_TENANT_ID)


def scope_query(
    query: Q, principal: Principal | None, resource: str, column: str = "tenant_id"
) -> Q:
    """Apply ``tenant_scope_filter`` to any query exposing ``eq``."""
    scope = tenant_scope_filter(principal, column)
    if scope is None:
        return query
    if scope.value == SENTINEL_TENANT_ID:
        logger.warning(
            "tenant_filter_sentinel_applied",
            user_id=principal.id if principal else None,
            resource=resource,
        )
    return query.eq(scope.column, scope.value)


class TenantValidationGateway:
    """Classifies and audits tenant access for one deployment.

    The audit buffer is injected so its lifetime (and test isolation) is
    owned by whoever builds the gateway.
    """

    def __init__(
        self,
        resolver: TenantContextResolver | None = None,
        audit_log: AuditRingBuffer | None = None,
        sink: AuditLogger | None = None,
        tenant_column: str = "tenant_id",
    ) -> None:
        self._resolver = resolver or TenantContextResolver()
        self._audit_log = audit_log if audit_log is not None else AuditRingBuffer()
        self._sink = sink
        self._tenant_column = tenant_column

    @property
    def audit_log(self) -> AuditRingBuffer:
        return self._audit_log

    async def _principal(self, principal: Principal | None) -> Principal | None:
        if principal is UNSET:
            return await self._resolver.resolve()
        return principal

    async def validate_tenant_access(
        self,
        record_tenant_id: str | None,
        operation: Operation | str,
        resource: str,
        resource_id: str | None = None,
        *,
        principal: Principal | None = UNSET,
    ) -> TenantValidationResult:
        """Check that the acting principal may touch an existing record."""
        actor = await self._principal(principal)
        op = parse_operation(operation)
        entry = self._entry(actor, op or str(operation), resource, resource_id, record_tenant_id)

        if op is None:
            await self._deny(entry, f"Unsupported operation: {operation}", UNSUPPORTED_OPERATION)
        if actor is None:
            await self._deny(entry, "User not authenticated", NOT_AUTHENTICATED)
        if is_super_admin(actor):
            return await self._allow(entry, "Super admin access granted")
        if not actor.tenant_id:
            await self._deny(entry, "Current user has no tenant assignment", INVALID_TENANT_CONTEXT)
        if record_tenant_id != actor.tenant_id:
            await self._deny(
                entry,
                f"Tenant mismatch: requested={record_tenant_id}, current={actor.tenant_id}",
                TENANT_MISMATCH,
            )
        return await self._allow(entry, "Tenant match verified")

    async def validate_tenant_for_operation(
        self,
        assigned_tenant_id: str | None,
        operation: Operation | str,
        resource: str,
        *,
        principal: Principal | None = UNSET,
    ) -> TenantValidationResult:
        """Check a tenant assignment on a create path (no record exists yet)."""
        actor = await self._principal(principal)
        op = parse_operation(operation)
        entry = self._entry(actor, op or str(operation), resource, None, assigned_tenant_id)

        if op is None:
            await self._deny(entry, f"Unsupported operation: {operation}", UNSUPPORTED_OPERATION)
        if actor is None:
            await self._deny(entry, "User not authenticated", NOT_AUTHENTICATED)
        if is_super_admin(actor):
            return await self._allow(entry, "Super admin can assign to any tenant")
        if not actor.tenant_id:
            await self._deny(entry, "Current user has no tenant assignment", INVALID_TENANT_CONTEXT)
        if assigned_tenant_id is not None and assigned_tenant_id != actor.tenant_id:
            await self._deny(
                entry,
                f"Tenant assignment mismatch: requested={assigned_tenant_id}, "
                f"current={actor.tenant_id}",
                CROSS_TENANT_ASSIGNMENT,
            )
        reason = "Tenant assignment verified" if assigned_tenant_id else "Will use current tenant"
        return await self._allow(entry, reason)

    async def get_operation_tenant_id(
        self, provided_tenant_id: str | None = None, *, principal: Principal | None = UNSET
    ) -> str | None:
        """Tenant to stamp on a new record.

        Super-admins may choose (falling back to their own tenant); everyone
        else always gets their own tenant, whatever they passed.
        """
        actor = await self._principal(principal)
        if actor is None:
            return None
        if is_super_admin(actor):
            return provided_tenant_id or actor.tenant_id
        return actor.tenant_id

    async def apply_tenant_filter(
        self, query: Q, resource: str, *, principal: Principal | None = UNSET
    ) -> Q:
        actor = await self._principal(principal)
        return scope_query(query, actor, resource, self._tenant_column)

    def get_validation_audit_log(self, limit: int = 100) -> list[ValidationAuditEntry]:
        return self._audit_log.recent(limit)

    def clear_validation_audit_log(self) -> None:
        self._audit_log.clear()

    # -- internals ---------------------------------------------------------

    def _entry(
        self,
        actor: Principal | None,
        operation: Operation | str,
        resource: str,
        resource_id: str | None,
        requested_tenant_id: str | None,
    ) -> dict[str, Any]:
        return {
            "operation": operation,
            "resource": resource,
            "resource_id": resource_id,
            "requested_tenant_id": requested_tenant_id,
            "acting_tenant_id": actor.tenant_id if actor else None,
            "acting_user_id": actor.id if actor else "unknown",
            "acting_role": actor.role if actor else "unknown",
            "is_super_admin": is_super_admin(actor),
        }

    async def _allow(self, fields: dict[str, Any], reason: str) -> TenantValidationResult:
        entry = ValidationAuditEntry(**fields, result=ValidationOutcome.ALLOWED, reason=reason)
        await self._record(entry)
        return TenantValidationResult(valid=True, reason=reason, logged=True)

    async def _deny(self, fields: dict[str, Any], reason: str, message: str) -> NoReturn:
        entry = ValidationAuditEntry(**fields, result=ValidationOutcome.DENIED, reason=reason)
        await self._record(entry)
        raise AccessDeniedError(message, resource=entry.resource)

    async def _record(self, entry: ValidationAuditEntry) -> None:
        self._audit_log.append(entry)
        target = f"{entry.resource}/{entry.resource_id}" if entry.resource_id else entry.resource
        if entry.result == ValidationOutcome.ALLOWED:
            logger.info(
                "tenant_validation_allowed",
                operation=str(entry.operation),
                target=target,
                user=entry.acting_user_id,
                role=entry.acting_role,
            )
        else:
            logger.warning(
                "tenant_validation_denied",
                operation=str(entry.operation),
                target=target,
                user=entry.acting_user_id,
                role=entry.acting_role,
                requested_tenant=entry.requested_tenant_id,
                current_tenant=entry.acting_tenant_id,
                reason=entry.reason,
            )
        if self._sink is not None:
            await self._sink.write(entry)
