"""Tenant isolation policy.

Pure predicates over already-resolved principals, roles and permissions.
Every function is total: unknown or missing input is treated as "no access"
and none of them raise.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from tenantguard.config.settings import SENTINEL_TENANT_ID
from tenantguard.storage.query import Eq
from tenantguard.types import PermissionCategory, UserRole

if TYPE_CHECKING:
    from tenantguard.auth.context import Principal
    from tenantguard.models.domain import Permission, Role

# Permission names that only exist at platform level.
PLATFORM_PERMISSION_NAMES = frozenset(
    {
        "super_admin",
        "platform_admin",
        "tenant_management",
        "impersonate_users",
        "system_configuration",
        "manage_rate_limits",
    }
)


def _field(record: Any, name: str, default: Any = None) -> Any:
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def is_super_admin(principal: Principal | None) -> bool:
    if principal is None:
        return False
    return principal.capabilities.is_super_admin


def is_platform_role(role: Role | Mapping[str, Any]) -> bool:
    """A role is platform-level when it is a system role with no tenant."""
    if _field(role, "is_system_role") is not True:
        return False
    return not _field(role, "tenant_id") or _field(role, "name") == UserRole.SUPER_ADMIN


def is_platform_permission(permission: Permission | Mapping[str, Any]) -> bool:
    if _field(permission, "category") == PermissionCategory.SYSTEM:
        return True
    if _field(permission, "is_system_permission") is True:
        return True
    return _field(permission, "name") in PLATFORM_PERMISSION_NAMES


def filter_roles_by_tenant(roles: Iterable[Role], principal: Principal | None) -> list[Role]:
    roles = list(roles)
    if principal is None:
        return []
    if is_super_admin(principal):
        return roles
    if not principal.tenant_id:
        return []
    return [
        r
        for r in roles
        if _field(r, "tenant_id") == principal.tenant_id and not is_platform_role(r)
    ]


def filter_permissions_by_tenant(
    permissions: Iterable[Permission], principal: Principal | None
) -> list[Permission]:
    permissions = list(permissions)
    if principal is None:
        return []
    if is_super_admin(principal):
        return permissions
    if not principal.tenant_id:
        return []
    return [p for p in permissions if not is_platform_permission(p)]


def can_access_role(role: Role, principal: Principal | None) -> bool:
    if principal is None:
        return False
    if is_super_admin(principal):
        return True
    if not principal.tenant_id:
        return False
    return _field(role, "tenant_id") == principal.tenant_id and not is_platform_role(role)


def can_access_permission(permission: Permission, principal: Principal | None) -> bool:
    if principal is None:
        return False
    if is_super_admin(principal):
        return True
    if not principal.tenant_id:
        return False
    return not is_platform_permission(permission)


def can_modify_role(role: Role | Mapping[str, Any], principal: Principal | None) -> bool:
    """Decide whether ``principal`` may create or edit ``role``.

    Non-super-admins can never touch a system role, whatever its name, and
    may only write roles that belong (or will belong) to their own tenant.
    """
    if principal is None:
        return False
    if is_super_admin(principal):
        return True
    if not principal.tenant_id:
        return False
    if _field(role, "is_system_role") is True:
        return False
    if _field(role, "name") == UserRole.SUPER_ADMIN:
        return False
    role_tenant = _field(role, "tenant_id")
    return role_tenant is None or role_tenant == principal.tenant_id


def role_query_filter(principal: Principal | None, column: str = "tenant_id") -> Eq | None:
    """Filter to push down when listing roles; ``None`` means unfiltered."""
    if principal is None:
        return Eq("id", SENTINEL_TENANT_ID)
    if is_super_admin(principal):
        return None
    if principal.tenant_id:
        return Eq(column, principal.tenant_id)
    return Eq("id", SENTINEL_TENANT_ID)
