"""Unit tests for tenant isolation policy predicates."""

from __future__ import annotations

import pytest

from tenantguard.auth.context import Principal, resolve_capabilities
from tenantguard.auth.policy import (
    can_access_permission,
    can_access_role,
    can_modify_role,
    filter_permissions_by_tenant,
    filter_roles_by_tenant,
    is_platform_permission,
    is_platform_role,
    is_super_admin,
    role_query_filter,
)
from tenantguard.config.settings import SENTINEL_TENANT_ID
from tenantguard.models.domain import Permission, Role
from tenantguard.storage.query import Eq
from tenantguard.types import PermissionCategory, UserRole

ROLES = [
    Role(id="r-platform", name="platform_admin", tenant_id=None, is_system_role=True),
    Role(id="r-super", name="super_admin", tenant_id="tenant-1", is_system_role=True),
    Role(id="r-t1-system", name="admin", tenant_id="tenant-1", is_system_role=True),
    Role(id="r-t1", name="sales", tenant_id="tenant-1"),
    Role(id="r-t2", name="sales", tenant_id="tenant-2"),
]

PERMISSIONS = [
    Permission(id="p-sys", name="manage_billing", category=PermissionCategory.SYSTEM),
    Permission(id="p-flag", name="audit_everything", is_system_permission=True),
    Permission(id="p-named", name="impersonate_users"),
    Permission(id="p-core", name="customers.read", category=PermissionCategory.CORE),
    Permission(id="p-mod", name="tickets.write"),
]


@pytest.mark.unit
class TestSuperAdminSignals:
    def test_role_signal(self) -> None:
        assert resolve_capabilities("super_admin", []).is_super_admin

    def test_permission_signal(self) -> None:
        assert resolve_capabilities("agent", ["super_admin"]).is_super_admin

    def test_flag_signal(self) -> None:
        assert resolve_capabilities("agent", [], super_admin_flag=True).is_super_admin

    def test_no_signal(self) -> None:
        assert not resolve_capabilities("admin", ["customers.read"]).is_super_admin

    def test_principal_resolves_once(self) -> None:
        principal = Principal(id="u", role="agent", tenant_id="t", permissions={"super_admin"})
        assert principal.is_super_admin
        assert is_super_admin(principal)

    def test_none_is_not_super_admin(self) -> None:
        assert not is_super_admin(None)


@pytest.mark.unit
class TestPlatformClassification:
    def test_system_role_without_tenant_is_platform(self) -> None:
        assert is_platform_role(ROLES[0])

    def test_super_admin_system_role_is_platform_even_with_tenant(self) -> None:
        assert is_platform_role(ROLES[1])

    def test_tenant_system_role_is_not_platform(self) -> None:
        assert not is_platform_role(ROLES[2])

    def test_custom_role_is_not_platform(self) -> None:
        assert not is_platform_role({"name": "sales", "tenant_id": None})

    def test_platform_permissions(self) -> None:
        assert [p.id for p in PERMISSIONS if is_platform_permission(p)] == [
            "p-sys",
            "p-flag",
            "p-named",
        ]


@pytest.mark.unit
class TestFiltering:
    def test_tenant_admin_never_sees_platform_roles(self, tenant1_admin) -> None:
        visible = filter_roles_by_tenant(ROLES, tenant1_admin)
        assert [r.id for r in visible] == ["r-t1-system", "r-t1"]
        assert not any(r.is_system_role and r.tenant_id is None for r in visible)

    def test_super_admin_sees_all_roles(self, super_admin) -> None:
        assert filter_roles_by_tenant(ROLES, super_admin) == ROLES

    def test_no_principal_sees_nothing(self) -> None:
        assert filter_roles_by_tenant(ROLES, None) == []
        assert filter_permissions_by_tenant(PERMISSIONS, None) == []

    def test_orphan_sees_nothing(self, orphan) -> None:
        assert filter_roles_by_tenant(ROLES, orphan) == []
        assert filter_permissions_by_tenant(PERMISSIONS, orphan) == []

    def test_tenant_admin_never_sees_system_permissions(self, tenant1_admin) -> None:
        visible = filter_permissions_by_tenant(PERMISSIONS, tenant1_admin)
        assert [p.id for p in visible] == ["p-core", "p-mod"]
        assert all(p.category != PermissionCategory.SYSTEM for p in visible)

    def test_super_admin_sees_all_permissions(self, super_admin) -> None:
        assert filter_permissions_by_tenant(PERMISSIONS, super_admin) == PERMISSIONS


@pytest.mark.unit
class TestAccessChecks:
    def test_can_access_own_role(self, tenant1_admin) -> None:
        assert can_access_role(ROLES[3], tenant1_admin)

    def test_cannot_access_other_tenant_role(self, tenant1_admin) -> None:
        assert not can_access_role(ROLES[4], tenant1_admin)

    def test_cannot_access_platform_role(self, tenant1_admin) -> None:
        assert not can_access_role(ROLES[0], tenant1_admin)

    def test_permission_access(self, tenant1_admin, super_admin) -> None:
        assert can_access_permission(PERMISSIONS[3], tenant1_admin)
        assert not can_access_permission(PERMISSIONS[0], tenant1_admin)
        assert can_access_permission(PERMISSIONS[0], super_admin)
        assert not can_access_permission(PERMISSIONS[3], None)


@pytest.mark.unit
class TestCanModifyRole:
    def test_own_custom_role(self, tenant1_admin) -> None:
        assert can_modify_role({"name": "sales", "tenant_id": "tenant-1"}, tenant1_admin)

    def test_new_role_without_tenant(self, tenant1_admin) -> None:
        assert can_modify_role({"name": "support"}, tenant1_admin)

    def test_other_tenant_role(self, tenant1_admin) -> None:
        assert not can_modify_role({"name": "sales", "tenant_id": "tenant-2"}, tenant1_admin)

    def test_system_role_in_own_tenant(self, tenant1_admin) -> None:
        assert not can_modify_role(ROLES[2], tenant1_admin)

    def test_super_admin_name(self, tenant1_admin) -> None:
        role = {"name": UserRole.SUPER_ADMIN, "tenant_id": "tenant-1"}
        assert not can_modify_role(role, tenant1_admin)

    def test_super_admin_may_modify_anything(self, super_admin) -> None:
        assert can_modify_role(ROLES[0], super_admin)

    def test_orphan_may_modify_nothing(self, orphan) -> None:
        assert not can_modify_role({"name": "sales"}, orphan)


@pytest.mark.unit
class TestRoleQueryFilter:
    def test_super_admin_unfiltered(self, super_admin) -> None:
        assert role_query_filter(super_admin) is None

    def test_tenant_filter(self, tenant1_admin) -> None:
        assert role_query_filter(tenant1_admin) == Eq("tenant_id", "tenant-1")

    def test_sentinel_for_orphan_and_anonymous(self, orphan) -> None:
        assert role_query_filter(orphan) == Eq("id", SENTINEL_TENANT_ID)
        assert role_query_filter(None) == Eq("id", SENTINEL_TENANT_ID)
