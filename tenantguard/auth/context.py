"""Principal resolution for multi-tenant request scoping.

The acting principal is bound to the current task with a ``ContextVar``.
Callers resolve it once per logical operation and pass it down explicitly,
so one operation never observes two different identities.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field

import structlog

from tenantguard.types import UserRole

logger = structlog.get_logger(__name__)

SUPER_ADMIN_PERMISSION = "super_admin"


@dataclass(frozen=True, slots=True)
class PrincipalCapabilities:
    """Privileges derived once from the principal's raw signals."""

    is_super_admin: bool = False


def resolve_capabilities(
    role: str, permissions: Iterable[str], super_admin_flag: bool = False
) -> PrincipalCapabilities:
    """OR every super-admin signal the identity source may carry."""
    return PrincipalCapabilities(
        is_super_admin=(
            role == UserRole.SUPER_ADMIN
            or SUPER_ADMIN_PERMISSION in permissions
            or super_admin_flag
        )
    )


@dataclass(frozen=True, slots=True)
class Principal:
    """Immutable acting identity carried through each operation."""

    id: str
    role: str
    tenant_id: str | None
    permissions: frozenset[str] = frozenset()
    email: str = ""
    super_admin_flag: bool = False
    impersonated_by: str | None = None
    impersonation_session_id: str | None = None
    capabilities: PrincipalCapabilities = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        object.__setattr__(
            self,
            "capabilities",
            resolve_capabilities(self.role, self.permissions, self.super_admin_flag),
        )

    @property
    def is_super_admin(self) -> bool:
        return self.capabilities.is_super_admin

    @property
    def is_impersonated(self) -> bool:
        return self.impersonated_by is not None


_current_principal: ContextVar[Principal | None] = ContextVar(
    "tenantguard_principal", default=None
)


@contextmanager
def bind_principal(principal: Principal | None) -> Iterator[Principal | None]:
    """Bind ``principal`` as the session identity for the enclosed block."""
    token = _current_principal.set(principal)
    bound = structlog.contextvars.bind_contextvars(
        user_id=principal.id if principal else None,
        tenant_id=principal.tenant_id if principal else None,
    )
    try:
        yield principal
    finally:
        _current_principal.reset(token)
        structlog.contextvars.reset_contextvars(**bound)


class TenantContextResolver:
    """Reads the acting principal from session state. Never mutates it."""

    async def resolve(self) -> Principal | None:
        return _current_principal.get()


def current_principal() -> Principal | None:
    """Synchronous accessor for code that cannot await."""
    return _current_principal.get()
