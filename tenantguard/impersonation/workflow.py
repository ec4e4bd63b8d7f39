"""Super-admin impersonation workflow.

The rate limiter is consulted (atomically) before an impersonated
principal is issued. The impersonated principal carries only the target
user's own capabilities, plus ``impersonated_by`` for audit.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from tenantguard.auth.context import Principal, bind_principal
from tenantguard.auth.policy import is_super_admin
from tenantguard.exceptions import NotFoundError, TenantIsolationError, UnauthorizedError

if TYPE_CHECKING:
    from tenantguard.impersonation.rate_limiter import ImpersonationRateLimiter
    from tenantguard.models.domain import ImpersonationSession

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ImpersonationGrant:
    session: ImpersonationSession
    principal: Principal


def impersonated_principal(target: Principal, actor: Principal, session_id: str) -> Principal:
    """Target's identity with the impersonation trail attached."""
    return Principal(
        id=target.id,
        role=target.role,
        tenant_id=target.tenant_id,
        permissions=target.permissions,
        email=target.email,
        impersonated_by=actor.id,
        impersonation_session_id=session_id,
    )


class ImpersonationManager:
    """Starts and ends impersonation sessions for super-admins."""

    def __init__(self, rate_limiter: ImpersonationRateLimiter) -> None:
        self._limiter = rate_limiter

    async def start(
        self, actor: Principal | None, target: Principal, reason: str | None = None
    ) -> ImpersonationGrant:
        if not is_super_admin(actor):
            logger.warning(
                "impersonation_denied",
                user_id=actor.id if actor else None,
                target_user_id=target.id,
            )
            raise UnauthorizedError("Super admin access required")
        if actor.is_impersonated:
            raise UnauthorizedError("Nested impersonation is not allowed")
        if is_super_admin(target):
            raise UnauthorizedError("Super admins cannot be impersonated")
        if not target.tenant_id:
            raise TenantIsolationError("Access denied", "impersonation")

        session = await self._limiter.start_session(actor.id, target.id, target.tenant_id, reason)
        return ImpersonationGrant(
            session=session,
            principal=impersonated_principal(target, actor, session.id),
        )

    async def end(self, actor: Principal | None, session_id: str) -> ImpersonationSession:
        """Close a session; only its owner (or the impersonated identity it issued) may."""
        session = await self._limiter.get_session(session_id)
        if session is None:
            raise NotFoundError("impersonation_session", session_id)
        if actor is None:
            raise UnauthorizedError("Authentication required")
        owner = actor.impersonated_by if actor.is_impersonated else actor.id
        if owner != session.super_admin_id:
            logger.warning(
                "impersonation_end_denied",
                user_id=actor.id,
                session_id=session_id,
            )
            raise NotFoundError("impersonation_session", session_id)
        return await self._limiter.end_session(session_id)

    @asynccontextmanager
    async def impersonate(
        self, actor: Principal, target: Principal, reason: str | None = None
    ) -> AsyncIterator[Principal]:
        """Bind the impersonated principal for the enclosed block, then end the session."""
        grant = await self.start(actor, target, reason)
        try:
            with bind_principal(grant.principal):
                yield grant.principal
        finally:
            await self._limiter.end_session(grant.session.id)
