"""Super-admin impersonation console API."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from tenantguard.auth.context import Principal
from tenantguard.models.domain import (
    ImpersonationSession,
    OperationValidation,
    RateLimitConfig,
    RateLimitConfigUpdate,
    RateLimitStatus,
)
from tenantguard.web.auth.session import SESSION_COOKIE
from tenantguard.web.dependencies import (
    Container,
    get_container,
    get_principal,
    require_super_admin,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/admin/impersonation", tags=["impersonation"])


class StartImpersonationRequest(BaseModel):
    user_id: str
    reason: str | None = Field(default=None, max_length=500)


class EndImpersonationRequest(BaseModel):
    session_id: str | None = None


class ResetQuotaRequest(BaseModel):
    super_admin_id: str | None = None


@router.get("/check", response_model=OperationValidation)
async def check_limits(
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> OperationValidation:
    return await container.rate_limiter.validate_operation(principal.id)


@router.get("/status", response_model=RateLimitStatus)
async def limit_status(
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> RateLimitStatus:
    return await container.rate_limiter.get_status(principal.id)


@router.get("/sessions")
async def active_sessions(
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> list[dict[str, Any]]:
    return await container.rate_limiter.get_active_sessions()


@router.post("/start", status_code=201, response_model=ImpersonationSession)
async def start_impersonation(
    body: StartImpersonationRequest,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> ImpersonationSession:
    target = container.users.get(body.user_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")
    grant = await container.impersonation.start(principal, target, body.reason)
    container.sessions.swap_principal(request.cookies.get(SESSION_COOKIE, ""), grant.principal)
    return grant.session


@router.post("/end", response_model=ImpersonationSession)
async def end_impersonation(
    body: EndImpersonationRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> ImpersonationSession:
    session_id = body.session_id or principal.impersonation_session_id
    if session_id is None:
        raise HTTPException(status_code=400, detail="No impersonation session to end")
    session = await container.impersonation.end(principal, session_id)
    if principal.impersonation_session_id == session_id:
        container.sessions.restore_principal(request.cookies.get(SESSION_COOKIE, ""))
    return session


@router.get("/config", response_model=RateLimitConfig)
async def get_config(
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> RateLimitConfig:
    return await container.rate_limiter.get_configuration()


@router.put("/config", response_model=RateLimitConfig)
async def update_config(
    body: RateLimitConfigUpdate,
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> RateLimitConfig:
    return await container.rate_limiter.update_configuration(principal, body)


@router.post("/reset", status_code=204)
async def reset_quota(
    body: ResetQuotaRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> None:
    await container.rate_limiter.reset_limit_quota(principal, body.super_admin_id)
