"""Authentication routes: password login, identity lookup, logout."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from tenantguard.auth.context import Principal
from tenantguard.web.auth.session import SESSION_COOKIE
from tenantguard.web.dependencies import Container, get_container, get_principal

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


def _describe(principal: Principal) -> dict[str, Any]:
    return {
        "id": principal.id,
        "role": principal.role,
        "tenant_id": principal.tenant_id,
        "is_super_admin": principal.is_super_admin,
        "impersonated_by": principal.impersonated_by,
        "impersonation_session_id": principal.impersonation_session_id,
    }


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Create a session via username/password."""
    if not body.username or not body.password:
        raise HTTPException(status_code=400, detail="Username and password required")

    principal = container.users.authenticate(body.username, body.password)
    if principal is None:
        logger.warning("login_failed", username=body.username)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = container.sessions.create_session(principal)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        secure=not container.settings.debug,
        samesite="lax",
        max_age=container.settings.session_max_age,
    )
    logger.info("user_logged_in", user_id=principal.id)
    return {"status": "ok", "user": _describe(principal)}


@router.get("/me")
async def me(principal: Principal = Depends(get_principal)) -> dict[str, Any]:
    return _describe(principal)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    container: Container = Depends(get_container),
) -> dict[str, str]:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        container.sessions.destroy_session(token)
    response.delete_cookie(SESSION_COOKIE)
    return {"status": "ok"}
