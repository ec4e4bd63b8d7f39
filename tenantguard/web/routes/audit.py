"""Tenant validation audit trail (super-admin only)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from tenantguard.auth.context import Principal
from tenantguard.web.dependencies import Container, get_container, require_super_admin

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/validation")
async def list_validation_decisions(
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal = Depends(require_super_admin),
    container: Container = Depends(get_container),
) -> list[dict[str, Any]]:
    """Most recent gateway decisions, oldest first."""
    entries = container.gateway.get_validation_audit_log(limit)
    return [entry.model_dump(mode="json") for entry in entries]
