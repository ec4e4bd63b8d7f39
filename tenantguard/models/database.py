"""SQLModel database table models.

Every timestamp column is ``TIMESTAMP WITH TIME ZONE`` and is bound as an
aware UTC datetime.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _stamp(**kwargs: Any) -> Any:
    """Field for an aware timestamp column."""
    return Field(sa_type=DateTime(timezone=True), **kwargs)


# ---------------------------------------------------------------------------
# Tenant-scoped business records
# ---------------------------------------------------------------------------


class CustomerRecord(SQLModel, table=True):
    __tablename__ = "customers"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    company_name: str
    contact_name: str = ""
    email: str | None = Field(default=None, index=True)
    phone: str | None = None
    industry: str | None = None
    size: str | None = None
    status: str = Field(default="active")  # active | inactive | prospect
    customer_type: str | None = None  # individual | business | enterprise
    rating: str | None = None
    source: str | None = None
    city: str | None = None
    country: str | None = None
    notes: str | None = None
    assigned_to: str | None = Field(default=None, index=True)
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = _stamp(default_factory=_utc_now)
    updated_at: datetime = _stamp(default_factory=_utc_now)
    deleted_at: datetime | None = _stamp(default=None, index=True)


# ---------------------------------------------------------------------------
# Access-control audit trail
# ---------------------------------------------------------------------------


class ValidationAuditLog(SQLModel, table=True):
    __tablename__ = "validation_audit_logs"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    timestamp: datetime = _stamp(default_factory=_utc_now, index=True)
    operation: str
    resource: str = Field(index=True)
    resource_id: str | None = None
    requested_tenant_id: str | None = None
    acting_tenant_id: str | None = Field(default=None, index=True)
    acting_user_id: str
    acting_role: str
    is_super_admin: bool = False
    result: str  # ALLOWED | DENIED
    reason: str = ""


# ---------------------------------------------------------------------------
# Super-admin impersonation
# ---------------------------------------------------------------------------


class ImpersonationSessionRecord(SQLModel, table=True):
    __tablename__ = "super_user_impersonation_logs"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    super_admin_id: str = Field(index=True)
    impersonated_user_id: str
    tenant_id: str = Field(index=True)
    started_at: datetime = _stamp(default_factory=_utc_now, index=True)
    ended_at: datetime | None = _stamp(default=None, index=True)
    reason: str | None = None


class RateLimitConfigRecord(SQLModel, table=True):
    __tablename__ = "impersonation_rate_limit_config"

    id: str = Field(default="default", primary_key=True)
    max_impersonations_per_hour: int = Field(default=10)
    max_concurrent_sessions: int = Field(default=5)
    max_session_duration_minutes: int = Field(default=30)
    enabled: bool = Field(default=True)
    created_at: datetime = _stamp(default_factory=_utc_now)
    updated_at: datetime = _stamp(default_factory=_utc_now)


class ImpersonationQuotaResetRecord(SQLModel, table=True):
    """Hourly-usage reset marker; ``super_admin_id == "*"`` applies to everyone."""

    __tablename__ = "impersonation_quota_resets"

    super_admin_id: str = Field(primary_key=True)
    reset_at: datetime = _stamp(default_factory=_utc_now)
    reset_by: str | None = None
