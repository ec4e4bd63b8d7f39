"""Inter-module data contracts (not persisted directly)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from tenantguard.types import (
    LimitType,
    Operation,
    PermissionCategory,
    SortOrder,
    ValidationOutcome,
)

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Access grants
# ---------------------------------------------------------------------------


class Role(BaseModel):
    id: str
    name: str
    tenant_id: str | None = None
    is_system_role: bool = False
    description: str = ""


class Permission(BaseModel):
    id: str
    name: str
    category: PermissionCategory = PermissionCategory.MODULE
    is_system_permission: bool = False
    description: str = ""


# ---------------------------------------------------------------------------
# Validation audit trail
# ---------------------------------------------------------------------------


class ValidationAuditEntry(BaseModel):
    """One access-control decision made by the validation gateway."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    operation: Operation | str  # raw value when the caller passed an unknown one
    resource: str
    resource_id: str | None = None
    requested_tenant_id: str | None = None
    acting_tenant_id: str | None = None
    acting_user_id: str = "unknown"
    acting_role: str = "unknown"
    is_super_admin: bool = False
    result: ValidationOutcome = ValidationOutcome.DENIED
    reason: str = ""


class TenantValidationResult(BaseModel):
    valid: bool = True
    reason: str = ""
    logged: bool = True


# ---------------------------------------------------------------------------
# Repository contracts
# ---------------------------------------------------------------------------


class QueryFilters(BaseModel):
    """Listing filters; unknown keys are kept for custom filter handlers."""

    model_config = ConfigDict(extra="allow")

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=500)
    sort_by: str | None = None
    sort_order: SortOrder | None = None
    search: str | None = None
    status: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    created_by: str | None = None
    assigned_to: str | None = None

    def value_of(self, key: str) -> Any:
        """Return a declared or extra filter value, ``None`` when absent."""
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key)


class PaginatedResponse(BaseModel, Generic[T]):
    data: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0


@dataclass(slots=True)
class BatchDeleteFailure:
    id: str
    message: str
    error: BaseException | None = field(default=None, repr=False)


@dataclass(slots=True)
class BatchDeleteResult:
    """Outcome of a sequential, partial-failure-tolerant batch delete."""

    total: int = 0
    success_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    errors: list[BatchDeleteFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.success_ids)

    @property
    def failure_count(self) -> int:
        return len(self.failed_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_ids": list(self.success_ids),
            "failed_ids": list(self.failed_ids),
            "errors": [{"id": e.id, "message": e.message} for e in self.errors],
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
        }


# ---------------------------------------------------------------------------
# Impersonation
# ---------------------------------------------------------------------------


class ImpersonationSession(BaseModel):
    id: str
    super_admin_id: str
    impersonated_user_id: str
    tenant_id: str
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class RateLimitConfig(BaseModel):
    id: str = "default"
    max_per_hour: int = Field(default=10, ge=1)
    max_concurrent: int = Field(default=5, ge=1)
    max_duration_minutes: int = Field(default=30, ge=1)
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RateLimitConfigUpdate(BaseModel):
    max_per_hour: int | None = Field(default=None, ge=1)
    max_concurrent: int | None = Field(default=None, ge=1)
    max_duration_minutes: int | None = Field(default=None, ge=1)
    enabled: bool | None = None


class RateLimitUsage(BaseModel):
    impersonations_this_hour: int = 0
    concurrent_sessions: int = 0
    longest_session_minutes: int = 0


class RateLimitLimits(BaseModel):
    max_per_hour: int
    max_concurrent: int
    max_duration_minutes: int


class RemainingCapacity(BaseModel):
    impersonations: int
    concurrent_slots: int


class RateLimitCheckResult(BaseModel):
    allowed: bool
    reason: str | None = None
    limit_type: LimitType | None = None
    current_usage: RateLimitUsage
    limits: RateLimitLimits
    remaining_capacity: RemainingCapacity


class UsagePercentage(BaseModel):
    hourly: int = 0
    concurrent: int = 0
    duration: int = 0


class OperationValidation(BaseModel):
    can_proceed: bool
    message: str
    limit_type: LimitType | None = None
    usage_percentage: UsagePercentage


class RateLimitStatus(BaseModel):
    super_admin_id: str
    impersonations_this_hour: int
    concurrent_session_count: int
    longest_session_duration_seconds: int
    config_id: str
    is_rate_limited: bool
    rate_limit_reason: str | None = None
    reset_at: datetime
    checked_at: datetime
