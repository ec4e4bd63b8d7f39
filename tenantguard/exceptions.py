"""Exception hierarchy for tenantguard."""

from __future__ import annotations

from typing import Any


class TenantGuardError(Exception):
    """Base exception for all tenantguard errors."""


class ConfigError(TenantGuardError):
    """Raised when configuration is invalid."""


class ServiceError(TenantGuardError):
    """Typed error surfaced across the service boundary.

    ``code`` is a stable machine-readable identifier, ``details`` carries
    diagnostics that are logged but never rendered to end users.
    """

    code = "SERVICE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class ValidationError(ServiceError):
    """Raised when input is malformed or violates field constraints."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(message, {"fields": field_errors or {}})
        self.field_errors: dict[str, list[str]] = field_errors or {}

    @classmethod
    def from_fields(cls, field_errors: dict[str, list[str]]) -> ValidationError:
        fields = ", ".join(sorted(field_errors))
        return cls(f"Validation failed for: {fields}", field_errors)


class NotFoundError(ServiceError):
    """Raised when no row matches an id within the caller's tenant scope.

    The message is identical whether the row does not exist or belongs to
    another tenant.
    """

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class UnauthorizedError(ServiceError):
    """Raised when a principal lacks the capability for an action."""

    code = "UNAUTHORIZED"


class ConflictError(ServiceError):
    """Raised when a write would violate a uniqueness rule."""

    code = "CONFLICT"


class TenantIsolationError(ServiceError):
    """Raised when an operation would cross a tenant boundary."""

    code = "TENANT_ACCESS_DENIED"

    def __init__(self, message: str = "Access denied", resource: str = "unknown") -> None:
        super().__init__(message, {"resource": resource})
        self.resource = resource


class AccessDeniedError(TenantIsolationError):
    """Raised by the validation gateway on every denied decision."""


class RepositoryError(ServiceError):
    """Wraps an unexpected storage failure.

    The original error text is kept in ``details["originalError"]`` for
    diagnostics only.
    """

    code = "DATABASE_ERROR"

    def __init__(
        self,
        message: str,
        original: BaseException | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if original is not None:
            merged["originalError"] = str(original) or type(original).__name__
        super().__init__(message, merged)
        self.original = original


class RateLimitExceededError(ServiceError):
    """Raised when an impersonation session would exceed a rate limit."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, limit_type: str | None = None) -> None:
        super().__init__(message, {"limitType": limit_type})
        self.limit_type = limit_type
