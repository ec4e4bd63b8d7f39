"""Normalises arbitrary exceptions into the ``ServiceError`` hierarchy."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from tenantguard.exceptions import (
    ConflictError,
    NotFoundError,
    RateLimitExceededError,
    RepositoryError,
    ServiceError,
    TenantIsolationError,
    UnauthorizedError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

_CLIENT_ERRORS = (
    ValidationError,
    NotFoundError,
    UnauthorizedError,
    ConflictError,
    TenantIsolationError,
    RateLimitExceededError,
)


class ErrorHandler:
    """Single mapping point used at the service boundary."""

    @staticmethod
    def handle(exc: BaseException) -> ServiceError:
        if isinstance(exc, ServiceError):
            return exc
        if isinstance(exc, PydanticValidationError):
            fields: dict[str, list[str]] = {}
            for err in exc.errors():
                name = ".".join(str(part) for part in err["loc"]) or "__root__"
                fields.setdefault(name, []).append(err["msg"])
            return ValidationError.from_fields(fields)
        if isinstance(exc, IntegrityError):
            return ConflictError(
                "Resource already exists",
                {"originalError": str(exc.orig) if exc.orig is not None else str(exc)},
            )
        if isinstance(exc, TimeoutError):
            return RepositoryError("Storage operation timed out", exc)
        return ServiceError(
            "An unexpected error occurred",
            {"originalError": str(exc) or type(exc).__name__},
        )

    @staticmethod
    def log(exc: BaseException, operation: str, **context: Any) -> None:
        """Log ``exc`` with its operation context; expected client errors log at warning."""
        if isinstance(exc, _CLIENT_ERRORS):
            logger.warning(
                "service_operation_rejected",
                operation=operation,
                error_code=exc.code,
                error=exc.message,
                **context,
            )
            return
        logger.error(
            "service_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=exc,
            **context,
        )
