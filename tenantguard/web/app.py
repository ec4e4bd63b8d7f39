"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantguard.config.logging import setup_logging
from tenantguard.config.settings import Settings, get_settings
from tenantguard.exceptions import (
    ConflictError,
    NotFoundError,
    RateLimitExceededError,
    ServiceError,
    TenantIsolationError,
    UnauthorizedError,
    ValidationError,
)
from tenantguard.web.dependencies import build_container
from tenantguard.web.middleware import RequestIDMiddleware
from tenantguard.web.routes.audit import router as audit_router
from tenantguard.web.routes.auth import router as auth_router
from tenantguard.web.routes.customers import router as customers_router
from tenantguard.web.routes.impersonation import router as impersonation_router

logger = structlog.get_logger(__name__)

# Order matters: subclasses before ServiceError.
_STATUS_BY_ERROR: tuple[tuple[type[ServiceError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (TenantIsolationError, 403),
    (UnauthorizedError, 403),
    (ConflictError, 409),
    (RateLimitExceededError, 429),
)


def _error_body(exc: ServiceError) -> tuple[int, dict[str, object]]:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        return 500, {"detail": "An unexpected error occurred", "code": exc.code}

    body: dict[str, object] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, TenantIsolationError):
        body["detail"] = "Access denied"
    elif isinstance(exc, ValidationError):
        body["fields"] = exc.field_errors
    elif isinstance(exc, RateLimitExceededError):
        body["limit_type"] = exc.limit_type
    return status, body


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)
    container = build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.use_database:
            from tenantguard.storage.database import init_db

            await init_db()
        yield
        await container.customers.drain_events()
        logger.info("app_shutdown")

    app = FastAPI(
        title="TenantGuard",
        description="Tenant-isolated CRM data access with audited impersonation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = container

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        status, body = _error_body(exc)
        if status >= 500:
            logger.error(
                "request_failed", path=request.url.path, code=exc.code, details=exc.details
            )
        else:
            logger.info("request_rejected", path=request.url.path, code=exc.code, status=status)
        return JSONResponse(status_code=status, content=body)

    # Middleware (last added runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    app.add_middleware(RequestIDMiddleware)

    app.include_router(auth_router)
    app.include_router(customers_router)
    app.include_router(impersonation_router)
    app.include_router(audit_router)

    @app.get("/api/health")
    async def health_check() -> dict[str, object]:
        result: dict[str, object] = {"status": "healthy", "version": "0.1.0"}
        if not settings.use_database:
            result["database"] = "in-memory"
            return result
        try:
            from sqlalchemy import text

            from tenantguard.storage.database import get_engine

            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            result["database"] = "connected"
        except Exception as exc:
            logger.warning("health_check_db_failed", error=str(exc))
            result["database"] = "unavailable"
            result["status"] = "degraded"
        return result

    logger.info("app_created", use_database=settings.use_database)
    return app
