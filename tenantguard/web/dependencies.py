"""FastAPI dependency injection and shared state."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import Depends, HTTPException, Request

from tenantguard.audit.logger import AuditLogger
from tenantguard.audit.ring_buffer import AuditRingBuffer
from tenantguard.auth.context import Principal
from tenantguard.auth.validation import TenantValidationGateway
from tenantguard.config.settings import Settings, get_settings
from tenantguard.crm.customers import CustomerRepository, CustomerService
from tenantguard.impersonation.rate_limiter import ImpersonationRateLimiter
from tenantguard.impersonation.stores import (
    ConfigStore,
    DatabaseConfigStore,
    DatabaseSessionStore,
    InMemoryConfigStore,
    InMemorySessionStore,
    SessionStore,
)
from tenantguard.impersonation.workflow import ImpersonationManager
from tenantguard.models.domain import RateLimitConfig
from tenantguard.storage.backends.base import StorageBackend
from tenantguard.storage.backends.memory import InMemoryBackend
from tenantguard.types import UserRole
from tenantguard.web.auth.session import SESSION_COOKIE, SessionAuth
from tenantguard.web.auth.users import UserDirectory

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Container:
    """Everything a request handler needs, built once per app."""

    settings: Settings
    backend: StorageBackend
    gateway: TenantValidationGateway
    customers: CustomerService
    rate_limiter: ImpersonationRateLimiter
    impersonation: ImpersonationManager
    users: UserDirectory
    sessions: SessionAuth


def _seed_rate_limits(settings: Settings) -> RateLimitConfig:
    return RateLimitConfig(
        max_per_hour=settings.impersonation_max_per_hour,
        max_concurrent=settings.impersonation_max_concurrent,
        max_duration_minutes=settings.impersonation_max_duration_minutes,
        enabled=settings.impersonation_limits_enabled,
    )


def build_container(settings: Settings | None = None) -> Container:
    """Wire stores according to ``settings.use_database``."""
    settings = settings or get_settings()
    limits = _seed_rate_limits(settings)
    sink: AuditLogger | None = None
    backend: StorageBackend
    session_store: SessionStore
    config_store: ConfigStore

    if settings.use_database:
        from tenantguard.storage.backends.sql import SqlAlchemyBackend
        from tenantguard.storage.database import get_engine

        engine = get_engine()
        backend = SqlAlchemyBackend(engine, timeout=settings.storage_timeout_seconds)
        session_store = DatabaseSessionStore(engine)
        config_store = DatabaseConfigStore(engine, limits)
        if settings.persist_validation_audit:
            sink = AuditLogger(engine)
    else:
        backend = InMemoryBackend()
        session_store = InMemorySessionStore()
        config_store = InMemoryConfigStore(limits)

    gateway = TenantValidationGateway(
        audit_log=AuditRingBuffer(settings.audit_log_capacity), sink=sink
    )
    rate_limiter = ImpersonationRateLimiter(session_store, config_store)
    users = UserDirectory()
    if settings.admin_username and settings.admin_password:
        users.register(
            Principal(id=settings.admin_username, role=UserRole.SUPER_ADMIN, tenant_id=None),
            settings.admin_password,
        )

    logger.info("container_built", use_database=settings.use_database, audit_sink=sink is not None)
    return Container(
        settings=settings,
        backend=backend,
        gateway=gateway,
        customers=CustomerService(CustomerRepository(backend), gateway),
        rate_limiter=rate_limiter,
        impersonation=ImpersonationManager(rate_limiter),
        users=users,
        sessions=SessionAuth(settings.secret_key, settings.session_max_age),
    )


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_principal(request: Request, container: Container = Depends(get_container)) -> Principal:
    """Resolve the session principal once per request; 401 when absent."""
    principal = container.sessions.validate_session(request.cookies.get(SESSION_COOKIE))
    if principal is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    structlog.contextvars.bind_contextvars(
        user_id=principal.id,
        tenant_id=principal.tenant_id,
        impersonated_by=principal.impersonated_by,
    )
    return principal


def require_super_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_super_admin:
        logger.warning("super_admin_required", user_id=principal.id)
        raise HTTPException(status_code=403, detail="Access denied")
    return principal
