"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

# Registers table models on SQLModel.metadata
import tenantguard.models.database  # noqa: F401
from tenantguard.audit.ring_buffer import AuditRingBuffer
from tenantguard.auth.context import Principal
from tenantguard.auth.validation import TenantValidationGateway
from tenantguard.config.settings import Settings
from tenantguard.storage.backends.memory import InMemoryBackend
from tenantguard.types import UserRole
from tenantguard.web.app import create_app

PASSWORD = "s3cret-pass"


class FakeClock:
    """Settable clock for time-window tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture()
def tenant1_admin() -> Principal:
    return Principal(id="user-1", role=UserRole.ADMIN, tenant_id="tenant-1")


@pytest.fixture()
def tenant1_agent() -> Principal:
    return Principal(id="user-1b", role=UserRole.AGENT, tenant_id="tenant-1")


@pytest.fixture()
def tenant2_admin() -> Principal:
    return Principal(id="user-2", role=UserRole.ADMIN, tenant_id="tenant-2")


@pytest.fixture()
def super_admin() -> Principal:
    return Principal(id="root", role=UserRole.SUPER_ADMIN, tenant_id=None)


@pytest.fixture()
def orphan() -> Principal:
    """Non-super-admin with no tenant assignment."""
    return Principal(id="user-x", role=UserRole.AGENT, tenant_id=None)


@pytest.fixture()
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture()
def gateway() -> TenantValidationGateway:
    return TenantValidationGateway(audit_log=AuditRingBuffer(100))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        use_database=False,
        secret_key="test-secret",
        debug=True,
        admin_username="root",
        admin_password=PASSWORD,
        impersonation_max_per_hour=3,
        impersonation_max_concurrent=2,
    )


@pytest.fixture()
def app(settings, tenant1_admin, tenant2_admin, orphan):
    """Fresh app with one user per tenant registered next to the bootstrap super-admin."""
    app = create_app(settings)
    users = app.state.container.users
    for principal in (tenant1_admin, tenant2_admin, orphan):
        users.register(principal, PASSWORD)
    return app


@pytest.fixture()
def signed_in(app):
    """``async with signed_in("user-1") as client`` yields a logged-in AsyncClient."""

    @asynccontextmanager
    async def _signed_in(username: str, password: str = PASSWORD) -> AsyncIterator[AsyncClient]:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.post(
                "/api/auth/login", json={"username": username, "password": password}
            )
            assert resp.status_code == 200, resp.text
            yield client

    return _signed_in


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
