"""Impersonation session log and rate-limit configuration stores.

Each store has an in-memory version (local development and tests) and a
database-backed version with the same async interface.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

import structlog
from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.models.database import (
    ImpersonationQuotaResetRecord,
    ImpersonationSessionRecord,
    RateLimitConfigRecord,
    as_utc,
)
from tenantguard.models.domain import ImpersonationSession, RateLimitConfig

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

GLOBAL_RESET_KEY = "*"


class SessionStore(Protocol):
    async def add(
        self,
        super_admin_id: str,
        impersonated_user_id: str,
        tenant_id: str,
        started_at: datetime,
        reason: str | None = None,
    ) -> ImpersonationSession: ...

    async def get(self, session_id: str) -> ImpersonationSession | None: ...

    async def close(self, session_id: str, ended_at: datetime) -> ImpersonationSession | None: ...

    async def started_since(
        self, super_admin_id: str, since: datetime
    ) -> list[ImpersonationSession]: ...

    async def active(self, super_admin_id: str | None = None) -> list[ImpersonationSession]: ...

    async def mark_quota_reset(self, super_admin_id: str | None, at: datetime, by: str) -> None: ...

    async def quota_reset_at(self, super_admin_id: str) -> datetime | None: ...


class ConfigStore(Protocol):
    async def load(self) -> RateLimitConfig: ...

    async def save(self, config: RateLimitConfig) -> RateLimitConfig: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    """Session log kept in a dict (SQL-backed version in production)."""

    def __init__(self) -> None:
        self._sessions: dict[str, ImpersonationSession] = {}
        self._resets: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def add(
        self,
        super_admin_id: str,
        impersonated_user_id: str,
        tenant_id: str,
        started_at: datetime,
        reason: str | None = None,
    ) -> ImpersonationSession:
        session = ImpersonationSession(
            id=str(uuid.uuid4()),
            super_admin_id=super_admin_id,
            impersonated_user_id=impersonated_user_id,
            tenant_id=tenant_id,
            started_at=started_at,
            reason=reason,
        )
        async with self._lock:
            self._sessions[session.id] = session
        return session

    async def get(self, session_id: str) -> ImpersonationSession | None:
        return self._sessions.get(session_id)

    async def close(self, session_id: str, ended_at: datetime) -> ImpersonationSession | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.ended_at is None:
                session = session.model_copy(update={"ended_at": ended_at})
                self._sessions[session_id] = session
            return session

    async def started_since(
        self, super_admin_id: str, since: datetime
    ) -> list[ImpersonationSession]:
        return sorted(
            (
                s
                for s in self._sessions.values()
                if s.super_admin_id == super_admin_id and s.started_at >= since
            ),
            key=lambda s: s.started_at,
        )

    async def active(self, super_admin_id: str | None = None) -> list[ImpersonationSession]:
        return sorted(
            (
                s
                for s in self._sessions.values()
                if s.ended_at is None
                and (super_admin_id is None or s.super_admin_id == super_admin_id)
            ),
            key=lambda s: s.started_at,
        )

    async def mark_quota_reset(self, super_admin_id: str | None, at: datetime, by: str) -> None:
        async with self._lock:
            self._resets[super_admin_id or GLOBAL_RESET_KEY] = at

    async def quota_reset_at(self, super_admin_id: str) -> datetime | None:
        marks = [
            self._resets[key]
            for key in (super_admin_id, GLOBAL_RESET_KEY)
            if key in self._resets
        ]
        return max(marks) if marks else None


class InMemoryConfigStore:
    def __init__(self, initial: RateLimitConfig | None = None) -> None:
        self._config = initial or RateLimitConfig()

    async def load(self) -> RateLimitConfig:
        return self._config

    async def save(self, config: RateLimitConfig) -> RateLimitConfig:
        self._config = config
        return config


# ---------------------------------------------------------------------------
# Database-backed
# ---------------------------------------------------------------------------


def _session_from_record(record: ImpersonationSessionRecord) -> ImpersonationSession:
    return ImpersonationSession(
        id=record.id,
        super_admin_id=record.super_admin_id,
        impersonated_user_id=record.impersonated_user_id,
        tenant_id=record.tenant_id,
        started_at=as_utc(record.started_at),
        ended_at=as_utc(record.ended_at) if record.ended_at else None,
        reason=record.reason,
    )


class DatabaseSessionStore:
    """Session log in ``super_user_impersonation_logs``."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def add(
        self,
        super_admin_id: str,
        impersonated_user_id: str,
        tenant_id: str,
        started_at: datetime,
        reason: str | None = None,
    ) -> ImpersonationSession:
        async with AsyncSession(self._engine) as session:
            record = ImpersonationSessionRecord(
                super_admin_id=super_admin_id,
                impersonated_user_id=impersonated_user_id,
                tenant_id=tenant_id,
                started_at=as_utc(started_at),
                reason=reason,
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _session_from_record(record)

    async def get(self, session_id: str) -> ImpersonationSession | None:
        async with AsyncSession(self._engine) as session:
            record = await session.get(ImpersonationSessionRecord, session_id)
            return _session_from_record(record) if record else None

    async def close(self, session_id: str, ended_at: datetime) -> ImpersonationSession | None:
        async with AsyncSession(self._engine) as session:
            record = await session.get(ImpersonationSessionRecord, session_id)
            if record is None:
                return None
            if record.ended_at is None:
                record.ended_at = as_utc(ended_at)
                session.add(record)
                await session.commit()
                await session.refresh(record)
            return _session_from_record(record)

    async def started_since(
        self, super_admin_id: str, since: datetime
    ) -> list[ImpersonationSession]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(ImpersonationSessionRecord)
                .where(ImpersonationSessionRecord.super_admin_id == super_admin_id)
                .where(ImpersonationSessionRecord.started_at >= as_utc(since))
                .order_by(col(ImpersonationSessionRecord.started_at))
            )
            results = await session.execute(statement)
            return [_session_from_record(r) for r in results.scalars().all()]

    async def active(self, super_admin_id: str | None = None) -> list[ImpersonationSession]:
        async with AsyncSession(self._engine) as session:
            statement = select(ImpersonationSessionRecord).where(
                col(ImpersonationSessionRecord.ended_at).is_(None)
            )
            if super_admin_id is not None:
                statement = statement.where(
                    ImpersonationSessionRecord.super_admin_id == super_admin_id
                )
            statement = statement.order_by(col(ImpersonationSessionRecord.started_at))
            results = await session.execute(statement)
            return [_session_from_record(r) for r in results.scalars().all()]

    async def mark_quota_reset(self, super_admin_id: str | None, at: datetime, by: str) -> None:
        key = super_admin_id or GLOBAL_RESET_KEY
        async with AsyncSession(self._engine) as session:
            record = await session.get(ImpersonationQuotaResetRecord, key)
            if record is None:
                record = ImpersonationQuotaResetRecord(super_admin_id=key)
            record.reset_at = as_utc(at)
            record.reset_by = by
            session.add(record)
            await session.commit()

    async def quota_reset_at(self, super_admin_id: str) -> datetime | None:
        async with AsyncSession(self._engine) as session:
            statement = select(func.max(ImpersonationQuotaResetRecord.reset_at)).where(
                col(ImpersonationQuotaResetRecord.super_admin_id).in_(
                    [super_admin_id, GLOBAL_RESET_KEY]
                )
            )
            value = (await session.execute(statement)).scalar_one()
            return as_utc(value) if value else None


class DatabaseConfigStore:
    """Single-row configuration in ``impersonation_rate_limit_config``."""

    def __init__(self, engine: AsyncEngine, defaults: RateLimitConfig | None = None) -> None:
        self._engine = engine
        self._defaults = defaults or RateLimitConfig()

    async def load(self) -> RateLimitConfig:
        async with AsyncSession(self._engine) as session:
            record = await session.get(RateLimitConfigRecord, self._defaults.id)
            if record is None:
                return self._defaults
            return RateLimitConfig(
                id=record.id,
                max_per_hour=record.max_impersonations_per_hour,
                max_concurrent=record.max_concurrent_sessions,
                max_duration_minutes=record.max_session_duration_minutes,
                enabled=record.enabled,
                created_at=as_utc(record.created_at),
                updated_at=as_utc(record.updated_at),
            )

    async def save(self, config: RateLimitConfig) -> RateLimitConfig:
        async with AsyncSession(self._engine) as session:
            record = await session.get(RateLimitConfigRecord, config.id)
            if record is None:
                record = RateLimitConfigRecord(
                    id=config.id, created_at=as_utc(config.created_at)
                )
            record.max_impersonations_per_hour = config.max_per_hour
            record.max_concurrent_sessions = config.max_concurrent
            record.max_session_duration_minutes = config.max_duration_minutes
            record.enabled = config.enabled
            record.updated_at = as_utc(config.updated_at)
            session.add(record)
            await session.commit()
        logger.info("rate_limit_config_saved", config_id=config.id)
        return config
