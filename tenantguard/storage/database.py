"""Async database engine and schema bootstrap."""

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from tenantguard.config.settings import get_settings

# Registers table models on SQLModel.metadata
from tenantguard.models import database as _tables  # noqa: F401


@lru_cache
def get_engine() -> AsyncEngine:
    """Return a cached async database engine (singleton per process)."""
    settings = get_settings()
    kwargs = {}
    if not settings.database_url.startswith("sqlite"):
        kwargs = {"pool_size": 5, "max_overflow": 10, "pool_recycle": 3600}
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        **kwargs,
    )


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (dev/testing; production schemas are managed separately)."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
