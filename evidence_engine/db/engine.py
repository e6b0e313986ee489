"""Persistence connections for evidence records and rate-limit counters.

One async SQLAlchemy engine (asyncpg) and session factory shared by
SqlEvidenceRepository, plus the Redis client behind the upload rate limiter.
Nothing connects at import time; db_lifespan() opens and closes both.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from evidence_engine.config import DatabaseSettings, settings

logger = logging.getLogger(__name__)


def build_engine(cfg: DatabaseSettings) -> AsyncEngine:
    return create_async_engine(
        cfg.database_url,
        echo=settings.log_level == "DEBUG",
        pool_size=cfg.db_pool_size,
        max_overflow=cfg.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


engine: AsyncEngine = build_engine(settings.db)

# expire_on_commit=False: repositories map rows to schemas after the session closes
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

redis_client: aioredis.Redis = aioredis.from_url(settings.db.redis_url, decode_responses=True)


async def init_db() -> None:
    """Check the database is reachable; create the evidence table in dev/test."""
    from evidence_engine.models import Base

    async with engine.begin() as conn:
        if settings.db.db_create_tables and not settings.is_production:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Evidence tables ensured (%s)", ", ".join(Base.metadata.tables))


async def close_db() -> None:
    await engine.dispose()
    await redis_client.aclose()


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Open the database for the app's lifetime, disposing pools on exit."""
    await init_db()
    try:
        yield
    finally:
        await close_db()
