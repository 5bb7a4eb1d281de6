"""
Database layer — async PostgreSQL via SQLAlchemy 2.0 + asyncpg.

The secondary (replica) store behind the storage router. Nothing here runs
at import time: the engine is created by ``build_engine`` in
core.dependencies and handed to ``SqlBackend``.

Provides:
    • Async engine and session factory constructors
    • Base model for ORM entities (see storage.tables)
    • Table creation / disposal helpers

Usage:
    engine = create_engine(settings)
    sessions = create_session_factory(engine)
    async with sessions() as session:
        result = await session.execute(select(AlertRow))
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_engine(config: Settings) -> AsyncEngine:
    """Async engine with the configured pool; connects lazily."""
    return create_async_engine(
        config.DATABASE_URL,
        pool_size=config.DATABASE_POOL_SIZE,
        max_overflow=config.DATABASE_MAX_OVERFLOW,
        echo=config.DATABASE_ECHO,
        pool_pre_ping=True,
    )


# ── Session Factory ──
def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register the mapped tables on Base.metadata
    from backend.app.storage import tables  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
