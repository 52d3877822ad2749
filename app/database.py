"""
Database connection management.

Uses SQLAlchemy 2.0 async; asyncpg in production, any async driver the
configured URL names (aiosqlite in tests).
"""
from collections.abc import AsyncGenerator

import structlog
from fastapi import Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_from_settings(database_url: str | None = None) -> AsyncEngine:
    """Build an async engine for the configured (or given) database URL."""
    url = database_url or settings.database_url
    engine_kwargs = {"echo": settings.database_echo, "pool_pre_ping": True}
    if url.startswith("postgresql"):
        engine_kwargs["pool_size"] = settings.database_pool_size
        engine_kwargs["max_overflow"] = settings.database_max_overflow
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by services; objects stay usable after commit."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def init_db(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory

    if _session_factory is not None:
        return _session_factory

    _engine = create_engine_from_settings(database_url)
    _session_factory = create_session_factory(_engine)
    logger.info("Database engine initialized", driver=_engine.url.drivername)
    return _session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, initializing it on first use."""
    if _session_factory is None:
        return init_db()
    return _session_factory


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed")


async def init_models(engine: AsyncEngine) -> None:
    """
    Create all tables. Only used for tests and local development;
    production schemas are managed outside this service.
    """
    from app.models import database  # noqa: F401  (registers the mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI - provides a database session.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_session)):
            ...
    """
    async with session_factory() as session:
        yield session


async def check_db_health() -> dict:
    """Check database connectivity and return status."""
    try:
        async with get_session_factory()() as db:
            result = await db.execute(text("SELECT 1"))
            result.scalar()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
