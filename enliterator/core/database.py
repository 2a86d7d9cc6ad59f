"""
Enliterator Pipeline - Database Connection
==========================================

Async SQLAlchemy setup with connection pooling.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from enliterator.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine() -> AsyncEngine:
    """Create async database engine with connection pooling."""
    # SQLite doesn't support pool_size/max_overflow
    if settings.is_sqlite:
        return create_async_engine(
            str(settings.DATABASE_URL),
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    else:
        return create_async_engine(
            str(settings.DATABASE_URL),
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=settings.DATABASE_ECHO,
            pool_pre_ping=True,  # Verify connections before use
        )


engine = create_engine()


# ==========================================================================
# Session Factory
# ==========================================================================

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Sessions
# ==========================================================================

@asynccontextmanager
async def get_db_session(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for a unit-of-work session.

    Commits on clean exit, rolls back on error. Pipeline components take a
    session factory so tests can point them at an in-memory database.

    Usage:
        async with get_db_session(factory) as session:
            ...
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(db_engine: AsyncEngine = engine) -> None:
    """Initialize database (create tables if not exist)."""
    async with db_engine.begin() as conn:
        # Import all models to register them
        from enliterator.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db(db_engine: AsyncEngine = engine) -> None:
    """Close database connections."""
    await db_engine.dispose()
