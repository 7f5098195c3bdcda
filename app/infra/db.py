"""
Database infrastructure configuration

SQLAlchemy async engine and session management.
The engine is created in the application lifespan so it lives on the serving loop.
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool, StaticPool

from app.core.config import settings
from app.models import Base

logger = logging.getLogger(__name__)

engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine.
    In-memory SQLite shares one connection; file SQLite opens one per session.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=settings.db_echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if ":memory:" in database_url else NullPool,
        )
    return create_async_engine(
        database_url,
        echo=settings.db_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        poolclass=AsyncAdaptedQueuePool,
        pool_pre_ping=True,  # Automatically detect and disconnect invalid connections
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(database_url: Optional[str] = None, create_all: Optional[bool] = None) -> AsyncEngine:
    """Initialize the global engine and session factory"""
    global engine, AsyncSessionLocal
    engine = build_engine(database_url or settings.database_url)
    AsyncSessionLocal = build_sessionmaker(engine)

    if settings.db_auto_create if create_all is None else create_all:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")
    return engine


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Dependency for long-lived handlers (WebSocket) that open a short
    session per unit of work instead of holding one for their lifetime.
    """
    if AsyncSessionLocal is None:
        await init_db()
    return AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database session.
    Yields a session and closes it after use.
    """
    if AsyncSessionLocal is None:
        await init_db()

    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def close_db_connection():
    """Close database connection pool"""
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
