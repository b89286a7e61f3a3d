"""
Database Connection Module
Handles the async SQLAlchemy engine, session factory and declarative base.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from orderflow.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,  # Connection pool size
    max_overflow=10  # Extra connections when pool is full
)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """
    Session for Celery tasks.

    Each task runs its own event loop, so pooled connections from the
    module-level engine cannot be reused; a NullPool engine is created
    and disposed per task instead.
    """
    task_engine = create_async_engine(settings.database_url, poolclass=NullPool)
    session_maker = async_sessionmaker(
        bind=task_engine, class_=AsyncSession, expire_on_commit=False
    )
    try:
        async with session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()


async def init_db():
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Models must be imported so they register with Base.metadata
    from orderflow import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
