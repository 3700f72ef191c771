"""
GrantDesk Backend: Database Session Management
===============================================

What:  Async SQLAlchemy engine, session factory, and a transactional scope.
How:   Built on demand from settings when MESSAGE_STORE=database. The relay
       runs without any database in the default in-memory mode, so nothing
       here connects at import time.
Who:   main.py lifespan (build/create tables/dispose) and DatabaseMessageLog.

Connection Pooling (server databases only):
    pool_size / max_overflow:  from settings (DB_POOL_SIZE, DB_MAX_OVERFLOW)
    pool_pre_ping:             validates connections before use
    pool_recycle=3600:         recycles connections every hour
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from grantdesk.config import settings


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    `Base.metadata.create_all` is run at startup for the durable message
    store; the schema is a single append-only table.
    """
    pass


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine.

    Args:
        database_url: Override for settings.database_url (tests pass a
            throwaway aiosqlite URL here).
    """
    url = database_url or settings.database_url
    options: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    # SQLite (tests) has no QueuePool; pool sizing only applies to servers
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows stay readable after the session commits
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables registered on Base.metadata."""
    # Registers ChatMessageRecord on Base.metadata
    from grantdesk.models import chat_message  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope around a series of operations.

    How it works:
        1. Creates a new session from the factory
        2. Yields it to the caller
        3. On success: commits the transaction
        4. On error: rolls back and re-raises
        5. Always: closes the session (returns connection to pool)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def dispose_engine(engine: Optional[AsyncEngine]) -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    if engine is not None:
        await engine.dispose()
