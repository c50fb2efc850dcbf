"""
Database Connection Module
Builds the async SQLAlchemy engine and session factory.
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.config import settings
from app.database.base import Base

logger = logging.getLogger(__name__)

# Keep SQL out of application logs unless explicitly echoed
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    """
    Create an async engine for a database URL.

    SQLite (tests, local tooling) gets NullPool so every session opens its
    own connection; server databases get a pre-pinged pool sized from settings.
    """
    if database_url.startswith("sqlite"):
        kwargs.setdefault("poolclass", NullPool)
    else:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_size", settings.database_pool_size)
        kwargs.setdefault("max_overflow", settings.database_max_overflow)

    return create_async_engine(database_url, echo=settings.database_echo, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to an engine.

    Objects stay loaded after commit: services return ORM rows to routers
    after committing.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine = build_engine(settings.database_url)
async_session_factory = build_session_factory(async_engine)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides an async database session.

    Usage:
        @router.get("/status")
        async def get_status(session: AsyncSession = Depends(get_async_session)):
            ...

    Yields:
        AsyncSession: Committed on success, rolled back on error.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create the connection, OAuth state and cache tables if missing.

    Args:
        engine: Engine to use; defaults to the application engine
    """
    # Models register themselves on Base.metadata at import
    import app.models  # noqa: F401

    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready (%d tables)", len(Base.metadata.tables))


async def close_db() -> None:
    """
    Close database connections.
    Call this during application shutdown.
    """
    await async_engine.dispose()
