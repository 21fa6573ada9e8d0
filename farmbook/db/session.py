"""
Database Session Management - Async SQLAlchemy session factory.

Engines are created lazily on first use and disposed at shutdown. The primary
serves all writes; the optional replica serves bookkeeping reads.
"""

from collections.abc import AsyncGenerator
from typing import Literal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from farmbook.config import settings
from farmbook.observability.tracing import instrument_sqlalchemy

Role = Literal["write", "read"]

_engines: dict[Role, AsyncEngine] = {}
_session_factories: dict[Role, async_sessionmaker[AsyncSession]] = {}


def get_engine(role: Role = "write") -> AsyncEngine:
    """Get or create the engine for the primary ("write") or replica ("read")."""
    engine = _engines.get(role)
    if engine is None:
        url = settings.database_url if role == "write" else settings.read_database_url
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level == "DEBUG",
        )
        instrument_sqlalchemy(engine)
        _engines[role] = engine
    return engine


def get_session_factory(role: Role = "write") -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory for an engine role."""
    factory = _session_factories.get(role)
    if factory is None:
        factory = async_sessionmaker(
            get_engine(role),
            class_=AsyncSession,
            expire_on_commit=False,
        )
        _session_factories[role] = factory
    return factory


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a primary database session.

    Usage:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with get_session_factory("write")() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for a replica session (falls back to the primary)."""
    async with get_session_factory("read")() as session:
        yield session


async def ping_database() -> bool:
    """Run a trivial query against the primary."""
    async with get_session_factory("write")() as session:
        await session.execute(text("SELECT 1"))
    return True


async def close_engines() -> None:
    """Dispose all engines (graceful shutdown)."""
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
    _session_factories.clear()
