"""
Catalog Database

One async engine per process for the table that stores user datasources.
Opened in the application lifespan and disposed on shutdown.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tinypivot_api.config import get_settings

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def _session_factory() -> async_sessionmaker[AsyncSession]:
    """Build the engine on first use."""
    global _engine, _sessions

    if _sessions is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
        _sessions = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)

    return _sessions


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped catalog session.

    Commits when the request handler returns, rolls back when it raises.
    """
    async with _session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


DbSession = Annotated[AsyncSession, Depends(get_db)]


async def init_db() -> None:
    """Open the engine and check the catalog is reachable."""
    async with _session_factory()() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    global _engine, _sessions

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessions = None
