"""Async engine and session management, one engine per database URL."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

DEFAULT_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///./data/polycopy.db"

# db_url -> (engine, session factory)
_engines: dict[str, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}


def get_async_engine(database_url: str = DEFAULT_ASYNC_DATABASE_URL) -> AsyncEngine:
    """Get or create the async engine for *database_url*."""
    if database_url not in _engines:
        engine = create_async_engine(database_url, echo=False, pool_pre_ping=True)
        factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
        _engines[database_url] = (engine, factory)
    return _engines[database_url][0]


def get_async_session_factory(
    database_url: str = DEFAULT_ASYNC_DATABASE_URL,
) -> async_sessionmaker[AsyncSession]:
    get_async_engine(database_url)
    return _engines[database_url][1]


@asynccontextmanager
async def get_session(
    database_url: str = DEFAULT_ASYNC_DATABASE_URL,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = get_async_session_factory(database_url)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db_async(database_url: str = DEFAULT_ASYNC_DATABASE_URL) -> None:
    """Create all tables."""
    engine = get_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db_async(database_url: str | None = None) -> None:
    """Dispose one engine, or all of them when no URL is given."""
    urls = [database_url] if database_url else list(_engines)
    for url in urls:
        entry = _engines.pop(url, None)
        if entry is not None:
            await entry[0].dispose()


def reset_engines() -> None:
    """Forget cached engines without disposing them. Useful for testing."""
    _engines.clear()
