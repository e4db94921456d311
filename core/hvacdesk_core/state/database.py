"""Async engine construction and transactional session scopes.

The URL scheme picks the backend:
  - ``postgresql+asyncpg://`` → pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → local SQLite engine (see :mod:`.sqlite_adapter`)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Server-side guards applied to every PostgreSQL connection (milliseconds).
_PG_STATEMENT_TIMEOUT_MS = 30_000
_PG_LOCK_TIMEOUT_MS = 10_000


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Build the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL or SQLite connection string.
    pool_size:
        Persistent PostgreSQL connections. Ignored for SQLite.
    max_overflow:
        Extra PostgreSQL connections allowed under burst. Ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from hvacdesk_core.state.sqlite_adapter import get_local_engine

        _, _, db_path = database_url.partition("///")
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_PG_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_PG_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to *engine*.

    Objects stay loaded after commit so handlers can serialise the rows
    they just wrote.
    """
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Run one unit of work: commit on clean exit, roll back on error."""
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
