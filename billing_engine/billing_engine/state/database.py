"""Engine and session helpers shared by the API, the CLI and the tests.

The URL scheme picks the backend: ``postgresql+asyncpg://`` gets a pooled
engine with server-side statement and lock timeouts, ``sqlite+aiosqlite://``
is handed to :mod:`billing_engine.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

# Webhook deliveries must finish well inside Stripe's timeout, so a stuck
# statement or row lock is cut short rather than waited out.
_PG_SERVER_SETTINGS: dict[str, str] = {
    "statement_timeout": "15000",
    "lock_timeout": "5000",
}


def get_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 10) -> AsyncEngine:
    """Create an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) URL.  A SQLite URL without
        a path opens an in-memory database.
    pool_size, max_overflow:
        PostgreSQL pool sizing; ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from billing_engine.state.sqlite_adapter import MEMORY, get_local_engine

        _, _, db_path = database_url.partition(":///")
        return get_local_engine(db_path or MEMORY)

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"server_settings": _PG_SERVER_SETTINGS},
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to *engine*; loaded rows stay usable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on clean exit, roll back and re-raise otherwise."""
    session = get_session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def ping(engine: AsyncEngine) -> bool:
    """Return ``True`` when the database answers ``SELECT 1``."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Database ping failed", exc_info=True)
        return False
    return True
