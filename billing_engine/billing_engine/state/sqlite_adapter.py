"""SQLite backend for ``accounts serve --local``, the CLI and the test suite.

The three billing tables are created straight from the ORM metadata rather
than through Alembic.  Dialect differences the rest of the package relies on:

* ``SELECT ... FOR UPDATE`` compiles to a plain ``SELECT``; the single
  writer lock gives the same per-user serialisation.
* ``INSERT ... ON CONFLICT`` upserts use the SQLite insert construct.
* ``DateTime(timezone=True)`` values are stored and returned naive.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def sqlite_url(db_path: Path | str) -> str:
    """Build an aiosqlite URL, creating the parent directory of a file database."""
    if str(db_path) == MEMORY:
        return f"sqlite+aiosqlite:///{MEMORY}"
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{path}"


def _apply_pragmas(dbapi_conn, _record) -> None:  # noqa: ANN001
    cursor = dbapi_conn.cursor()
    for pragma in _PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_local_engine(db_path: Path | str = ".accounts/state.db") -> AsyncEngine:
    """Return an engine for the SQLite file at *db_path* (or ``:memory:``)."""
    url = sqlite_url(db_path)
    engine = create_async_engine(url, connect_args={"check_same_thread": False})
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("SQLite engine ready at %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create the entitlement, customer and event ledger tables if missing."""
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Billing tables ensured on %s", engine.url)

