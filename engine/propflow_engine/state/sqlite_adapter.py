"""SQLite backend for local runs and the test suites.

The ORM tables are shared with PostgreSQL; what differs is how concurrency
is enforced.  SQLite ignores ``SELECT ... FOR UPDATE``, so the row locks
the workflow engine takes are no-ops here.  Correctness comes from the
guarded ``UPDATE ... WHERE`` statements instead: SQLite admits a single
writer at a time and a second deposit or transition sees the first one's
committed state.

Every connection is opened with foreign keys on.  SQLite leaves them off
by default, which would let a cash receipt point at a service request
that does not exist.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = ".propflow/state.db"

# Seconds a writer waits for the database lock before raising.
BUSY_TIMEOUT_S = 30

_CONNECTION_PRAGMAS: tuple[str, ...] = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


def _apply_pragmas(dbapi_conn: Any, _record: Any) -> None:
    cursor = dbapi_conn.cursor()
    try:
        for pragma in _CONNECTION_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def _local_url(db_path: Path | str) -> str:
    if str(db_path) == ":memory:":
        return "sqlite+aiosqlite:///:memory:"
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{path}"


def get_local_engine(db_path: Path | str = DEFAULT_DB_PATH) -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*.

    Missing parent directories are created.  ``":memory:"`` gives a
    throwaway database that lives as long as its connection.
    """
    url = _local_url(db_path)
    engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_S},
    )
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing tables.  Existing tables are left untouched."""
    from propflow_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("SQLite schema ensured (%d tables)", len(Base.metadata.tables))
