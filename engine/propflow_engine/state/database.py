"""Engine and session-factory construction for the Propflow store.

The URL scheme picks the backend:

* ``postgresql+asyncpg://`` gives a pooled engine whose connections carry
  statement and lock timeouts, so a transition stuck behind another
  writer's ``FOR UPDATE`` fails instead of hanging.
* ``sqlite+aiosqlite://`` is delegated to :mod:`propflow_engine.state.sqlite_adapter`.

Every service expects sessions from :func:`make_session_factory`; rows are
read after commit, so ``expire_on_commit`` is off.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_SQLITE_MEMORY = ":memory:"


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path in a ``sqlite+aiosqlite:///...`` URL.

    ``sqlite+aiosqlite://`` and ``sqlite+aiosqlite:///:memory:`` both map to
    ``":memory:"``.
    """
    _, _, path = database_url.partition(":///")
    return path or _SQLITE_MEMORY


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    *,
    statement_timeout_ms: int = 30_000,
    lock_timeout_ms: int = 10_000,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Pool sizing and the two timeouts only apply to PostgreSQL.
    """
    if database_url.startswith("sqlite"):
        from propflow_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "statement_timeout": str(statement_timeout_ms),
                "lock_timeout": str(lock_timeout_ms),
            }
        },
    )
    logger.info(
        "Created PostgreSQL engine (pool=%d+%d, lock_timeout=%dms)",
        pool_size,
        max_overflow,
        lock_timeout_ms,
    )
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

_ASYNC_TO_SYNC_DRIVERS: tuple[tuple[str, str], ...] = (
    ("postgresql+asyncpg://", "postgresql+psycopg://"),
    ("postgresql://", "postgresql+psycopg://"),
    ("sqlite+aiosqlite://", "sqlite://"),
)


def sync_database_url(database_url: str) -> str:
    """Swap an async driver for its synchronous counterpart.

    Alembic runs on a synchronous connection: asyncpg URLs move to psycopg
    (with ``ssl=require`` rewritten to ``sslmode=require``) and aiosqlite
    URLs to the stdlib ``sqlite3`` driver.
    """
    for async_prefix, sync_prefix in _ASYNC_TO_SYNC_DRIVERS:
        if database_url.startswith(async_prefix):
            database_url = sync_prefix + database_url[len(async_prefix) :]
            break
    return database_url.replace("ssl=require", "sslmode=require")


def upgrade_database(database_url: str, revision: str = "head") -> None:
    """Apply the bundled Alembic migrations to *database_url*."""
    from alembic import command
    from alembic.config import Config

    cfg = Config()
    cfg.set_main_option("script_location", str(Path(__file__).parent / "migrations"))
    # ConfigParser interpolation treats "%" as special.
    cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    logger.info("Upgrading database schema to %s", revision)
    command.upgrade(cfg, revision)
