"""Alembic environment for the Propflow store.

There is no ``alembic.ini``; :func:`propflow_engine.state.database.upgrade_database`
builds the config in code.  When the config carries no ``sqlalchemy.url``
the engine settings (``PROPFLOW_DATABASE_URL``) supply it.
"""

from __future__ import annotations

import logging

from alembic import context
from sqlalchemy import create_engine, pool

from propflow_engine.config import load_settings
from propflow_engine.state.database import sync_database_url
from propflow_engine.state.tables import Base

logger = logging.getLogger("propflow_engine.migrations")

config = context.config
target_metadata = Base.metadata


def _migration_url() -> str:
    url = config.get_main_option("sqlalchemy.url") or load_settings().database_url
    return sync_database_url(url)


def run_migrations_offline() -> None:
    context.configure(
        url=_migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _migration_url()
    connectable = create_engine(url, poolclass=pool.NullPool)
    logger.info("Running migrations against %s", connectable.url.render_as_string(hide_password=True))

    try:
        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
