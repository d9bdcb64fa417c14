"""Alembic environment for the QuestLedger schema.

The target URL is ``DATABASE_URL`` (loaded from ``.env``), falling back to
``sqlalchemy.url`` in alembic.ini.  SQLite targets run in batch mode so
column changes work on local dev databases.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

from alembic import context
from questledger.database.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _target_url() -> str:
    load_dotenv()
    return os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")


def _configure(url: str, **kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        render_as_batch=make_url(url).get_backend_name() == "sqlite",
        **kwargs,
    )


def run_offline(url: str) -> None:
    """Emit SQL for *url* without connecting."""
    _configure(url, url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    engine = create_engine(url, poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(url, connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline(_target_url())
else:
    run_online(_target_url())
