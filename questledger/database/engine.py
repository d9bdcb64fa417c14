"""
questledger.database.engine — Engine, Sessions and the Thread Bridge
=====================================================================

The ledger is written through synchronous SQLAlchemy + psycopg2, but the
disbursement coordinator is a coroutine.  Every storage call therefore
goes through :func:`run_db`, which hands the blocking function to the
default thread pool and awaits it.

Deadlines are enforced twice:

* the coordinator wraps ``run_db`` in ``asyncio.wait_for`` so a caller
  never waits longer than ``storage_timeout_seconds``;
* :func:`create_db_engine` sets PostgreSQL's ``statement_timeout`` (and a
  matching ``lock_timeout``) so a statement the caller has given up on is
  aborted by the server instead of committing later.

Usage::

    engine = create_db_engine(statement_timeout=cfg.storage_timeout_seconds)
    init_db(engine)

    with get_session(engine) as session:
        ...                                   # commits on exit

    view = await run_db(query_balance, engine, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from questledger.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _postgres_connect_args(statement_timeout: float | None) -> dict:
    if not statement_timeout:
        return {}
    ms = max(1, int(statement_timeout * 1000))
    return {"options": f"-c statement_timeout={ms} -c lock_timeout={ms}"}


def create_db_engine(url: str | None = None, *, statement_timeout: float | None = None) -> Engine:
    """Build the ledger :class:`Engine` from *url* or ``DATABASE_URL``.

    *statement_timeout* (seconds) is applied server-side on PostgreSQL and
    ignored for other backends.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is unset.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and point it at the ledger database."
        )

    connect_args = {}
    if make_url(url).get_backend_name() == "postgresql":
        connect_args = _postgres_connect_args(statement_timeout)

    engine = create_engine(
        url,
        connect_args=connect_args,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info(
        "Ledger database → %s (statement timeout %s)",
        engine.url.host, f"{statement_timeout}s" if connect_args else "off",
    )
    return engine


def init_db(engine: Engine) -> None:
    """Create any missing tables and seed default reward settings.

    Alembic owns the production schema; this keeps a fresh dev database
    usable without running migrations first.
    """
    Base.metadata.create_all(engine)

    from questledger.database.seed import seed_default_settings

    seed_default_settings(engine)
    logger.info("Ledger schema verified.")


@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """One transaction: commit on clean exit, roll back on any exception.

    Objects stay readable after commit (``expire_on_commit=False``) so
    units of work can return ORM rows to the event loop.
    """
    with Session(engine, expire_on_commit=False) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await a blocking database function on the default thread pool."""
    return await asyncio.to_thread(func, *args, **kwargs)
