"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session

from questledger.database.models import Base
from questledger.database.seed import seed_default_settings
from questledger.engine.cache import ConfigCache
from questledger.errors import TransferError
from questledger.services.transfer import TransferReceipt


@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


ALICE = "0x" + "a" * 64
BOB = "0x" + "b" * 64

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a fresh event loop."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all QuestLedger tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_default_settings(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cache(db_engine: Engine) -> ConfigCache:
    """A ConfigCache warmed from the seeded settings table."""
    cache = ConfigCache(db_engine)
    cache.load_all()
    return cache


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------
class FakeClock:
    """Manually advanced clock; ``sleep`` records the delay and advances time."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


HANG = object()


class ScriptedTransfer:
    """TokenTransferService that plays back a script of results.

    Each script item is a digest string (success), a TransferError
    instance (raised), or :data:`HANG` (never returns, so the caller's
    timeout fires).  Once the script runs out every call succeeds.
    """

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.calls: list[tuple[str, Decimal, str]] = []

    async def transfer(self, user_id: str, amount: Decimal, memo: str) -> TransferReceipt:
        self.calls.append((user_id, amount, memo))
        step = self.script.pop(0) if self.script else f"digest-{len(self.calls)}"
        if step is HANG:
            await asyncio.sleep(3600)
        if isinstance(step, TransferError):
            raise step
        return TransferReceipt(tx_ref=step)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
