"""
questledger.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- ledger_entries       — One row per disbursement attempt, keyed by the
                         idempotency key ``user:activity_type:activity_id``
- balance_applications — Exactly-once record of each ledger component
                         applied to a balance
- user_balances        — Aggregate XP / token totals and level per user
- streak_states        — Authoritative daily-streak timestamp per user
- user_items           — Items granted by settled entries (inventory)
- settings             — Admin-configurable reward tuning (key → JSON)
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all QuestLedger ORM models."""


# Token amounts are stored with the precision of the chain's base unit.
TokenAmount = Numeric(18, 9)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class LedgerStatus(enum.StrEnum):
    """Lifecycle of a ledger entry: pending → settled | failed."""
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


class BalanceComponent(enum.StrEnum):
    """Independently applied parts of a reward bundle.

    ``XP`` also carries the item grant and, for streak entries, the streak
    state update.
    """
    XP = "xp"
    TOKENS = "tokens"


# ---------------------------------------------------------------------------
# LedgerEntry — durable record of one disbursement
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(66), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    activity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    metrics: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # Reward bundle
    xp: Mapped[int] = mapped_column(Integer, default=0)
    token_amount: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"))
    item_grant: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=LedgerStatus.PENDING.value
    )
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    xp_applied: Mapped[bool] = mapped_column(Boolean, default=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    applications: Mapped[list[BalanceApplication]] = relationship(
        back_populates="entry", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_ledger_status_updated", "status", "updated_at"),
        Index("ix_ledger_user_created", "user_id", "created_at"),
        CheckConstraint(
            "status IN ('pending', 'settled', 'failed')", name="ck_ledger_status"
        ),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry id={self.id!r} status={self.status}>"


# ---------------------------------------------------------------------------
# BalanceApplication — exactly-once marker per (entry, component)
# ---------------------------------------------------------------------------
class BalanceApplication(Base):
    __tablename__ = "balance_applications"

    entry_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("ledger_entries.id", ondelete="CASCADE"),
        primary_key=True,
    )
    component: Mapped[str] = mapped_column(String(16), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(66), nullable=False)
    xp_delta: Mapped[int] = mapped_column(Integer, default=0)
    token_delta: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"))
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    entry: Mapped[LedgerEntry] = relationship(back_populates="applications")

    __table_args__ = (
        Index("ix_balance_app_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<BalanceApplication entry={self.entry_id!r} component={self.component}>"


# ---------------------------------------------------------------------------
# UserBalance — aggregate view owned by the disbursement coordinator
# ---------------------------------------------------------------------------
class UserBalance(Base):
    __tablename__ = "user_balances"

    user_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    xp_total: Mapped[int] = mapped_column(Integer, default=0)
    token_total: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"))
    level: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_user_balances_xp_desc", "xp_total"),
    )

    def __repr__(self) -> str:
        return f"<UserBalance user={self.user_id!r} xp={self.xp_total} lvl={self.level}>"


# ---------------------------------------------------------------------------
# StreakState — one authoritative timestamp per user
# ---------------------------------------------------------------------------
class StreakState(Base):
    __tablename__ = "streak_states"

    user_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    last_granted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_streak_length: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak_length: Mapped[int] = mapped_column(Integer, default=0)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<StreakState user={self.user_id!r} streak={self.current_streak_length}>"


# ---------------------------------------------------------------------------
# UserItem — inventory rows created by item grants
# ---------------------------------------------------------------------------
class UserItem(Base):
    __tablename__ = "user_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(66), nullable=False)
    item_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    entry_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("ledger_entries.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_user_items_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<UserItem user={self.user_id!r} item={self.item_ref!r}>"


# ---------------------------------------------------------------------------
# Setting — admin-configurable key-value store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Every reward tuning knob (base tokens, caps, difficulty multipliers,
    XP tables, rarity ranges) lives here so operators can adjust values
    without redeploying.  Values are stored as JSON strings; typed
    accessors live in :class:`~questledger.engine.cache.ConfigCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
