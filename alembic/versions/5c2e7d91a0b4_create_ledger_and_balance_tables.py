"""Create ledger, balance, streak, item and settings tables

Revision ID: 5c2e7d91a0b4
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e7d91a0b4'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the reward ledger schema."""

    # --- ledger_entries ---
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("user_id", sa.String(66), nullable=False),
        sa.Column("activity_type", sa.String(32), nullable=False),
        sa.Column("activity_id", sa.String(128), nullable=False),
        sa.Column("metrics", postgresql.JSONB, nullable=True),
        sa.Column("xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("token_amount", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column("item_grant", sa.String(100), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("external_ref", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("xp_applied", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'settled', 'failed')", name="ck_ledger_status"
        ),
    )
    op.create_index("ix_ledger_status_updated", "ledger_entries", ["status", "updated_at"])
    op.create_index("ix_ledger_user_created", "ledger_entries", ["user_id", "created_at"])

    # --- balance_applications ---
    op.create_table(
        "balance_applications",
        sa.Column(
            "entry_id", sa.String(255),
            sa.ForeignKey("ledger_entries.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("component", sa.String(16), primary_key=True),
        sa.Column("user_id", sa.String(66), nullable=False),
        sa.Column("xp_delta", sa.Integer, nullable=False, server_default="0"),
        sa.Column("token_delta", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_balance_app_user", "balance_applications", ["user_id"])

    # --- user_balances ---
    op.create_table(
        "user_balances",
        sa.Column("user_id", sa.String(66), primary_key=True),
        sa.Column("xp_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("token_total", sa.Numeric(18, 9), nullable=False, server_default="0"),
        sa.Column("level", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_balances_xp_desc", "user_balances", ["xp_total"])

    # --- streak_states ---
    op.create_table(
        "streak_states",
        sa.Column("user_id", sa.String(66), primary_key=True),
        sa.Column("last_granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_streak_length", sa.Integer, nullable=False, server_default="0"),
        sa.Column("longest_streak_length", sa.Integer, nullable=False, server_default="0"),
        sa.Column("timezone", sa.String(64), nullable=True),
    )

    # --- user_items ---
    op.create_table(
        "user_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(66), nullable=False),
        sa.Column("item_ref", sa.String(100), nullable=False),
        sa.Column(
            "entry_id", sa.String(255),
            sa.ForeignKey("ledger_entries.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_items_user", "user_items", ["user_id"])

    # --- settings ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_settings_category", "settings", ["category"])


def downgrade() -> None:
    """Drop the reward ledger schema."""
    op.drop_index("ix_settings_category", table_name="settings")
    op.drop_table("settings")
    op.drop_index("ix_user_items_user", table_name="user_items")
    op.drop_table("user_items")
    op.drop_table("streak_states")
    op.drop_index("ix_user_balances_xp_desc", table_name="user_balances")
    op.drop_table("user_balances")
    op.drop_index("ix_balance_app_user", table_name="balance_applications")
    op.drop_table("balance_applications")
    op.drop_index("ix_ledger_status_updated", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_created", table_name="ledger_entries")
    op.drop_table("ledger_entries")
