"""Create wallets, ledger_transactions, rate_usage and admin_log tables

Revision ID: 5c2e8d41a7b0
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c2e8d41a7b0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the ledger schema."""
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False, unique=True),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("frozen_reason", sa.Text(), nullable=True),
        sa.Column("frozen_by", sa.BigInteger(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=True),
        sa.Column(
            "counterparty_wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=True
        ),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("fee", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("group_id", sa.String(32), nullable=True),
        sa.Column("external_reference", sa.String(128), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("flag_reason", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.BigInteger(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_ledger_tx_wallet_created", "ledger_transactions", ["wallet_id", "created_at"]
    )
    op.create_index(
        "ix_ledger_tx_status_created", "ledger_transactions", ["status", "created_at"]
    )
    op.create_index("ix_ledger_tx_external_ref", "ledger_transactions", ["external_reference"])
    op.create_index("ix_ledger_tx_group", "ledger_transactions", ["group_id"])

    op.create_table(
        "rate_usage",
        sa.Column("user_id", sa.BigInteger(), primary_key=True),
        sa.Column("action", sa.String(20), primary_key=True),
        sa.Column("window_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_sum", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.BigInteger(), nullable=False),
        sa.Column("action_type", sa.String(20), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_admin_log_target", "admin_log", ["target_table", "target_id"])


def downgrade() -> None:
    """Drop the ledger schema."""
    op.drop_index("ix_admin_log_target", table_name="admin_log")
    op.drop_table("admin_log")
    op.drop_table("rate_usage")
    op.drop_index("ix_ledger_tx_group", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_external_ref", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_status_created", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_wallet_created", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_table("wallets")
