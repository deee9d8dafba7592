"""Withdrawal holds and unique external references

Adds wallets.held / ledger_transactions.held_amount so a withdrawal awaiting
the gateway escrows its debit, and replaces the plain external_reference
index with a partial unique index on (external_reference, type).

Revision ID: 8f1d3c6b2a94
Revises: 5c2e8d41a7b0
Create Date: 2026-10-24 10:00:00.000000
"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8f1d3c6b2a94"
down_revision: str | Sequence[str] | None = "5c2e8d41a7b0"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "wallets",
        sa.Column("held", sa.BigInteger(), nullable=False, server_default="0"),
    )
    op.create_check_constraint(
        "ck_wallets_held_within_balance", "wallets", "held >= 0 AND held <= balance"
    )
    op.add_column(
        "ledger_transactions",
        sa.Column("held_amount", sa.BigInteger(), nullable=False, server_default="0"),
    )

    op.drop_index("ix_ledger_tx_external_ref", table_name="ledger_transactions")
    op.create_index(
        "uq_ledger_tx_external_ref_type",
        "ledger_transactions",
        ["external_reference", "type"],
        unique=True,
        postgresql_where=sa.text("external_reference IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_ledger_tx_external_ref_type", table_name="ledger_transactions")
    op.create_index("ix_ledger_tx_external_ref", "ledger_transactions", ["external_reference"])
    op.drop_column("ledger_transactions", "held_amount")
    op.drop_constraint("ck_wallets_held_within_balance", "wallets", type_="check")
    op.drop_column("wallets", "held")
