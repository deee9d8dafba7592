"""
dgtledger.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- wallets             — One DGT wallet per user (balance + display counters)
- ledger_transactions — Immutable balance-affecting records with lifecycle
- rate_usage          — Per (user, action) cooldown / rolling-cap counters
- admin_log           — Append-only audit trail of admin mutations

Balances are integers in DGT minor units.  A wallet's ``balance`` always
equals the sum of ``amount + fee`` over its settled transactions.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from dgtledger.constants import utcnow


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all ledger ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TransactionType(enum.StrEnum):
    """Every kind of balance-affecting event the ledger records."""
    TIP = "tip"
    RAIN = "rain"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SHOP_PURCHASE = "shop_purchase"
    FEE = "fee"
    BURN = "burn"
    ADJUSTMENT = "adjustment"


class TransactionStatus(enum.StrEnum):
    PENDING = "pending"
    AWAITING_EXTERNAL = "awaiting_external"
    SETTLED = "settled"
    FAILED = "failed"


NON_TERMINAL_STATUSES: frozenset[str] = frozenset({
    TransactionStatus.PENDING.value,
    TransactionStatus.AWAITING_EXTERNAL.value,
})


class WalletStatus(enum.StrEnum):
    ACTIVE = "active"
    FROZEN = "frozen"


class RateAction(enum.StrEnum):
    """Action types tracked by the rate guard."""
    TIP = "tip"
    RAIN = "rain"
    WITHDRAWAL = "withdrawal"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    REVERSE = "REVERSE"
    ADJUST = "ADJUST"
    FREEZE = "FREEZE"
    UNFREEZE = "UNFREEZE"
    FLAG = "FLAG"


# ---------------------------------------------------------------------------
# Wallets — one row per user
# ---------------------------------------------------------------------------
class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Escrowed for withdrawals awaiting the gateway; spendable = balance - held.
    held: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    lifetime_earned: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    lifetime_spent: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=WalletStatus.ACTIVE.value, nullable=False
    )
    frozen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    frozen_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # Optimistic concurrency: every UPDATE checks and bumps this column.
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    transactions: Mapped[list[LedgerTransaction]] = relationship(
        back_populates="wallet",
        foreign_keys="LedgerTransaction.wallet_id",
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        CheckConstraint("held >= 0 AND held <= balance", name="ck_wallets_held_within_balance"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def available(self) -> int:
        return self.balance - self.held

    def __repr__(self) -> str:
        return f"<Wallet id={self.id} user={self.user_id} balance={self.balance}>"


# ---------------------------------------------------------------------------
# LedgerTransaction — immutable once terminal
# ---------------------------------------------------------------------------
class LedgerTransaction(Base):
    """A single balance-affecting event.

    ``wallet_id`` is NULL for burn records (tokens leave circulation and have
    no destination wallet); ``counterparty_wallet_id`` then points at the
    wallet the burn was charged to.  ``group_id`` ties together records that
    must settle or fail as one unit (tip: debit + credit + burn).
    """
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=True
    )
    counterparty_wallet_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    held_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.PENDING.value, nullable=False
    )
    group_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Admin review
    flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    flag_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    wallet: Mapped[Wallet | None] = relationship(
        back_populates="transactions", foreign_keys=[wallet_id]
    )

    __table_args__ = (
        Index("ix_ledger_tx_wallet_created", "wallet_id", "created_at"),
        Index("ix_ledger_tx_status_created", "status", "created_at"),
        # One deposit per gateway watch, one withdrawal per ledger reference.
        Index(
            "uq_ledger_tx_external_ref_type",
            "external_reference",
            "type",
            unique=True,
            postgresql_where=external_reference.isnot(None),
            sqlite_where=external_reference.isnot(None),
        ),
        Index("ix_ledger_tx_group", "group_id"),
    )

    @property
    def effect(self) -> int:
        """Signed balance effect once settled."""
        return self.amount + self.fee

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction id={self.id} type={self.type} "
            f"amount={self.amount} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# RateUsageRecord — per (user, action) window counters
# ---------------------------------------------------------------------------
class RateUsageRecord(Base):
    __tablename__ = "rate_usage"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    action: Mapped[str] = mapped_column(String(20), primary_key=True)
    window_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_sum: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_action_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<RateUsageRecord user={self.user_id} action={self.action} "
            f"count={self.window_count} sum={self.window_sum}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_target", "target_table", "target_id"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} action={self.action_type} table={self.target_table}>"
