"""
dgtledger.services.ledger_store — Balance & Transaction Record Keeper
======================================================================

The **only** code that writes ``wallets.balance``.  A balance changes only
as the side effect of settling a transaction, so for every wallet::

    balance == sum(amount + fee for settled transactions of that wallet)

Withdrawals escrow their debit while the gateway works: ``wallets.held`` is
the sum of ``held_amount`` over the wallet's open transactions and no
settlement may take the balance below it.  Settling a held transaction
consumes its hold; failing it hands the hold back.

Atomicity:
- Each settlement runs in ONE database transaction.  Wallet rows are locked
  (``SELECT … FOR UPDATE``, ascending id order) and every UPDATE is checked
  against the optimistic ``version`` column.
- A group (tip: debit + credit + burn) is settled in the same database
  transaction — all rows or none.
- Lock timeouts, deadlocks and version conflicts roll the whole attempt back
  and retry it up to ``max_retries`` times before :class:`TransactionFailed`.

Percentages are never computed here; callers pass resolved integers.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dgtledger.constants import utcnow
from dgtledger.database.models import (
    AdminActionType,
    LedgerTransaction,
    TransactionStatus,
    TransactionType,
    Wallet,
    WalletStatus,
)
from dgtledger.engine.errors import (
    InsufficientFunds,
    InvalidTransition,
    TransactionFailed,
    TransactionNotFound,
)
from dgtledger.engine.projector import (
    LARGE_TRANSACTION_THRESHOLD,
    TransactionRecord,
    WalletRecord,
)
from dgtledger.services.audit import log_admin_action, row_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Conflicts that roll back one attempt and are worth retrying.
RETRYABLE_ERRORS = (StaleDataError, OperationalError)


@dataclass(frozen=True, slots=True)
class TransactionDraft:
    """One row to append as part of a group."""

    wallet_id: int | None
    type: TransactionType
    amount: int
    fee: int = 0
    metadata: dict = field(default_factory=dict)
    counterparty_wallet_id: int | None = None
    external_reference: str | None = None


def new_group_id() -> str:
    return uuid.uuid4().hex


class LedgerStore:
    """Sole writer of wallet balances and ledger transactions."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_retries: int = 3,
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.max_retries = max_retries

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------
    def _with_retries(self, label: str, func: Callable[[], T]) -> T:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return func()
            except RETRYABLE_ERRORS as exc:
                logger.warning(
                    "%s conflict (attempt %d/%d): %s", label, attempt, attempts, exc
                )
        raise TransactionFailed(f"{label} could not complete after {attempts} attempts")

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------
    def get_wallet(self, user_id: int) -> WalletRecord:
        """Return the user's wallet, creating a zero-balance one if absent."""
        with Session(self.engine) as session:
            wallet = session.scalar(select(Wallet).where(Wallet.user_id == user_id))
            if wallet is not None:
                return WalletRecord.from_model(wallet)

        try:
            with Session(self.engine) as session:
                wallet = Wallet(user_id=user_id, balance=0, lifetime_earned=0, lifetime_spent=0)
                session.add(wallet)
                session.commit()
                logger.info("Created wallet %s for user %s", wallet.id, user_id)
                return WalletRecord.from_model(wallet)
        except IntegrityError:
            # Another request created it first.
            with Session(self.engine) as session:
                wallet = session.scalars(select(Wallet).where(Wallet.user_id == user_id)).one()
                return WalletRecord.from_model(wallet)

    def get_wallet_by_id(self, wallet_id: int) -> WalletRecord:
        with Session(self.engine) as session:
            return WalletRecord.from_model(
                session.scalars(select(Wallet).where(Wallet.id == wallet_id)).one()
            )

    def find_wallet(self, user_id: int) -> WalletRecord | None:
        """Like :meth:`get_wallet` but never creates."""
        with Session(self.engine) as session:
            wallet = session.scalar(select(Wallet).where(Wallet.user_id == user_id))
            return WalletRecord.from_model(wallet) if wallet else None

    def wallet_audit_record(self, user_id: int) -> WalletRecord:
        """Wallet snapshot enriched with the counters the admin view needs."""
        wallet = self.get_wallet(user_id)
        with Session(self.engine) as session:
            tx_count = session.scalar(
                select(func.count()).select_from(LedgerTransaction)
                .where(LedgerTransaction.wallet_id == wallet.id)
            ) or 0
            flagged = session.scalar(
                select(func.count()).select_from(LedgerTransaction)
                .where(
                    LedgerTransaction.wallet_id == wallet.id,
                    LedgerTransaction.flagged.is_(True),
                )
            ) or 0
            last_large = session.scalar(
                select(func.max(LedgerTransaction.created_at)).where(
                    LedgerTransaction.wallet_id == wallet.id,
                    LedgerTransaction.status == TransactionStatus.SETTLED.value,
                    func.abs(LedgerTransaction.amount) > LARGE_TRANSACTION_THRESHOLD,
                )
            )
            row = session.get(Wallet, wallet.id)
            return WalletRecord.from_model(
                row,
                transaction_count=tx_count,
                flagged_count=flagged,
                last_large_transaction_at=last_large,
            )

    def set_wallet_frozen(
        self, user_id: int, *, frozen: bool, admin_id: int, reason: str | None = None
    ) -> WalletRecord:
        wallet_id = self.get_wallet(user_id).id

        def _attempt() -> WalletRecord:
            with Session(self.engine) as session:
                wallet = self._lock_wallet(session, wallet_id)
                before = row_to_dict(wallet)
                if frozen:
                    wallet.status = WalletStatus.FROZEN.value
                    wallet.frozen_reason = reason
                    wallet.frozen_by = admin_id
                else:
                    wallet.status = WalletStatus.ACTIVE.value
                    wallet.frozen_reason = None
                    wallet.frozen_by = None
                session.flush()
                log_admin_action(
                    session,
                    actor_id=admin_id,
                    action_type=(AdminActionType.FREEZE if frozen else AdminActionType.UNFREEZE).value,
                    target_table="wallets",
                    target_id=str(wallet.id),
                    before=before,
                    after=row_to_dict(wallet),
                    reason=reason,
                )
                session.commit()
                return WalletRecord.from_model(wallet)

        return self._with_retries("freeze", _attempt)

    def recompute_balance(self, wallet_id: int) -> int:
        """Signed sum of settled effects — what ``balance`` must equal."""
        with Session(self.engine) as session:
            total = session.scalar(
                select(
                    func.coalesce(
                        func.sum(LedgerTransaction.amount + LedgerTransaction.fee), 0
                    )
                ).where(
                    LedgerTransaction.wallet_id == wallet_id,
                    LedgerTransaction.status == TransactionStatus.SETTLED.value,
                )
            )
            return int(total or 0)

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------
    def append_transaction(
        self,
        wallet_id: int | None,
        type: TransactionType,
        amount: int,
        fee: int = 0,
        metadata: dict | None = None,
        *,
        counterparty_wallet_id: int | None = None,
        group_id: str | None = None,
        external_reference: str | None = None,
    ) -> int:
        """Create a ``pending`` transaction.  Balance is untouched."""
        ids = self.append_group(
            [
                TransactionDraft(
                    wallet_id=wallet_id,
                    type=type,
                    amount=amount,
                    fee=fee,
                    metadata=metadata or {},
                    counterparty_wallet_id=counterparty_wallet_id,
                    external_reference=external_reference,
                )
            ],
            group_id=group_id,
        )
        return ids[0]

    def append_group(
        self, drafts: Sequence[TransactionDraft], *, group_id: str | None = None
    ) -> list[int]:
        """Append several ``pending`` transactions sharing one ``group_id``."""
        if group_id is None and len(drafts) > 1:
            group_id = new_group_id()
        now = self.clock()
        with Session(self.engine) as session:
            rows = [
                LedgerTransaction(
                    wallet_id=d.wallet_id,
                    counterparty_wallet_id=d.counterparty_wallet_id,
                    type=TransactionType(d.type).value,
                    amount=d.amount,
                    fee=d.fee,
                    status=TransactionStatus.PENDING.value,
                    group_id=group_id,
                    external_reference=d.external_reference,
                    metadata_=dict(d.metadata),
                    created_at=now,
                )
                for d in drafts
            ]
            session.add_all(rows)
            session.commit()
            return [r.id for r in rows]

    def mark_awaiting_external(
        self, transaction_id: int, external_reference: str | None = None
    ) -> TransactionRecord:
        """``pending`` → ``awaiting_external``."""
        with Session(self.engine) as session:
            tx = self._load_tx(session, transaction_id, lock=True)
            if tx.status != TransactionStatus.PENDING.value:
                raise InvalidTransition(
                    transaction_id, tx.status, TransactionStatus.AWAITING_EXTERNAL.value
                )
            tx.status = TransactionStatus.AWAITING_EXTERNAL.value
            if external_reference is not None:
                tx.external_reference = external_reference
            session.commit()
            return TransactionRecord.from_model(tx)

    def record_metadata(self, transaction_id: int, updates: dict) -> TransactionRecord:
        """Merge *updates* into the metadata.  Allowed in any status."""
        with Session(self.engine, expire_on_commit=False) as session:
            tx = self._load_tx(session, transaction_id, lock=True)
            tx.metadata_ = {**(tx.metadata_ or {}), **updates}
            session.commit()
            return TransactionRecord.from_model(tx)

    def hold_funds(self, transaction_id: int) -> TransactionRecord:
        """Escrow the debit of an open transaction.

        The wallet's spendable balance drops at once; settlement later
        consumes the hold and :meth:`fail` releases it.

        Raises
        ------
        InsufficientFunds
            If the spendable balance does not cover the debit.
        """

        def _attempt() -> TransactionRecord:
            with Session(self.engine, expire_on_commit=False) as session:
                tx = self._load_tx(session, transaction_id, lock=True)
                if tx.is_terminal:
                    raise InvalidTransition(tx.id, tx.status, "held")
                debit = -tx.effect - tx.held_amount
                if tx.wallet_id is None or debit <= 0:
                    return TransactionRecord.from_model(tx)
                wallet = self._lock_wallet(session, tx.wallet_id)
                if wallet.available < debit:
                    raise InsufficientFunds(required=debit, available=wallet.available)
                wallet.held += debit
                tx.held_amount += debit
                session.commit()
                logger.info("Held %d on wallet %s for tx %s", debit, wallet.id, tx.id)
                return TransactionRecord.from_model(tx)

        return self._with_retries("hold", _attempt)

    def set_amount(
        self,
        transaction_id: int,
        amount: int,
        *,
        fee: int | None = None,
        metadata_updates: dict | None = None,
    ) -> TransactionRecord:
        """Fix the amount of a non-terminal transaction (deposits learn it late)."""
        with Session(self.engine) as session:
            tx = self._load_tx(session, transaction_id, lock=True)
            if tx.is_terminal or tx.held_amount:
                raise InvalidTransition(transaction_id, tx.status, "amended")
            tx.amount = amount
            if fee is not None:
                tx.fee = fee
            if metadata_updates:
                tx.metadata_ = {**(tx.metadata_ or {}), **metadata_updates}
            session.commit()
            return TransactionRecord.from_model(tx)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    def settle(self, transaction_id: int) -> TransactionRecord:
        """Settle a single transaction.  See :meth:`settle_group`."""
        return self.settle_group([transaction_id])[0]

    def settle_group(self, transaction_ids: Sequence[int]) -> list[TransactionRecord]:
        """Atomically settle every transaction in *transaction_ids*.

        Raises
        ------
        InvalidTransition
            If any transaction is already terminal.
        InsufficientFunds
            If any wallet would end up negative.  Nothing is applied.
        TransactionFailed
            If storage conflicts persist past the retry budget.
        """
        return self._with_retries(
            "settle", lambda: self._settle_attempt(list(transaction_ids))
        )

    def _settle_attempt(self, transaction_ids: list[int]) -> list[TransactionRecord]:
        now = self.clock()
        with Session(self.engine, expire_on_commit=False) as session:
            txs = [self._load_tx(session, tx_id, lock=True) for tx_id in transaction_ids]
            for tx in txs:
                if tx.is_terminal:
                    raise InvalidTransition(tx.id, tx.status, TransactionStatus.SETTLED.value)

            wallet_ids = sorted({tx.wallet_id for tx in txs if tx.wallet_id is not None})
            wallets = {wid: self._lock_wallet(session, wid) for wid in wallet_ids}

            # Check the whole group before touching anything.  Funds held for
            # other transactions are not spendable.
            projected = {wid: w.balance for wid, w in wallets.items()}
            still_held = {wid: w.held for wid, w in wallets.items()}
            for tx in txs:
                if tx.wallet_id is not None:
                    projected[tx.wallet_id] += tx.effect
                    still_held[tx.wallet_id] -= tx.held_amount
            for wid, new_balance in projected.items():
                if new_balance < still_held[wid]:
                    wallet = wallets[wid]
                    raise InsufficientFunds(
                        required=wallet.balance - new_balance,
                        available=wallet.balance - still_held[wid],
                    )

            for tx in txs:
                self._apply_effect(wallets.get(tx.wallet_id), tx, now)
            session.flush()
            session.commit()

            for tx in txs:
                logger.info(
                    "Settled tx %s (%s) wallet=%s effect=%+d",
                    tx.id, tx.type, tx.wallet_id, tx.amount + tx.fee,
                )
            return [TransactionRecord.from_model(tx) for tx in txs]

    def _apply_effect(
        self, wallet: Wallet | None, tx: LedgerTransaction, now: datetime
    ) -> None:
        """Apply one transaction's effect to its wallet and mark it settled."""
        effect = tx.effect
        if wallet is not None:
            if tx.held_amount:
                wallet.held -= tx.held_amount
                tx.held_amount = 0
            wallet.balance += effect
            if effect > 0:
                wallet.lifetime_earned += effect
            elif effect < 0:
                wallet.lifetime_spent += -effect
            wallet.updated_at = now
        tx.status = TransactionStatus.SETTLED.value
        tx.settled_at = now

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------
    def fail(self, transaction_id: int, reason: str) -> bool:
        """Mark a transaction ``failed``.  Terminal transactions are left alone.

        Returns True if the transaction changed state.
        """
        return self.fail_group([transaction_id], reason) > 0

    def fail_group(self, transaction_ids: Iterable[int], reason: str) -> int:
        """Fail every non-terminal transaction in *transaction_ids*."""
        ids = list(transaction_ids)
        if not ids:
            return 0

        def _attempt() -> int:
            changed = 0
            with Session(self.engine) as session:
                for tx_id in ids:
                    tx = self._load_tx(session, tx_id, lock=True)
                    if tx.is_terminal:
                        continue
                    if tx.held_amount and tx.wallet_id is not None:
                        wallet = self._lock_wallet(session, tx.wallet_id)
                        wallet.held -= tx.held_amount
                        tx.held_amount = 0
                    tx.status = TransactionStatus.FAILED.value
                    tx.failure_reason = reason
                    changed += 1
                session.commit()
            if changed:
                logger.info("Failed %d transaction(s) %s: %s", changed, ids, reason)
            return changed

        return self._with_retries("fail", _attempt)

    # ------------------------------------------------------------------
    # Admin corrections
    # ------------------------------------------------------------------
    def reverse(
        self, original_transaction_id: int, admin_id: int, reason: str | None = None
    ) -> TransactionRecord:
        """Create and settle a compensating ``adjustment`` for a settled tx.

        The original row is never edited.  A transaction can be reversed once.
        """

        def _attempt() -> TransactionRecord:
            now = self.clock()
            with Session(self.engine, expire_on_commit=False) as session:
                original = self._load_tx(session, original_transaction_id, lock=True)
                if original.status != TransactionStatus.SETTLED.value:
                    raise InvalidTransition(original.id, original.status, "reversed")
                if original.wallet_id is None:
                    raise InvalidTransition(original.id, original.type, "reversed")
                if self._find_reversal(session, original) is not None:
                    raise InvalidTransition(original.id, "reversed", "reversed")

                wallet = self._lock_wallet(session, original.wallet_id)
                compensating = -(original.amount + original.fee)
                if wallet.available + compensating < 0:
                    raise InsufficientFunds(required=-compensating, available=wallet.available)

                adjustment = LedgerTransaction(
                    wallet_id=original.wallet_id,
                    counterparty_wallet_id=original.counterparty_wallet_id,
                    type=TransactionType.ADJUSTMENT.value,
                    amount=compensating,
                    fee=0,
                    status=TransactionStatus.PENDING.value,
                    group_id=original.group_id,
                    metadata_={
                        "reverses": original.id,
                        "reversed_type": original.type,
                        "reason": reason,
                        "source": "admin",
                        "admin_id": admin_id,
                    },
                    created_at=now,
                )
                session.add(adjustment)
                self._apply_effect(wallet, adjustment, now)
                session.flush()
                log_admin_action(
                    session,
                    actor_id=admin_id,
                    action_type=AdminActionType.REVERSE.value,
                    target_table="ledger_transactions",
                    target_id=str(original.id),
                    before=row_to_dict(original),
                    after=row_to_dict(adjustment),
                    reason=reason,
                )
                session.commit()
                return TransactionRecord.from_model(adjustment)

        return self._with_retries("reverse", _attempt)

    def adjust(
        self, user_id: int, amount: int, admin_id: int, reason: str | None = None
    ) -> TransactionRecord:
        """Admin credit (positive) or debit (negative) as a settled adjustment."""
        wallet_id = self.get_wallet(user_id).id

        def _attempt() -> TransactionRecord:
            now = self.clock()
            with Session(self.engine, expire_on_commit=False) as session:
                wallet = self._lock_wallet(session, wallet_id)
                if wallet.available + amount < 0:
                    raise InsufficientFunds(required=-amount, available=wallet.available)
                before = row_to_dict(wallet)
                tx = LedgerTransaction(
                    wallet_id=wallet.id,
                    type=TransactionType.ADJUSTMENT.value,
                    amount=amount,
                    fee=0,
                    status=TransactionStatus.PENDING.value,
                    metadata_={"reason": reason, "source": "admin", "admin_id": admin_id},
                    created_at=now,
                )
                session.add(tx)
                self._apply_effect(wallet, tx, now)
                session.flush()
                log_admin_action(
                    session,
                    actor_id=admin_id,
                    action_type=AdminActionType.ADJUST.value,
                    target_table="wallets",
                    target_id=str(wallet.id),
                    before=before,
                    after=row_to_dict(wallet),
                    reason=reason,
                )
                session.commit()
                return TransactionRecord.from_model(tx)

        return self._with_retries("adjust", _attempt)

    def flag_transaction(
        self,
        transaction_id: int,
        *,
        admin_id: int,
        flagged: bool = True,
        reason: str | None = None,
    ) -> TransactionRecord:
        """Set review fields.  Amount, type and status are untouched."""
        with Session(self.engine, expire_on_commit=False) as session:
            tx = self._load_tx(session, transaction_id, lock=True)
            before = row_to_dict(tx)
            tx.flagged = flagged
            tx.flag_reason = reason if flagged else None
            tx.reviewed_by = admin_id
            tx.reviewed_at = self.clock()
            session.flush()
            log_admin_action(
                session,
                actor_id=admin_id,
                action_type=AdminActionType.FLAG.value,
                target_table="ledger_transactions",
                target_id=str(tx.id),
                before=before,
                after=row_to_dict(tx),
                reason=reason,
            )
            session.commit()
            return TransactionRecord.from_model(tx)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_transaction(self, transaction_id: int) -> TransactionRecord:
        with Session(self.engine) as session:
            return TransactionRecord.from_model(self._load_tx(session, transaction_id))

    def get_transactions(self, transaction_ids: Iterable[int]) -> list[TransactionRecord]:
        with Session(self.engine) as session:
            return [
                TransactionRecord.from_model(self._load_tx(session, tx_id))
                for tx_id in transaction_ids
            ]

    def find_by_external_reference(
        self, reference: str, type: TransactionType | None = None
    ) -> TransactionRecord | None:
        stmt = select(LedgerTransaction).where(LedgerTransaction.external_reference == reference)
        if type is not None:
            stmt = stmt.where(LedgerTransaction.type == TransactionType(type).value)
        with Session(self.engine) as session:
            tx = session.scalar(
                stmt
                .order_by(LedgerTransaction.id.desc())
                .limit(1)
            )
            return TransactionRecord.from_model(tx) if tx else None

    def list_transactions(
        self,
        wallet_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[TransactionRecord]:
        """Transactions of one wallet, newest first, optionally in a time range."""
        stmt = select(LedgerTransaction).where(LedgerTransaction.wallet_id == wallet_id)
        if since is not None:
            stmt = stmt.where(LedgerTransaction.created_at >= since)
        if until is not None:
            stmt = stmt.where(LedgerTransaction.created_at < until)
        if statuses is not None:
            stmt = stmt.where(LedgerTransaction.status.in_([str(s) for s in statuses]))
        stmt = stmt.order_by(
            LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc()
        ).offset(offset).limit(limit)
        with Session(self.engine) as session:
            return [TransactionRecord.from_model(tx) for tx in session.scalars(stmt).all()]

    def list_awaiting_external(self, *, older_than: datetime) -> list[TransactionRecord]:
        """Transactions still waiting on the gateway, created before *older_than*."""
        with Session(self.engine) as session:
            rows = session.scalars(
                select(LedgerTransaction)
                .where(
                    LedgerTransaction.status == TransactionStatus.AWAITING_EXTERNAL.value,
                    LedgerTransaction.created_at < older_than,
                )
                .order_by(LedgerTransaction.created_at)
            ).all()
            return [TransactionRecord.from_model(tx) for tx in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _load_tx(
        session: Session, transaction_id: int, *, lock: bool = False
    ) -> LedgerTransaction:
        stmt = select(LedgerTransaction).where(LedgerTransaction.id == transaction_id)
        if lock:
            stmt = stmt.with_for_update()
        tx = session.scalar(stmt)
        if tx is None:
            raise TransactionNotFound(
                f"Transaction {transaction_id} not found", transaction_id=transaction_id
            )
        return tx

    @staticmethod
    def _lock_wallet(session: Session, wallet_id: int) -> Wallet:
        return session.scalars(
            select(Wallet).where(Wallet.id == wallet_id).with_for_update()
        ).one()

    @staticmethod
    def _find_reversal(
        session: Session, original: LedgerTransaction
    ) -> LedgerTransaction | None:
        candidates = session.scalars(
            select(LedgerTransaction).where(
                LedgerTransaction.wallet_id == original.wallet_id,
                LedgerTransaction.type == TransactionType.ADJUSTMENT.value,
                LedgerTransaction.created_at >= original.created_at,
            )
        ).all()
        for tx in candidates:
            if (tx.metadata_ or {}).get("reverses") == original.id:
                return tx
        return None
