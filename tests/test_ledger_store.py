"""
tests/test_ledger_store.py — Balance & transaction record keeper
=================================================================

Runs against in-memory SQLite.  Every test that changes balances checks
that the stored balance still equals the recomputed sum of settled effects.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dgtledger.database.models import AdminLog, TransactionType
from dgtledger.engine.errors import (
    InsufficientFunds,
    InvalidTransition,
    TransactionNotFound,
)
from dgtledger.services.ledger_store import LedgerStore, TransactionDraft

ADMIN = 99999


@pytest.fixture
def store(db_engine, clock):
    return LedgerStore(db_engine, clock=clock)


def _fund(store: LedgerStore, user_id: int, amount: int) -> int:
    store.adjust(user_id, amount, ADMIN, reason="seed")
    return store.get_wallet(user_id).id


def _assert_consistent(store: LedgerStore, wallet_id: int) -> None:
    assert store.get_wallet_by_id(wallet_id).balance == store.recompute_balance(wallet_id)


class TestWallets:
    def test_get_wallet_creates_once(self, store):
        first = store.get_wallet(7)
        second = store.get_wallet(7)
        assert first.id == second.id
        assert first.balance == 0
        assert first.status == "active"

    def test_find_wallet_never_creates(self, store):
        assert store.find_wallet(8) is None
        assert store.find_wallet(8) is None

    def test_freeze_is_audited(self, store, db_engine):
        record = store.set_wallet_frozen(7, frozen=True, admin_id=ADMIN, reason="chargeback")
        assert record.status == "frozen"
        assert record.frozen_reason == "chargeback"
        assert record.frozen_by == ADMIN

        record = store.set_wallet_frozen(7, frozen=False, admin_id=ADMIN)
        assert record.status == "active"
        assert record.frozen_reason is None

        with Session(db_engine) as session:
            actions = session.scalars(select(AdminLog.action_type).order_by(AdminLog.id)).all()
        assert actions == ["FREEZE", "UNFREEZE"]


class TestAppendAndSettle:
    def test_append_does_not_touch_balance(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.TIP, 500)
        tx = store.get_transaction(tx_id)
        assert tx.status == "pending"
        assert store.get_wallet(7).balance == 0

    def test_settle_applies_effect_and_counters(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 1_000, fee=-30)
        settled = store.settle(tx_id)
        assert settled.status == "settled"
        assert settled.settled_at is not None

        wallet = store.get_wallet(7)
        assert wallet.balance == 970
        assert wallet.lifetime_earned == 970
        assert wallet.version > 1
        _assert_consistent(store, wallet_id)

    def test_insufficient_funds_leaves_tx_pending(self, store):
        wallet_id = _fund(store, 7, 100)
        tx_id = store.append_transaction(wallet_id, TransactionType.TIP, -150)
        with pytest.raises(InsufficientFunds) as excinfo:
            store.settle(tx_id)
        assert excinfo.value.details == {"required": 150, "available": 100}
        assert store.get_transaction(tx_id).status == "pending"
        assert store.get_wallet(7).balance == 100

    def test_double_settle_rejected(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 10)
        store.settle(tx_id)
        with pytest.raises(InvalidTransition):
            store.settle(tx_id)
        assert store.get_wallet(7).balance == 10

    def test_unknown_transaction(self, store):
        with pytest.raises(TransactionNotFound):
            store.settle(4242)


class TestGroups:
    def test_group_shares_id(self, store):
        a = store.get_wallet(1).id
        b = store.get_wallet(2).id
        ids = store.append_group([
            TransactionDraft(a, TransactionType.TIP, -10, counterparty_wallet_id=b),
            TransactionDraft(b, TransactionType.TIP, 10, counterparty_wallet_id=a),
        ])
        group_ids = {tx.group_id for tx in store.get_transactions(ids)}
        assert len(group_ids) == 1
        assert None not in group_ids

    def test_group_is_all_or_nothing(self, store):
        sender = _fund(store, 1, 50)
        recipient = store.get_wallet(2).id
        ids = store.append_group([
            TransactionDraft(recipient, TransactionType.TIP, 95),
            TransactionDraft(sender, TransactionType.TIP, -100),
            TransactionDraft(None, TransactionType.BURN, -5, counterparty_wallet_id=sender),
        ])
        with pytest.raises(InsufficientFunds):
            store.settle_group(ids)

        assert [tx.status for tx in store.get_transactions(ids)] == ["pending"] * 3
        assert store.get_wallet(2).balance == 0
        assert store.get_wallet(1).balance == 50

    def test_burn_row_has_no_wallet_effect(self, store):
        sender = _fund(store, 1, 100)
        recipient = store.get_wallet(2).id
        ids = store.append_group([
            TransactionDraft(sender, TransactionType.TIP, -100),
            TransactionDraft(recipient, TransactionType.TIP, 95),
            TransactionDraft(None, TransactionType.BURN, -5, counterparty_wallet_id=sender),
        ])
        store.settle_group(ids)
        assert store.get_wallet(1).balance == 0
        assert store.get_wallet(2).balance == 95
        _assert_consistent(store, sender)
        _assert_consistent(store, recipient)


class TestFail:
    def test_fail_is_idempotent(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.TIP, -5)
        assert store.fail(tx_id, "no") is True
        assert store.fail(tx_id, "again") is False
        tx = store.get_transaction(tx_id)
        assert tx.status == "failed"
        assert tx.failure_reason == "no"

    def test_failed_cannot_settle(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 5)
        store.fail(tx_id, "gateway_rejected")
        with pytest.raises(InvalidTransition):
            store.settle(tx_id)

    def test_settled_is_not_failed(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 5)
        store.settle(tx_id)
        assert store.fail(tx_id, "late") is False
        assert store.get_transaction(tx_id).status == "settled"


class TestExternalLifecycle:
    def test_mark_awaiting_external(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 0)
        tx = store.mark_awaiting_external(tx_id, "gw-1")
        assert tx.status == "awaiting_external"
        assert store.find_by_external_reference("gw-1").id == tx_id

    def test_mark_awaiting_requires_pending(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 0)
        store.mark_awaiting_external(tx_id)
        with pytest.raises(InvalidTransition):
            store.mark_awaiting_external(tx_id)

    def test_set_amount_before_settlement(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(
            wallet_id, TransactionType.DEPOSIT, 0, fee=0, metadata={"address": "a"}
        )
        store.mark_awaiting_external(tx_id, "gw-2")
        tx = store.set_amount(tx_id, 2_500, metadata_updates={"usd_cents": 250})
        assert tx.amount == 2_500
        assert tx.metadata == {"address": "a", "usd_cents": 250}
        store.settle(tx_id)
        assert store.get_wallet(7).balance == 2_500

    def test_set_amount_on_terminal_rejected(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 10)
        store.settle(tx_id)
        with pytest.raises(InvalidTransition):
            store.set_amount(tx_id, 20)

    def test_list_awaiting_external(self, store, clock):
        wallet_id = store.get_wallet(7).id
        old = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 0)
        store.mark_awaiting_external(old, "old")
        clock.advance(600)
        fresh = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 0)
        store.mark_awaiting_external(fresh, "fresh")

        stale = store.list_awaiting_external(older_than=clock() - timedelta(seconds=300))
        assert [tx.id for tx in stale] == [old]

    def test_record_metadata_after_settlement(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 10, metadata={"a": 1})
        store.settle(tx_id)
        tx = store.record_metadata(tx_id, {"gateway_tx_id": "gw-9"})
        assert tx.status == "settled"
        assert tx.metadata == {"a": 1, "gateway_tx_id": "gw-9"}

    def test_reference_unique_per_type(self, store):
        wallet_id = store.get_wallet(7).id
        store.append_transaction(wallet_id, TransactionType.DEPOSIT, 0, external_reference="ref-1")
        with pytest.raises(IntegrityError):
            store.append_transaction(
                wallet_id, TransactionType.DEPOSIT, 0, external_reference="ref-1"
            )
        other = store.append_transaction(
            wallet_id, TransactionType.WITHDRAWAL, -1, external_reference="ref-1"
        )
        assert store.find_by_external_reference("ref-1", TransactionType.WITHDRAWAL).id == other
        assert store.find_by_external_reference("ref-1", TransactionType.DEPOSIT).id != other

    def test_many_rows_without_reference(self, store):
        wallet_id = store.get_wallet(7).id
        for _ in range(3):
            store.append_transaction(wallet_id, TransactionType.DEPOSIT, 0)
        assert len(store.list_transactions(wallet_id)) == 3


class TestHolds:
    def _withdrawal(self, store, wallet_id: int) -> int:
        tx_id = store.append_transaction(wallet_id, TransactionType.WITHDRAWAL, -500, fee=-100)
        store.hold_funds(tx_id)
        return tx_id

    def test_hold_reduces_available_only(self, store):
        wallet_id = _fund(store, 7, 1_000)
        tx_id = self._withdrawal(store, wallet_id)
        wallet = store.get_wallet(7)
        assert (wallet.balance, wallet.held, wallet.available) == (1_000, 600, 400)
        assert store.get_transaction(tx_id).held_amount == 600

        store.hold_funds(tx_id)
        assert store.get_wallet(7).held == 600

    def test_hold_needs_available_funds(self, store):
        wallet_id = _fund(store, 7, 1_000)
        self._withdrawal(store, wallet_id)
        second = store.append_transaction(wallet_id, TransactionType.WITHDRAWAL, -500, fee=-100)
        with pytest.raises(InsufficientFunds) as excinfo:
            store.hold_funds(second)
        assert excinfo.value.details == {"required": 600, "available": 400}
        assert store.get_transaction(second).held_amount == 0

    def test_held_funds_cannot_be_spent(self, store):
        wallet_id = _fund(store, 7, 1_000)
        self._withdrawal(store, wallet_id)
        tip = store.append_transaction(wallet_id, TransactionType.TIP, -500)
        with pytest.raises(InsufficientFunds) as excinfo:
            store.settle(tip)
        assert excinfo.value.details == {"required": 500, "available": 400}
        with pytest.raises(InsufficientFunds):
            store.adjust(7, -500, ADMIN)
        assert store.get_wallet(7).balance == 1_000

    def test_settle_consumes_hold(self, store):
        wallet_id = _fund(store, 7, 1_000)
        tx_id = self._withdrawal(store, wallet_id)
        store.mark_awaiting_external(tx_id)
        store.settle(tx_id)
        wallet = store.get_wallet(7)
        assert (wallet.balance, wallet.held) == (400, 0)
        assert store.get_transaction(tx_id).held_amount == 0
        _assert_consistent(store, wallet_id)

    def test_fail_releases_hold(self, store):
        wallet_id = _fund(store, 7, 1_000)
        tx_id = self._withdrawal(store, wallet_id)
        assert store.fail(tx_id, "gateway_rejected") is True
        wallet = store.get_wallet(7)
        assert (wallet.balance, wallet.held, wallet.available) == (1_000, 0, 1_000)

    def test_held_amount_is_fixed(self, store):
        wallet_id = _fund(store, 7, 1_000)
        tx_id = self._withdrawal(store, wallet_id)
        with pytest.raises(InvalidTransition):
            store.set_amount(tx_id, -100)

    def test_terminal_transaction_cannot_hold(self, store):
        wallet_id = _fund(store, 7, 1_000)
        tx_id = store.append_transaction(wallet_id, TransactionType.WITHDRAWAL, -500)
        store.fail(tx_id, "cancelled")
        with pytest.raises(InvalidTransition):
            store.hold_funds(tx_id)


class TestReverse:
    def test_reverse_creates_compensating_adjustment(self, store, db_engine):
        sender = _fund(store, 1, 1_000)
        recipient = store.get_wallet(2).id
        ids = store.append_group([
            TransactionDraft(sender, TransactionType.TIP, -100),
            TransactionDraft(recipient, TransactionType.TIP, 100),
        ])
        store.settle_group(ids)

        reversal = store.reverse(ids[1], ADMIN, reason="fraud")
        assert reversal.type == "adjustment"
        assert reversal.status == "settled"
        assert reversal.amount == -100
        assert reversal.metadata["reverses"] == ids[1]
        assert reversal.metadata["reversed_type"] == "tip"

        original = store.get_transaction(ids[1])
        assert original.status == "settled"
        assert original.amount == 100
        assert store.get_wallet(2).balance == 0
        _assert_consistent(store, recipient)

        with Session(db_engine) as session:
            entry = session.scalars(
                select(AdminLog).where(AdminLog.action_type == "REVERSE")
            ).one()
        assert entry.target_id == str(ids[1])
        assert entry.reason == "fraud"

    def test_reverse_only_once(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 300)
        store.settle(tx_id)
        store.reverse(tx_id, ADMIN)
        with pytest.raises(InvalidTransition):
            store.reverse(tx_id, ADMIN)
        assert store.get_wallet(7).balance == 0

    def test_reverse_pending_rejected(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 300)
        with pytest.raises(InvalidTransition):
            store.reverse(tx_id, ADMIN)

    def test_reverse_credit_already_spent(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 300)
        store.settle(tx_id)
        store.adjust(7, -250, ADMIN)
        with pytest.raises(InsufficientFunds):
            store.reverse(tx_id, ADMIN)


class TestAdjust:
    def test_adjust_credits_and_audits(self, store, db_engine):
        tx = store.adjust(7, 500, ADMIN, reason="contest prize")
        assert tx.status == "settled"
        assert tx.metadata["source"] == "admin"
        assert store.get_wallet(7).balance == 500
        with Session(db_engine) as session:
            entry = session.scalars(select(AdminLog)).one()
        assert entry.action_type == "ADJUST"
        assert entry.before_snapshot["balance"] == 0
        assert entry.after_snapshot["balance"] == 500

    def test_adjust_cannot_overdraw(self, store):
        _fund(store, 7, 10)
        with pytest.raises(InsufficientFunds):
            store.adjust(7, -11, ADMIN)
        assert store.get_wallet(7).balance == 10

    def test_flag_leaves_amount_alone(self, store):
        wallet_id = store.get_wallet(7).id
        tx_id = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 10)
        store.settle(tx_id)
        tx = store.flag_transaction(tx_id, admin_id=ADMIN, reason="suspicious")
        assert tx.flagged is True
        assert tx.flag_reason == "suspicious"
        assert tx.reviewed_by == ADMIN
        assert tx.amount == 10
        assert tx.status == "settled"
        assert store.wallet_audit_record(7).flagged_count == 1


class TestListing:
    def test_newest_first_with_paging(self, store, clock):
        wallet_id = store.get_wallet(7).id
        ids = []
        for amount in (1, 2, 3):
            ids.append(store.append_transaction(wallet_id, TransactionType.DEPOSIT, amount))
            clock.advance(10)
        page = store.list_transactions(wallet_id, limit=2)
        assert [tx.id for tx in page] == [ids[2], ids[1]]
        assert [tx.id for tx in store.list_transactions(wallet_id, limit=2, offset=2)] == [ids[0]]

    def test_time_range_and_status(self, store, clock):
        wallet_id = store.get_wallet(7).id
        start = clock()
        early = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 1)
        clock.advance(3_600)
        late = store.append_transaction(wallet_id, TransactionType.DEPOSIT, 2)
        store.settle(late)

        ranged = store.list_transactions(wallet_id, since=start, until=start + timedelta(seconds=60))
        assert [tx.id for tx in ranged] == [early]
        settled = store.list_transactions(wallet_id, statuses=["settled"])
        assert [tx.id for tx in settled] == [late]
