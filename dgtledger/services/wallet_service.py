"""
dgtledger.services.wallet_service — Wallet views & admin tooling
=================================================================

Read side of the ledger plus the admin mutations that are not money
movements (freeze, unfreeze, flag).  Money-moving admin actions
(reverse, adjust) live on :class:`EconomyEngine`.

All functions here are synchronous; async callers use ``run_db``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from dgtledger.engine.projector import (
    ViewerContext,
    ViewerRole,
    WalletRecord,
    project_transaction,
    project_transactions,
    project_wallet,
)
from dgtledger.services.audit import get_audit_log
from dgtledger.services.ledger_store import LedgerStore
from dgtledger.services.rate_guard import RateGuard

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _empty_record(user_id: int) -> WalletRecord:
    """Stand-in for a user who has never touched the economy."""
    return WalletRecord(
        id=0, user_id=user_id, balance=0, lifetime_earned=0, lifetime_spent=0,
        status="active", version=0,
    )


class WalletService:
    def __init__(
        self,
        store: LedgerStore,
        guard: RateGuard,
        *,
        minor_units_per_dgt: int = 100,
        usd_cents_per_dgt: int = 10,
    ) -> None:
        self.store = store
        self.guard = guard
        self.minor_units_per_dgt = minor_units_per_dgt
        self.usd_cents_per_dgt = usd_cents_per_dgt

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def get_wallet_view(
        self, user_id: int, viewer: ViewerContext, *, level: int | None = None
    ) -> dict[str, Any]:
        """Wallet shaped for *viewer*.  Reading never creates a wallet."""
        role = viewer.role
        if role is ViewerRole.ADMIN and self.store.find_wallet(user_id) is not None:
            record = self.store.wallet_audit_record(user_id)
        else:
            record = self.store.find_wallet(user_id) or _empty_record(user_id)

        allowances = None
        if role is not ViewerRole.ANONYMOUS:
            allowances = self.guard.allowances(user_id)
        return project_wallet(
            record,
            viewer,
            allowances=allowances,
            level=level,
            minor_units_per_dgt=self.minor_units_per_dgt,
            usd_cents_per_dgt=self.usd_cents_per_dgt,
        )

    def list_transactions(
        self,
        user_id: int,
        viewer: ViewerContext,
        *,
        limit: int = 50,
        offset: int = 0,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Transaction history; always empty for anonymous viewers."""
        if viewer.role is ViewerRole.ANONYMOUS:
            return []
        wallet = self.store.find_wallet(user_id)
        if wallet is None:
            return []
        records = self.store.list_transactions(
            wallet.id,
            limit=max(1, min(limit, MAX_PAGE_SIZE)),
            offset=max(0, offset),
            since=since,
            until=until,
        )
        return project_transactions(records, viewer)

    def audit_wallet(self, user_id: int, *, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        """Admin audit bundle: full view, balance recomputation, audit entries."""
        record = self.store.wallet_audit_record(user_id)
        recomputed = self.store.recompute_balance(record.id)
        if recomputed != record.balance:
            logger.error(
                "Balance drift on wallet %s: stored %d, recomputed %d",
                record.id, record.balance, recomputed,
            )
        return {
            "wallet": project_wallet(
                record,
                ViewerContext(is_admin=True),
                allowances=self.guard.allowances(user_id),
                minor_units_per_dgt=self.minor_units_per_dgt,
                usd_cents_per_dgt=self.usd_cents_per_dgt,
            ),
            "balance_check": {
                "stored": record.balance,
                "recomputed": recomputed,
                "consistent": recomputed == record.balance,
            },
            "audit_log": get_audit_log(
                self.store.engine,
                target_table="wallets",
                target_id=str(record.id),
                page=page,
                page_size=page_size,
            ),
        }

    def audit_log(self, *, page: int = 1, page_size: int = 50) -> list[dict]:
        return get_audit_log(self.store.engine, page=page, page_size=page_size)

    # ------------------------------------------------------------------
    # Admin mutations
    # ------------------------------------------------------------------
    def freeze_wallet(self, user_id: int, admin_id: int, reason: str | None = None) -> dict:
        record = self.store.set_wallet_frozen(user_id, frozen=True, admin_id=admin_id, reason=reason)
        return project_wallet(record, ViewerContext(viewer_id=admin_id, is_admin=True))

    def unfreeze_wallet(self, user_id: int, admin_id: int, reason: str | None = None) -> dict:
        record = self.store.set_wallet_frozen(user_id, frozen=False, admin_id=admin_id, reason=reason)
        return project_wallet(record, ViewerContext(viewer_id=admin_id, is_admin=True))

    def flag_transaction(
        self,
        transaction_id: int,
        admin_id: int,
        *,
        flagged: bool = True,
        reason: str | None = None,
    ) -> dict:
        record = self.store.flag_transaction(
            transaction_id, admin_id=admin_id, flagged=flagged, reason=reason
        )
        return project_transaction(record, ViewerContext(viewer_id=admin_id, is_admin=True))
