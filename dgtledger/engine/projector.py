"""
dgtledger.engine.projector — Permission-tiered wallet & transaction views
==========================================================================

One canonical record, three shapes.  The caller has already decided *who*
the viewer is; this module only decides *what that viewer class sees*:

    anonymous → coarse public stats, no history, no exact balance
    owner     → exact balance, sanitized history, remaining allowances
    admin     → everything the owner sees + system / audit / risk fields

Everything here is a pure function of ``(record, ViewerContext)``: no DB,
no clock, no randomness.  Records are frozen snapshots built from ORM rows
by :meth:`WalletRecord.from_model` / :meth:`TransactionRecord.from_model`.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from dgtledger.constants import (
    SOURCE_LABELS,
    TRANSACTION_CATEGORIES,
    as_utc,
    balance_tier,
)
from dgtledger.engine.fees import minor_to_usd_cents

if TYPE_CHECKING:
    from dgtledger.database.models import LedgerTransaction, Wallet

# Metadata keys an owner may see; everything else (wallet ids, rates, IPs)
# stays admin-only.
OWNER_CONTEXT_KEYS: tuple[str, ...] = (
    "source",
    "related_content_id",
    "counterparty_user_id",
    "recipient_count",
    "criteria",
    "reason",
    "reverses",
    "destination",
)

LARGE_TRANSACTION_THRESHOLD = 10_000
LARGE_BALANCE_THRESHOLD = 100_000


# ---------------------------------------------------------------------------
# Viewer context
# ---------------------------------------------------------------------------
class ViewerRole(enum.StrEnum):
    ANONYMOUS = "anonymous"
    OWNER = "owner"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class ViewerContext:
    """Who is looking.  Built per request, never persisted."""

    viewer_id: int | None = None
    is_owner: bool = False
    is_admin: bool = False

    @classmethod
    def for_request(
        cls, viewer_id: int | None, owner_id: int, *, is_admin: bool = False
    ) -> ViewerContext:
        return cls(
            viewer_id=viewer_id,
            is_owner=viewer_id is not None and viewer_id == owner_id,
            is_admin=is_admin,
        )

    @property
    def role(self) -> ViewerRole:
        if self.is_admin:
            return ViewerRole.ADMIN
        if self.is_owner:
            return ViewerRole.OWNER
        return ViewerRole.ANONYMOUS


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WalletRecord:
    id: int
    user_id: int
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    status: str
    version: int
    held: int = 0
    frozen_reason: str | None = None
    frozen_by: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    transaction_count: int = 0
    flagged_count: int = 0
    last_large_transaction_at: datetime | None = None

    @property
    def available(self) -> int:
        return self.balance - self.held

    @classmethod
    def from_model(
        cls,
        wallet: Wallet,
        *,
        transaction_count: int = 0,
        flagged_count: int = 0,
        last_large_transaction_at: datetime | None = None,
    ) -> WalletRecord:
        return cls(
            id=wallet.id,
            user_id=wallet.user_id,
            balance=wallet.balance,
            held=wallet.held,
            lifetime_earned=wallet.lifetime_earned,
            lifetime_spent=wallet.lifetime_spent,
            status=wallet.status,
            version=wallet.version,
            frozen_reason=wallet.frozen_reason,
            frozen_by=wallet.frozen_by,
            created_at=as_utc(wallet.created_at),
            updated_at=as_utc(wallet.updated_at),
            transaction_count=transaction_count,
            flagged_count=flagged_count,
            last_large_transaction_at=as_utc(last_large_transaction_at),
        )


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    id: int
    wallet_id: int | None
    counterparty_wallet_id: int | None
    type: str
    amount: int
    fee: int
    status: str
    created_at: datetime
    settled_at: datetime | None = None
    group_id: str | None = None
    external_reference: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    flagged: bool = False
    flag_reason: str | None = None
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    held_amount: int = 0

    @property
    def effect(self) -> int:
        return self.amount + self.fee

    @classmethod
    def from_model(cls, tx: LedgerTransaction) -> TransactionRecord:
        return cls(
            id=tx.id,
            wallet_id=tx.wallet_id,
            counterparty_wallet_id=tx.counterparty_wallet_id,
            type=tx.type,
            amount=tx.amount,
            fee=tx.fee,
            status=tx.status,
            created_at=as_utc(tx.created_at),
            settled_at=as_utc(tx.settled_at),
            group_id=tx.group_id,
            external_reference=tx.external_reference,
            metadata=dict(tx.metadata_ or {}),
            failure_reason=tx.failure_reason,
            flagged=tx.flagged,
            flag_reason=tx.flag_reason,
            reviewed_by=tx.reviewed_by,
            reviewed_at=as_utc(tx.reviewed_at),
            held_amount=tx.held_amount,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def risk_score(record: WalletRecord) -> int:
    """0–10 heuristic used on the admin view."""
    score = 0
    if record.balance > LARGE_BALANCE_THRESHOLD:
        score += 2
    if record.transaction_count > 1000:
        score += 2
    if record.flagged_count > 0:
        score += min(record.flagged_count, 4)
    if record.status == "frozen":
        score += 2
    return min(10, score)


def transaction_category(tx_type: str) -> str:
    return TRANSACTION_CATEGORIES.get(tx_type, "other")


def sanitize_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Owner-safe context: internal ids dropped, source made human-readable."""
    visible = {key: metadata[key] for key in OWNER_CONTEXT_KEYS if key in metadata}
    source = metadata.get("source")
    if source is not None:
        visible["source_label"] = SOURCE_LABELS.get(source, str(source).replace("_", " ").title())
    return visible


# ---------------------------------------------------------------------------
# Wallet projection
# ---------------------------------------------------------------------------
def project_wallet(
    record: WalletRecord,
    viewer: ViewerContext,
    *,
    allowances: Mapping[str, Mapping[str, int]] | None = None,
    level: int | None = None,
    minor_units_per_dgt: int = 100,
    usd_cents_per_dgt: int = 10,
) -> dict[str, Any]:
    """Render *record* for *viewer*.

    *allowances* (remaining daily amounts per action) and *level* are
    supplied by the caller; the projector never looks them up itself.
    """
    view: dict[str, Any] = {
        "user_id": str(record.user_id),
        "level": level,
        "lifetime_earned": record.lifetime_earned,
        "lifetime_spent": record.lifetime_spent,
        "balance_tier": balance_tier(record.balance),
    }
    role = viewer.role
    if role is ViewerRole.ANONYMOUS:
        return view

    view.update({
        "balance": record.balance,
        "balance_usd_cents": minor_to_usd_cents(
            record.balance,
            minor_units_per_dgt=minor_units_per_dgt,
            usd_cents_per_dgt=usd_cents_per_dgt,
        ),
        "held": record.held,
        "available": record.available,
        "status": record.status,
        "limits": {action: dict(info) for action, info in sorted((allowances or {}).items())},
    })
    if role is ViewerRole.OWNER:
        return view

    score = risk_score(record)
    view["admin"] = {
        "wallet_id": record.id,
        "version": record.version,
        "frozen_reason": record.frozen_reason,
        "frozen_by": str(record.frozen_by) if record.frozen_by is not None else None,
        "transaction_count": record.transaction_count,
        "flagged_transactions": record.flagged_count,
        "risk_score": score,
        "suspicious_activity": score > 7 or record.flagged_count > 5,
        "last_large_transaction_at": _iso(record.last_large_transaction_at),
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }
    return view


# ---------------------------------------------------------------------------
# Transaction projection
# ---------------------------------------------------------------------------
def project_transaction(
    record: TransactionRecord, viewer: ViewerContext
) -> dict[str, Any] | None:
    """Render one transaction; anonymous viewers get ``None``."""
    role = viewer.role
    if role is ViewerRole.ANONYMOUS:
        return None

    effect = record.effect
    view: dict[str, Any] = {
        "id": record.id,
        "type": record.type,
        "category": transaction_category(record.type),
        "direction": "credit" if effect >= 0 else "debit",
        "amount": record.amount,
        "fee": record.fee,
        "net": effect,
        "status": record.status,
        "created_at": _iso(record.created_at),
        "settled_at": _iso(record.settled_at),
        "context": sanitize_metadata(record.metadata),
        "is_reversal": "reverses" in record.metadata,
    }
    if role is ViewerRole.OWNER:
        return view

    view.update({
        "wallet_id": record.wallet_id,
        "counterparty_wallet_id": record.counterparty_wallet_id,
        "group_id": record.group_id,
        "external_reference": record.external_reference,
        "raw_metadata": dict(record.metadata),
        "failure_reason": record.failure_reason,
        "held_amount": record.held_amount,
        "flagged": record.flagged,
        "flag_reason": record.flag_reason,
        "reviewed_by": str(record.reviewed_by) if record.reviewed_by is not None else None,
        "reviewed_at": _iso(record.reviewed_at),
        "large_transaction": abs(effect) > LARGE_TRANSACTION_THRESHOLD,
    })
    return view


def project_transactions(
    records: Iterable[TransactionRecord], viewer: ViewerContext
) -> list[dict[str, Any]]:
    if viewer.role is ViewerRole.ANONYMOUS:
        return []
    return [project_transaction(r, viewer) for r in records]
