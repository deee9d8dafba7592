"""
dgtledger.api.routes.admin — Admin ledger endpoints (JWT‑protected)
====================================================================

Every mutation here is written to ``admin_log`` in the same database
transaction as the change itself.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dgtledger.api.deps import get_current_admin, get_economy, get_wallet_service
from dgtledger.database.engine import run_db
from dgtledger.services.action_engine import EconomyEngine
from dgtledger.services.wallet_service import WalletService

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ReasonBody(BaseModel):
    reason: str | None = None


class AdjustBody(BaseModel):
    amount: int
    reason: str = Field(min_length=1)


class FlagBody(BaseModel):
    flagged: bool = True
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
@router.post("/transactions/{transaction_id}/reverse")
async def reverse_transaction(
    transaction_id: int,
    body: ReasonBody,
    admin: dict = Depends(get_current_admin),
    economy: EconomyEngine = Depends(get_economy),
):
    result = await economy.reverse_transaction(transaction_id, admin["user_id"], body.reason)
    return result.to_dict()


@router.post("/transactions/{transaction_id}/flag")
async def flag_transaction(
    transaction_id: int,
    body: FlagBody,
    admin: dict = Depends(get_current_admin),
    service: WalletService = Depends(get_wallet_service),
):
    return await run_db(
        service.flag_transaction, transaction_id, admin["user_id"],
        flagged=body.flagged, reason=body.reason,
    )


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------
@router.post("/wallets/{user_id}/adjust")
async def adjust_wallet(
    user_id: int,
    body: AdjustBody,
    admin: dict = Depends(get_current_admin),
    economy: EconomyEngine = Depends(get_economy),
):
    result = await economy.adjust_balance(user_id, body.amount, admin["user_id"], body.reason)
    return result.to_dict()


@router.post("/wallets/{user_id}/freeze")
async def freeze_wallet(
    user_id: int,
    body: ReasonBody,
    admin: dict = Depends(get_current_admin),
    service: WalletService = Depends(get_wallet_service),
):
    return await run_db(service.freeze_wallet, user_id, admin["user_id"], body.reason)


@router.post("/wallets/{user_id}/unfreeze")
async def unfreeze_wallet(
    user_id: int,
    body: ReasonBody,
    admin: dict = Depends(get_current_admin),
    service: WalletService = Depends(get_wallet_service),
):
    return await run_db(service.unfreeze_wallet, user_id, admin["user_id"], body.reason)


@router.get("/wallets/{user_id}/audit")
async def audit_wallet(
    user_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin: dict = Depends(get_current_admin),
    service: WalletService = Depends(get_wallet_service),
):
    return await run_db(service.audit_wallet, user_id, page=page, page_size=page_size)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit-log")
async def audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin: dict = Depends(get_current_admin),
    service: WalletService = Depends(get_wallet_service),
):
    return await run_db(service.audit_log, page=page, page_size=page_size)
