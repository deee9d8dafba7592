"""
dgtledger.api.routes.wallet — Wallet views & user economic actions
===================================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dgtledger.api.deps import get_current_user, get_economy, get_optional_user, get_wallet_service
from dgtledger.database.engine import run_db
from dgtledger.engine.projector import ViewerContext
from dgtledger.services.action_engine import EconomyEngine
from dgtledger.services.wallet_service import WalletService

router = APIRouter(tags=["wallet"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class TipRequest(BaseModel):
    to_user_id: int
    amount: int = Field(gt=0)
    source: str = "forum_post"
    related_content_id: str | None = None


class RainRequest(BaseModel):
    amount: int = Field(gt=0)
    recipient_ids: list[int]
    criteria: str | None = None
    source: str = "shoutbox"


class WithdrawRequest(BaseModel):
    usd_cents: int = Field(gt=0)
    destination: str = Field(min_length=1)


class DepositAddressRequest(BaseModel):
    address: str = Field(min_length=1)
    expected_usd_cents: int | None = Field(default=None, gt=0)


def _viewer(payload: dict | None, owner_id: int) -> ViewerContext:
    if payload is None:
        return ViewerContext()
    return ViewerContext.for_request(
        payload["user_id"], owner_id, is_admin=bool(payload.get("is_admin"))
    )


def _level(payload: dict) -> int:
    return int(payload.get("level", 0))


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------
@router.get("/wallets/{user_id}")
async def get_wallet(
    user_id: int,
    payload: dict | None = Depends(get_optional_user),
    service: WalletService = Depends(get_wallet_service),
):
    """Wallet shaped for the caller: public, owner or admin."""
    viewer = _viewer(payload, user_id)
    level = _level(payload) if viewer.is_owner else None
    return await run_db(service.get_wallet_view, user_id, viewer, level=level)


@router.get("/wallets/{user_id}/transactions")
async def list_transactions(
    user_id: int,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    since: datetime | None = None,
    until: datetime | None = None,
    payload: dict | None = Depends(get_optional_user),
    service: WalletService = Depends(get_wallet_service),
):
    viewer = _viewer(payload, user_id)
    items = await run_db(
        service.list_transactions, user_id, viewer,
        limit=limit, offset=offset, since=since, until=until,
    )
    return {"items": items, "limit": limit, "offset": offset}


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------
@router.post("/wallet/tip")
async def tip(
    body: TipRequest,
    user: dict = Depends(get_current_user),
    economy: EconomyEngine = Depends(get_economy),
):
    context = {"related_content_id": body.related_content_id} if body.related_content_id else None
    result = await economy.tip(
        user["user_id"], body.to_user_id, body.amount, body.source,
        user_level=_level(user),
        is_developer=bool(user.get("is_developer")),
        context=context,
    )
    return result.to_dict()


@router.post("/wallet/rain")
async def rain(
    body: RainRequest,
    user: dict = Depends(get_current_user),
    economy: EconomyEngine = Depends(get_economy),
):
    result = await economy.rain(
        user["user_id"], body.amount, body.recipient_ids, body.criteria,
        user_level=_level(user),
        is_developer=bool(user.get("is_developer")),
        source=body.source,
    )
    return result.to_dict()


@router.post("/wallet/withdraw", status_code=202)
async def withdraw(
    body: WithdrawRequest,
    user: dict = Depends(get_current_user),
    economy: EconomyEngine = Depends(get_economy),
):
    result = await economy.withdraw(
        user["user_id"], body.usd_cents, body.destination,
        user_level=_level(user),
        is_developer=bool(user.get("is_developer")),
    )
    return result.to_dict()


@router.post("/wallet/transactions/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: int,
    user: dict = Depends(get_current_user),
    economy: EconomyEngine = Depends(get_economy),
):
    result = await economy.cancel(
        transaction_id, user["user_id"], is_admin=bool(user.get("is_admin"))
    )
    return result.to_dict()


@router.post("/wallet/deposit-address", status_code=202)
async def deposit_address(
    body: DepositAddressRequest,
    user: dict = Depends(get_current_user),
    economy: EconomyEngine = Depends(get_economy),
):
    """Register a deposit address with the gateway and open a pending deposit."""
    result = await economy.begin_deposit(
        user["user_id"], body.address, body.expected_usd_cents,
        user_level=_level(user),
        is_developer=bool(user.get("is_developer")),
    )
    return result.to_dict()
