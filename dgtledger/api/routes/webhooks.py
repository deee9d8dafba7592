"""
dgtledger.api.routes.webhooks — Settlement Gateway callbacks
=============================================================

The gateway POSTs a JSON event signed with HMAC-SHA256 over the raw body
(``X-Gateway-Signature``, hex digest, shared ``GATEWAY_WEBHOOK_SECRET``)::

    {"event": "confirmed", "transaction_id": "gw_123", "usd_cents": 2500}
    {"event": "rejected",  "transaction_id": "gw_123", "reason": "bad address"}

``transaction_id`` is the ledger reference sent with a withdrawal request, or
the watch id the gateway returned for a deposit.  Delivery is
at-least-once; handlers are idempotent.
"""

from __future__ import annotations

import logging
import os
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from dgtledger.api.deps import get_economy
from dgtledger.services.action_engine import EconomyEngine
from dgtledger.services.gateway import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class GatewayEvent(BaseModel):
    event: Literal["confirmed", "rejected"]
    transaction_id: str
    usd_cents: int | None = None
    reason: str | None = None


def _webhook_secret() -> str:
    return os.getenv("GATEWAY_WEBHOOK_SECRET", "")


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    economy: EconomyEngine = Depends(get_economy),
):
    body = await request.body()
    if not verify_signature(_webhook_secret(), body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected gateway webhook with bad signature")
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid signature")
    try:
        event = GatewayEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "Malformed gateway event") from exc

    if event.event == "confirmed":
        result = await economy.on_confirmed(event.transaction_id, event.usd_cents)
        return {"status": "settled", **result.to_dict()}

    changed = await economy.on_rejected(event.transaction_id, event.reason or "rejected")
    return {"status": "failed" if changed else "ignored", "transaction_id": event.transaction_id}
