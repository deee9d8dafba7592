"""
dgtledger.services.collaborators — Leveling, eligibility & exchange rate
========================================================================

Interfaces the economy engine consumes but does not own, plus the default
implementations wired in when nothing else is configured.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from dgtledger.engine.events import EconomicEvent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Leveling / XP
# ---------------------------------------------------------------------------
@runtime_checkable
class LevelingService(Protocol):
    async def report_economic_event(self, event: EconomicEvent) -> None: ...


class NullLevelingService:
    """Drops every event.  Used when no leveling backend is configured."""

    async def report_economic_event(self, event: EconomicEvent) -> None:
        logger.debug(
            "Leveling disabled; dropping %s for user %s", event.event_type, event.user_id
        )


class HttpLevelingService:
    """Posts economic events to the XP service's ingest endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def report_economic_event(self, event: EconomicEvent) -> None:
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        async with httpx.AsyncClient(timeout=self.timeout, transport=transport) as client:
            resp = await client.post(
                f"{self.base_url}/economic-events",
                json={
                    "user_id": str(event.user_id),
                    "event_type": event.event_type.value,
                    "amount": event.amount,
                    "transaction_id": event.transaction_id,
                    "metadata": event.metadata,
                    "timestamp": event.timestamp.isoformat(),
                },
            )
            resp.raise_for_status()


# ---------------------------------------------------------------------------
# Withdrawal eligibility (KYC)
# ---------------------------------------------------------------------------
@runtime_checkable
class EligibilityService(Protocol):
    async def is_eligible_for_withdrawal(self, user_id: int) -> bool: ...


class AllowAllEligibility:
    async def is_eligible_for_withdrawal(self, user_id: int) -> bool:
        return True


# ---------------------------------------------------------------------------
# Exchange rate
# ---------------------------------------------------------------------------
@runtime_checkable
class RateSource(Protocol):
    def usd_cents_per_dgt(self) -> int: ...


class PegRateSource:
    """Fixed USD peg from configuration."""

    def __init__(self, usd_cents_per_dgt: int) -> None:
        self._rate = usd_cents_per_dgt

    def usd_cents_per_dgt(self) -> int:
        return self._rate
