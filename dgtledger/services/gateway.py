"""
dgtledger.services.gateway — Settlement Gateway client
=======================================================

The on-chain side (address generation, broadcasting, confirmations) lives
behind the Settlement Gateway.  The ledger only needs two outbound calls::

    initiate_deposit(address, expected_usd_cents)  -> watch handle
    initiate_withdrawal(destination, usd_cents, reference) -> gateway transaction id

and two inbound webhook events (``confirmed`` / ``rejected``) which are
HMAC-SHA256 signed with a shared secret; see :func:`verify_signature`.

Withdrawals carry a ledger-generated ``reference`` that the gateway uses as
its idempotency key and echoes in webhooks, so a confirmation can arrive
before ``initiate_withdrawal`` has returned.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Protocol, runtime_checkable

import httpx

from dgtledger.engine.errors import GatewayRejected, GatewayTimeout

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"


@runtime_checkable
class SettlementGateway(Protocol):
    async def initiate_deposit(self, address: str, expected_usd_cents: int | None) -> str: ...

    async def initiate_withdrawal(
        self, destination: str, usd_cents: int, reference: str
    ) -> str: ...


class UnconfiguredGateway:
    """Rejects everything.  Wired in when ``GATEWAY_BASE_URL`` is unset."""

    async def initiate_deposit(self, address: str, expected_usd_cents: int | None) -> str:
        raise GatewayRejected("Settlement gateway is not configured")

    async def initiate_withdrawal(
        self, destination: str, usd_cents: int, reference: str
    ) -> str:
        raise GatewayRejected("Settlement gateway is not configured")


class HttpSettlementGateway:
    """JSON-over-HTTPS gateway client.

    Non-2xx answers become :class:`GatewayRejected`; transport timeouts
    become :class:`GatewayTimeout`.  The overall deadline is enforced by the
    engine, this client only sets a per-request timeout.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: dict, key: str) -> str:
        """POST *payload* and return ``str(answer[key])``."""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=transport) as client:
                resp = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"Gateway timed out on {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayRejected(f"Gateway unreachable: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("Gateway %s answered %s: %s", path, resp.status_code, resp.text[:200])
            raise GatewayRejected(
                f"Gateway rejected {path}", status_code=resp.status_code
            )
        try:
            value = resp.json()[key]
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Gateway %s answered without %r: %s", path, key, resp.text[:200])
            raise GatewayRejected(
                f"Gateway answer to {path} is missing {key!r}", status_code=resp.status_code
            ) from exc
        if value is None or value == "":
            raise GatewayRejected(
                f"Gateway answer to {path} is missing {key!r}", status_code=resp.status_code
            )
        return str(value)

    async def initiate_deposit(self, address: str, expected_usd_cents: int | None) -> str:
        return await self._post(
            "/deposits",
            {"address": address, "expected_usd_cents": expected_usd_cents},
            "watch_id",
        )

    async def initiate_withdrawal(
        self, destination: str, usd_cents: int, reference: str
    ) -> str:
        return await self._post(
            "/withdrawals",
            {"destination": destination, "usd_cents": usd_cents, "reference": reference},
            "transaction_id",
        )


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------
def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)
