"""
dgtledger.services.action_engine — Economic Action Orchestration
=================================================================

Turns a user intent (tip, rain, withdraw, deposit) into ledger writes.

Every action follows the same pipeline::

    validate → feature gate → rate reserve → append pending → settle
                                   │                            │
                                   └──── release ◄── fail ◄─────┘  (on any error)

Validation and policy rejections raise *before* anything is written.  Once a
rate reservation has been taken, any later failure marks the appended
transactions ``failed`` and hands the reservation back, so a failed action
never consumes allowance.

Leveling events are reported only after settlement committed, from a tracked
background task: a slow or failing leveling service never delays or fails
the action, its errors are only logged.

Withdrawals escrow their debit (``LedgerStore.hold_funds``) before the
gateway is called, so the same balance cannot be spent twice while the
payout is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from dgtledger.config import EconomyConfig
from dgtledger.constants import utcnow
from dgtledger.database.engine import run_db
from dgtledger.database.models import (
    RateAction,
    TransactionStatus,
    TransactionType,
    WalletStatus,
)
from dgtledger.engine.errors import (
    AboveMaximum,
    BelowMinimum,
    EconomyError,
    GatewayTimeout,
    InsufficientBalance,
    InvalidRecipient,
    InvalidTransition,
    NotEligible,
    PermissionDenied,
    TransactionNotFound,
    WalletFrozen,
)
from dgtledger.engine.events import EconomicEvent, EconomicEventType
from dgtledger.engine.feature_gate import FeatureGateEvaluator
from dgtledger.engine.fees import (
    plan_rain,
    split_tip,
    usd_cents_to_minor,
    withdrawal_fee_cents,
)
from dgtledger.engine.projector import TransactionRecord, WalletRecord
from dgtledger.services.collaborators import (
    AllowAllEligibility,
    EligibilityService,
    LevelingService,
    NullLevelingService,
    PegRateSource,
    RateSource,
)
from dgtledger.services.gateway import SettlementGateway, UnconfiguredGateway
from dgtledger.services.ledger_store import LedgerStore, TransactionDraft
from dgtledger.services.rate_guard import RateGuard, Reservation

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

LEVELING_REPORT_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Outcome of a successful economic action."""

    transaction_id: int
    balance: int
    related_ids: tuple[int, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "balance": self.balance,
            "related_ids": list(self.related_ids),
            **self.details,
        }


# ---------------------------------------------------------------------------
# Reservation ↔ metadata (withdrawals are released long after the request)
# ---------------------------------------------------------------------------
def _reservation_to_meta(reservation: Reservation) -> dict[str, Any]:
    return {
        "amount": reservation.amount,
        "reserved_at": reservation.reserved_at.isoformat(),
        "previous_action_at": (
            reservation.previous_action_at.isoformat()
            if reservation.previous_action_at else None
        ),
        "window_start": reservation.window_start.isoformat(),
    }


def _reservation_from_meta(user_id: int, action: str, meta: dict | None) -> Reservation | None:
    if not meta:
        return None
    previous = meta.get("previous_action_at")
    return Reservation(
        user_id=user_id,
        action=action,
        amount=int(meta["amount"]),
        reserved_at=datetime.fromisoformat(meta["reserved_at"]),
        previous_action_at=datetime.fromisoformat(previous) if previous else None,
        window_start=datetime.fromisoformat(meta["window_start"]),
    )


class EconomyEngine:
    """Validates, rate-limits and settles economic actions."""

    def __init__(
        self,
        engine: Engine,
        config: EconomyConfig | None = None,
        *,
        store: LedgerStore | None = None,
        guard: RateGuard | None = None,
        gates: FeatureGateEvaluator | None = None,
        gateway: SettlementGateway | None = None,
        leveling: LevelingService | None = None,
        eligibility: EligibilityService | None = None,
        rate_source: RateSource | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or EconomyConfig.default()
        self.clock = clock
        self.store = store or LedgerStore(
            engine, clock=clock, max_retries=self.config.max_settle_retries
        )
        self.guard = guard or RateGuard(
            engine, self.config.limits, clock=clock,
            max_retries=self.config.max_settle_retries,
        )
        self.gates = gates or FeatureGateEvaluator(self.config.feature_gates)
        self.gateway = gateway or UnconfiguredGateway()
        self.leveling = leveling or NullLevelingService()
        self.eligibility = eligibility or AllowAllEligibility()
        self.rate_source = rate_source or PegRateSource(self.config.usd_cents_per_dgt)
        self._reports: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Tip
    # ------------------------------------------------------------------
    async def tip(
        self,
        from_user: int,
        to_user: int,
        amount: int,
        source: str,
        *,
        user_level: int,
        is_developer: bool = False,
        context: dict | None = None,
    ) -> ActionResult:
        """Send *amount* to *to_user*; ``tip.burn_bps`` of it is burned."""
        if from_user == to_user:
            raise InvalidRecipient("You cannot tip yourself", user_id=str(from_user))
        if amount < self.config.tip.min_amount:
            raise BelowMinimum("amount", self.config.tip.min_amount, amount)
        self.gates.require("tipping", user_level, is_developer, from_user)

        sender = await run_db(self.store.get_wallet, from_user)
        self._ensure_active(sender)
        known = await run_db(self.store.find_wallet, to_user)
        if known is not None:
            self._ensure_active(known)

        reservation = await run_db(
            self.guard.check_and_reserve, from_user, RateAction.TIP.value, amount
        )
        recipient = (await self._wallets_for({to_user: known}, reservation))[to_user]
        split = split_tip(amount, self.config.tip.burn_bps)
        base = {"source": source, **(context or {})}
        drafts = [
            TransactionDraft(
                wallet_id=sender.id,
                type=TransactionType.TIP,
                amount=-amount,
                metadata={**base, "counterparty_user_id": str(to_user)},
                counterparty_wallet_id=recipient.id,
            ),
            TransactionDraft(
                wallet_id=recipient.id,
                type=TransactionType.TIP,
                amount=split.net,
                metadata={**base, "counterparty_user_id": str(from_user)},
                counterparty_wallet_id=sender.id,
            ),
        ]
        if split.burn > 0:
            drafts.append(TransactionDraft(
                wallet_id=None,
                type=TransactionType.BURN,
                amount=-split.burn,
                metadata={"source": source, "reason": "tip_burn",
                          "burn_bps": self.config.tip.burn_bps},
                counterparty_wallet_id=sender.id,
            ))

        ids = await self._settle_drafts(drafts, reservation)
        logger.info(
            "Tip %s → %s: %d (burned %d, net %d)",
            from_user, to_user, amount, split.burn, split.net,
        )
        self._report([
            EconomicEvent(from_user, EconomicEventType.TIP_SENT, amount, ids[0], {"source": source}),
            EconomicEvent(to_user, EconomicEventType.TIP_RECEIVED, split.net, ids[1], {"source": source}),
        ])
        sender = await run_db(self.store.get_wallet, from_user)
        return ActionResult(
            transaction_id=ids[0],
            balance=sender.balance,
            related_ids=tuple(ids[1:]),
            details={"amount": amount, "burned": split.burn, "net": split.net,
                     "recipient_id": str(to_user)},
        )

    # ------------------------------------------------------------------
    # Rain
    # ------------------------------------------------------------------
    async def rain(
        self,
        from_user: int,
        total_amount: int,
        recipient_ids: Sequence[int],
        criteria: str | None = None,
        *,
        user_level: int,
        is_developer: bool = False,
        source: str = "shoutbox",
    ) -> ActionResult:
        """Split *total_amount* equally across *recipient_ids*.

        Recipients are de-duplicated (first occurrence wins) and the sender is
        dropped.  If the equal share would fall below ``rain.min_share`` the
        list is shortened from the end; the division remainder is burned.
        """
        ordered = [uid for uid in dict.fromkeys(recipient_ids) if uid != from_user]
        if not ordered:
            raise InvalidRecipient("Rain needs at least one recipient other than the sender")
        max_recipients = self.config.rain.max_recipients
        if len(ordered) > max_recipients:
            raise AboveMaximum("recipient_count", max_recipients, len(ordered))
        if total_amount <= 0:
            raise BelowMinimum("amount", 1, total_amount)
        self.gates.require("rain", user_level, is_developer, from_user)

        sender = await run_db(self.store.get_wallet, from_user)
        self._ensure_active(sender)
        known: dict[int, WalletRecord | None] = {}
        frozen: list[int] = []
        for uid in ordered:
            wallet = await run_db(self.store.find_wallet, uid)
            if wallet is not None and wallet.status == WalletStatus.FROZEN.value:
                frozen.append(uid)
            else:
                known[uid] = wallet
        eligible = [uid for uid in ordered if uid in known]
        if not eligible:
            raise InvalidRecipient("No eligible rain recipients")

        plan = plan_rain(
            total_amount,
            eligible,
            min_share=self.config.rain.min_share,
            burn_bps=self.config.rain.burn_bps,
        )
        reservation = await run_db(
            self.guard.check_and_reserve, from_user, RateAction.RAIN.value, plan.charged
        )
        wallets = await self._wallets_for(
            {uid: known[uid] for uid in plan.recipients}, reservation
        )

        base = {"source": source, "criteria": criteria}
        drafts = [TransactionDraft(
            wallet_id=sender.id,
            type=TransactionType.RAIN,
            amount=-plan.charged,
            metadata={**base, "recipient_count": len(plan.recipients)},
        )]
        for uid in plan.recipients:
            drafts.append(TransactionDraft(
                wallet_id=wallets[uid].id,
                type=TransactionType.RAIN,
                amount=plan.share,
                metadata={**base, "counterparty_user_id": str(from_user)},
                counterparty_wallet_id=sender.id,
            ))
        if plan.burned > 0:
            drafts.append(TransactionDraft(
                wallet_id=None,
                type=TransactionType.BURN,
                amount=-plan.burned,
                metadata={"source": source, "reason": "rain_burn",
                          "fee_burn": plan.fee_burn, "remainder_burn": plan.remainder_burn},
                counterparty_wallet_id=sender.id,
            ))

        ids = await self._settle_drafts(drafts, reservation)
        logger.info(
            "Rain from %s: %d to %d recipients (%d each, burned %d)",
            from_user, plan.charged, len(plan.recipients), plan.share, plan.burned,
        )
        events = [EconomicEvent(from_user, EconomicEventType.RAIN_SENT, plan.charged, ids[0])]
        events.extend(
            EconomicEvent(uid, EconomicEventType.RAIN_RECEIVED, plan.share, tx_id)
            for uid, tx_id in zip(plan.recipients, ids[1:1 + len(plan.recipients)])
        )
        self._report(events)

        sender = await run_db(self.store.get_wallet, from_user)
        return ActionResult(
            transaction_id=ids[0],
            balance=sender.balance,
            related_ids=tuple(ids[1:]),
            details={
                "recipients": [str(uid) for uid in plan.recipients],
                "excluded": [str(uid) for uid in (*plan.excluded, *frozen)],
                "share": plan.share,
                "distributed": plan.distributed,
                "burned": plan.burned,
                "charged": plan.charged,
            },
        )

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------
    async def begin_deposit(
        self,
        user_id: int,
        address: str,
        expected_usd_cents: int | None = None,
        *,
        user_level: int,
        is_developer: bool = False,
    ) -> ActionResult:
        """Ask the gateway to watch *address*, then record the pending deposit."""
        minimum = self.config.deposit.min_usd_cents
        if expected_usd_cents is not None and expected_usd_cents < minimum:
            raise BelowMinimum("usd_cents", minimum, expected_usd_cents)
        self.gates.require("deposit", user_level, is_developer, user_id)
        wallet = await run_db(self.store.get_wallet, user_id)
        self._ensure_active(wallet)

        try:
            watch_handle = await asyncio.wait_for(
                self.gateway.initiate_deposit(address, expected_usd_cents),
                timeout=self.config.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayTimeout("Gateway did not answer the deposit request") from exc
        return await self.deposit(
            user_id, watch_handle, expected_usd_cents=expected_usd_cents, address=address
        )

    async def deposit(
        self,
        user_id: int,
        external_reference: str,
        *,
        expected_usd_cents: int | None = None,
        address: str | None = None,
    ) -> ActionResult:
        """Record an incoming deposit awaiting confirmation.

        Idempotent per *external_reference*: a repeated call returns the
        existing transaction.  Concurrent deliveries are settled by the unique
        ``(external_reference, type)`` index.  The amount is fixed on
        confirmation.
        """
        wallet = await run_db(self.store.get_wallet, user_id)
        existing = await run_db(
            self.store.find_by_external_reference, external_reference, TransactionType.DEPOSIT
        )
        if existing is not None:
            return self._duplicate_deposit(existing, wallet, external_reference)

        try:
            tx_id = await run_db(
                self.store.append_transaction,
                wallet.id,
                TransactionType.DEPOSIT,
                0,
                0,
                {"source": "gateway", "expected_usd_cents": expected_usd_cents,
                 "address": address},
                external_reference=external_reference,
            )
        except IntegrityError:
            existing = await run_db(
                self.store.find_by_external_reference, external_reference, TransactionType.DEPOSIT
            )
            if existing is None:
                raise
            logger.info("Deposit %s was recorded by a concurrent delivery", external_reference)
            return self._duplicate_deposit(existing, wallet, external_reference)
        await run_db(self.store.mark_awaiting_external, tx_id)
        logger.info("Deposit %s for user %s awaiting confirmation", external_reference, user_id)
        return ActionResult(
            transaction_id=tx_id,
            balance=wallet.balance,
            details={"status": TransactionStatus.AWAITING_EXTERNAL.value,
                     "external_reference": external_reference},
        )

    # ------------------------------------------------------------------
    # Withdrawal
    # ------------------------------------------------------------------
    async def withdraw(
        self,
        user_id: int,
        usd_cents: int,
        destination_wallet_id: str,
        *,
        user_level: int,
        is_developer: bool = False,
    ) -> ActionResult:
        """Escrow the debit and hand the payout to the settlement gateway.

        The transaction carries a ledger reference the gateway echoes back;
        it stays ``awaiting_external`` with its debit held until the gateway
        confirms or rejects.
        """
        w = self.config.withdrawal
        if usd_cents < w.min_usd_cents:
            raise BelowMinimum("usd_cents", w.min_usd_cents, usd_cents)
        if usd_cents > w.max_usd_cents:
            raise AboveMaximum("usd_cents", w.max_usd_cents, usd_cents)
        self.gates.require("withdrawal", user_level, is_developer, user_id)
        if user_level < w.min_level:
            raise NotEligible(
                f"Withdrawals require level {w.min_level}", min_level=w.min_level
            )
        if not await self.eligibility.is_eligible_for_withdrawal(user_id):
            raise NotEligible("Identity verification is required before withdrawing")

        wallet = await run_db(self.store.get_wallet, user_id)
        self._ensure_active(wallet)

        rate = self.rate_source.usd_cents_per_dgt()
        fee_cents = withdrawal_fee_cents(usd_cents, w.fee_bps, w.flat_fee_cents)
        amount_minor = usd_cents_to_minor(
            usd_cents, minor_units_per_dgt=self.config.minor_units_per_dgt,
            usd_cents_per_dgt=rate, round_up=True,
        )
        fee_minor = usd_cents_to_minor(
            fee_cents, minor_units_per_dgt=self.config.minor_units_per_dgt,
            usd_cents_per_dgt=rate, round_up=True,
        )
        total = amount_minor + fee_minor

        reservation = await run_db(
            self.guard.check_and_reserve, user_id, RateAction.WITHDRAWAL.value, usd_cents
        )
        reference = f"wd_{uuid.uuid4().hex}"
        tx_id: int | None = None
        try:
            if wallet.available < total:
                raise InsufficientBalance(required=total, available=wallet.available)
            tx_id = await run_db(
                self.store.append_transaction,
                wallet.id,
                TransactionType.WITHDRAWAL,
                -amount_minor,
                -fee_minor,
                {
                    "source": "gateway",
                    "destination": destination_wallet_id,
                    "usd_cents": usd_cents,
                    "fee_usd_cents": fee_cents,
                    "exchange_rate": rate,
                    "rate_reservation": _reservation_to_meta(reservation),
                },
                external_reference=reference,
            )
            await run_db(self.store.hold_funds, tx_id)
            await run_db(self.store.mark_awaiting_external, tx_id)
        except Exception as exc:
            await self._abort([tx_id] if tx_id else [], exc, reservation)
            raise

        # The gateway may confirm against *reference* before this call returns.
        try:
            gateway_tx_id = await asyncio.wait_for(
                self.gateway.initiate_withdrawal(destination_wallet_id, usd_cents, reference),
                timeout=self.config.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            await self._fail_external(await self._get(tx_id), GatewayTimeout.code)
            raise GatewayTimeout("Gateway did not answer the withdrawal request") from exc
        except Exception as exc:
            reason = exc.code if isinstance(exc, EconomyError) else type(exc).__name__
            await self._fail_external(await self._get(tx_id), reason)
            raise
        tx = await run_db(self.store.record_metadata, tx_id, {"gateway_tx_id": gateway_tx_id})
        wallet = await run_db(self.store.get_wallet, user_id)

        logger.info(
            "Withdrawal %s for user %s: $%d.%02d (+fee %d¢) → %s",
            tx_id, user_id, usd_cents // 100, usd_cents % 100, fee_cents, gateway_tx_id,
        )
        return ActionResult(
            transaction_id=tx_id,
            balance=wallet.balance,
            details={
                "status": tx.status,
                "external_reference": reference,
                "gateway_tx_id": gateway_tx_id,
                "usd_cents": usd_cents,
                "fee_usd_cents": fee_cents,
                "amount": -amount_minor,
                "fee": -fee_minor,
                "available": wallet.available,
            },
        )

    # ------------------------------------------------------------------
    # Gateway callbacks
    # ------------------------------------------------------------------
    async def on_confirmed(
        self, gateway_tx_id: str, final_usd_cents: int | None = None
    ) -> ActionResult:
        """Settle the transaction the gateway just confirmed.

        Deposits are converted at the rate read *now*, not when the deposit
        was opened; the rate used is stored in the metadata.  A repeated
        confirmation of a settled transaction is a no-op.
        """
        tx = await self._by_reference(gateway_tx_id)
        owner = await self._owner_of(tx)
        if tx.status == TransactionStatus.SETTLED.value:
            wallet = await run_db(self.store.get_wallet, owner)
            return ActionResult(tx.id, wallet.balance, details={"duplicate": True})
        if tx.status == TransactionStatus.FAILED.value:
            raise InvalidTransition(tx.id, tx.status, TransactionStatus.SETTLED.value)

        if tx.type == TransactionType.DEPOSIT.value:
            usd_cents = final_usd_cents
            if usd_cents is None:
                usd_cents = tx.metadata.get("expected_usd_cents")
            if not usd_cents or usd_cents <= 0:
                raise BelowMinimum("usd_cents", 1, usd_cents or 0)
            rate = self.rate_source.usd_cents_per_dgt()
            amount = usd_cents_to_minor(
                usd_cents, minor_units_per_dgt=self.config.minor_units_per_dgt,
                usd_cents_per_dgt=rate,
            )
            await run_db(
                self.store.set_amount, tx.id, amount,
                metadata_updates={"usd_cents": usd_cents, "exchange_rate": rate},
            )
            settled = await run_db(self.store.settle, tx.id)
            event_type = EconomicEventType.DEPOSIT_SETTLED
        else:
            try:
                settled = await run_db(self.store.settle, tx.id)
            except EconomyError as exc:
                # Left awaiting_external with its hold; a redelivery retries.
                logger.error(
                    "Confirmed withdrawal %s could not be settled: %s", tx.id, exc.message
                )
                raise
            event_type = EconomicEventType.WITHDRAWAL_SETTLED

        self._report([EconomicEvent(owner, event_type, abs(settled.amount), settled.id)])
        wallet = await run_db(self.store.get_wallet, owner)
        return ActionResult(
            transaction_id=settled.id,
            balance=wallet.balance,
            details={"status": settled.status, "amount": settled.amount, "fee": settled.fee},
        )

    async def on_rejected(self, gateway_tx_id: str, reason: str) -> bool:
        """Fail the transaction and hand back its reservation.

        Returns False when the transaction was already terminal.
        """
        tx = await self._by_reference(gateway_tx_id)
        if tx.status not in (TransactionStatus.PENDING.value,
                             TransactionStatus.AWAITING_EXTERNAL.value):
            logger.warning(
                "Gateway rejected %s but transaction %s is already %s",
                gateway_tx_id, tx.id, tx.status,
            )
            return False
        return await self._fail_external(tx, f"gateway_rejected: {reason}")

    async def cancel(
        self, transaction_id: int, user_id: int, *, is_admin: bool = False
    ) -> ActionResult:
        """Cancel a transaction that is still waiting on the gateway."""
        tx = await self._get(transaction_id)
        owner = await self._owner_of(tx)
        if owner != user_id and not is_admin:
            raise PermissionDenied("You can only cancel your own transactions")
        if tx.status != TransactionStatus.AWAITING_EXTERNAL.value:
            raise InvalidTransition(tx.id, tx.status, "cancelled")
        if not await self._fail_external(tx, "cancelled"):
            fresh = await self._get(transaction_id)
            raise InvalidTransition(tx.id, fresh.status, "cancelled")
        wallet = await run_db(self.store.get_wallet, owner)
        return ActionResult(tx.id, wallet.balance, details={"status": "cancelled"})

    async def expire_stale(self, now: datetime | None = None) -> list[int]:
        """Fail every ``awaiting_external`` transaction past the confirmation timeout."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.config.confirmation_timeout_seconds)
        stale = await run_db(self.store.list_awaiting_external, older_than=cutoff)
        expired = []
        for tx in stale:
            if await self._fail_external(tx, GatewayTimeout.code):
                expired.append(tx.id)
        if expired:
            logger.info("Expired %d transaction(s) awaiting the gateway: %s", len(expired), expired)
        return expired

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------
    async def adjust_balance(
        self, user_id: int, amount: int, admin_id: int, reason: str | None = None
    ) -> ActionResult:
        record = await run_db(self.store.adjust, user_id, amount, admin_id, reason)
        wallet = await run_db(self.store.get_wallet, user_id)
        return ActionResult(record.id, wallet.balance, details={"amount": amount})

    async def reverse_transaction(
        self, transaction_id: int, admin_id: int, reason: str | None = None
    ) -> ActionResult:
        record = await run_db(self.store.reverse, transaction_id, admin_id, reason)
        wallet_balance = 0
        owner = await self._owner_of(record)
        if owner is not None:
            wallet_balance = (await run_db(self.store.get_wallet, owner)).balance
        return ActionResult(
            record.id,
            wallet_balance,
            related_ids=(transaction_id,),
            details={"amount": record.amount, "reverses": transaction_id},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _ensure_active(wallet: WalletRecord) -> None:
        if wallet.status == WalletStatus.FROZEN.value:
            raise WalletFrozen(
                f"Wallet of user {wallet.user_id} is frozen", user_id=str(wallet.user_id)
            )

    @staticmethod
    def _duplicate_deposit(
        existing: TransactionRecord, wallet: WalletRecord, reference: str
    ) -> ActionResult:
        return ActionResult(
            transaction_id=existing.id,
            balance=wallet.balance,
            details={"status": existing.status, "external_reference": reference,
                     "duplicate": True},
        )

    async def _wallets_for(
        self, known: dict[int, WalletRecord | None], reservation: Reservation
    ) -> dict[int, WalletRecord]:
        """Create the recipient wallets looked up as missing, once reserved."""
        wallets: dict[int, WalletRecord] = {}
        try:
            for uid, wallet in known.items():
                wallets[uid] = wallet or await run_db(self.store.get_wallet, uid)
        except Exception as exc:
            await self._abort([], exc, reservation)
            raise
        return wallets

    async def _settle_drafts(
        self, drafts: list[TransactionDraft], reservation: Reservation
    ) -> list[int]:
        """Append *drafts* as one group and settle them; undo everything on error."""
        ids: list[int] = []
        try:
            ids = await run_db(self.store.append_group, drafts)
            await run_db(self.store.settle_group, ids)
        except Exception as exc:
            await self._abort(ids, exc, reservation)
            raise
        return ids

    async def _abort(
        self, ids: Iterable[int], exc: BaseException, reservation: Reservation | None
    ) -> None:
        reason = exc.code if isinstance(exc, EconomyError) else type(exc).__name__
        ids = list(ids)
        try:
            if ids:
                await run_db(self.store.fail_group, ids, reason)
            if reservation is not None:
                await run_db(
                    self.guard.release,
                    reservation.user_id,
                    reservation.action,
                    reservation.amount,
                    reservation=reservation,
                )
        except Exception:
            logger.exception("Cleanup after failed action left state behind (tx %s)", ids)

    async def _fail_external(self, tx: TransactionRecord, reason: str) -> bool:
        changed = await run_db(self.store.fail, tx.id, reason)
        if changed and tx.type == TransactionType.WITHDRAWAL.value:
            owner = await self._owner_of(tx)
            reservation = self._stored_reservation(tx, owner)
            if reservation is not None:
                await run_db(
                    self.guard.release, owner, reservation.action,
                    reservation.amount, reservation=reservation,
                )
        return changed

    @staticmethod
    def _stored_reservation(tx: TransactionRecord, owner: int | None) -> Reservation | None:
        if owner is None:
            return None
        return _reservation_from_meta(
            owner, RateAction.WITHDRAWAL.value, tx.metadata.get("rate_reservation")
        )

    async def _get(self, transaction_id: int) -> TransactionRecord:
        return await run_db(self.store.get_transaction, transaction_id)

    async def _by_reference(self, reference: str) -> TransactionRecord:
        tx = await run_db(self.store.find_by_external_reference, reference)
        if tx is None:
            raise TransactionNotFound(
                f"No transaction for gateway reference {reference!r}",
                external_reference=reference,
            )
        return tx

    async def _owner_of(self, tx: TransactionRecord) -> int | None:
        if tx.wallet_id is None:
            return None
        wallet = await run_db(self.store.get_wallet_by_id, tx.wallet_id)
        return wallet.user_id

    def _report(self, events: Iterable[EconomicEvent]) -> None:
        """Hand *events* to the leveling service without waiting for it."""
        events = list(events)
        if not events:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(events))
        self._reports.add(task)
        task.add_done_callback(self._reports.discard)

    @property
    def pending_reports(self) -> int:
        return len(self._reports)

    async def drain_reports(self, timeout: float | None = None) -> None:
        """Wait for in-flight leveling reports (shutdown)."""
        if self._reports:
            await asyncio.wait(set(self._reports), timeout=timeout)

    async def _deliver(self, events: list[EconomicEvent]) -> None:
        for event in events:
            try:
                await asyncio.wait_for(
                    self.leveling.report_economic_event(event),
                    timeout=LEVELING_REPORT_TIMEOUT,
                )
            except Exception:
                logger.exception(
                    "Leveling report %s for user %s failed", event.event_type, event.user_id
                )
