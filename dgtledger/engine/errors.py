"""
dgtledger.engine.errors — Economy Error Taxonomy
=================================================

Every failure the ledger reports to a caller is one of these exceptions.
Each carries a machine-readable ``code``, an HTTP status the API layer maps
it to, and ``details`` for UI display (remaining cooldown, remaining
allowance, the offending bound, …).

Families:
- validation  — bad amount, self-tip, unknown recipient
- policy      — cooldown, cap, feature disabled, bounds, eligibility, frozen
- consistency — insufficient funds at settlement time, concurrent conflicts
- external    — settlement gateway rejection / timeout
"""

from __future__ import annotations

from typing import Any


class EconomyError(Exception):
    """Base class for all ledger errors."""

    code = "economy_error"
    http_status = 400

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class InvalidRecipient(EconomyError):
    code = "invalid_recipient"


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------
class CooldownActive(EconomyError):
    code = "cooldown_active"
    http_status = 429

    def __init__(self, action: str, remaining_seconds: int) -> None:
        super().__init__(
            f"{action} is on cooldown for {remaining_seconds}s",
            action=action,
            remaining_seconds=remaining_seconds,
        )
        self.remaining_seconds = remaining_seconds


class DailyCapExceeded(EconomyError):
    code = "daily_cap_exceeded"
    http_status = 429

    def __init__(self, action: str, remaining_allowance: int) -> None:
        super().__init__(
            f"Daily {action} cap exceeded ({remaining_allowance} remaining)",
            action=action,
            remaining_allowance=remaining_allowance,
        )
        self.remaining_allowance = remaining_allowance


class FeatureDisabled(EconomyError):
    code = "feature_disabled"
    http_status = 403

    def __init__(self, feature_id: str, reason: str) -> None:
        super().__init__(
            f"Feature {feature_id!r} unavailable: {reason}",
            feature=feature_id,
            reason=reason,
        )
        self.reason = reason


class BelowMinimum(EconomyError):
    code = "below_minimum"

    def __init__(self, field: str, minimum: int, value: int) -> None:
        super().__init__(
            f"{field} {value} is below the minimum of {minimum}",
            field=field,
            minimum=minimum,
        )


class AboveMaximum(EconomyError):
    code = "above_maximum"

    def __init__(self, field: str, maximum: int, value: int) -> None:
        super().__init__(
            f"{field} {value} is above the maximum of {maximum}",
            field=field,
            maximum=maximum,
        )


class NotEligible(EconomyError):
    code = "not_eligible"
    http_status = 403


class WalletFrozen(EconomyError):
    code = "wallet_frozen"
    http_status = 423


class PermissionDenied(EconomyError):
    code = "permission_denied"
    http_status = 403


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------
class InsufficientBalance(EconomyError):
    code = "insufficient_balance"
    http_status = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient balance: need {required}, have {available}",
            required=required,
            available=available,
        )


class InsufficientFunds(InsufficientBalance):
    """Raised by the ledger store when a settlement would go negative."""

    code = "insufficient_balance"


class TransactionFailed(EconomyError):
    code = "transaction_failed"
    http_status = 409


class TransactionNotFound(EconomyError):
    code = "transaction_not_found"
    http_status = 404


class InvalidTransition(EconomyError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, transaction_id: int, status: str, target: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} cannot move from {status} to {target}",
            transaction_id=transaction_id,
            status=status,
            target=target,
        )


# ---------------------------------------------------------------------------
# External
# ---------------------------------------------------------------------------
class GatewayRejected(EconomyError):
    code = "gateway_rejected"
    http_status = 502


class GatewayTimeout(EconomyError):
    code = "gateway_timeout"
    http_status = 504
