"""
dgtledger.engine.fees — Fee, Burn, Split & Conversion Math
===========================================================

Pure integer arithmetic for every economic action.  No floats, no DB I/O:
the ledger store receives the already-resolved integers computed here.

Rounding policy:
- burns and fees are floored (``amount * bps // 10000``)
- USD → DGT conversion for **credits** (deposits) is floored
- USD → DGT conversion for **debits** (withdrawals) is ceiled
so that conversion rounding never creates tokens.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from dgtledger.config import BPS_DENOMINATOR
from dgtledger.engine.errors import BelowMinimum


def percent_of(amount: int, bps: int) -> int:
    """``floor(amount * bps / 10000)`` for non-negative *amount*."""
    return amount * bps // BPS_DENOMINATOR


# ---------------------------------------------------------------------------
# Tip
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TipSplit:
    amount: int
    burn: int
    net: int


def split_tip(amount: int, burn_bps: int) -> TipSplit:
    burn = percent_of(amount, burn_bps)
    return TipSplit(amount=amount, burn=burn, net=amount - burn)


# ---------------------------------------------------------------------------
# Rain
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RainPlan:
    """Resolved rain distribution.

    ``charged == distributed + burned`` always holds.
    """

    recipients: tuple[int, ...]
    excluded: tuple[int, ...]
    share: int
    distributed: int
    burned: int
    charged: int
    fee_burn: int = 0
    remainder_burn: int = 0
    shares: dict[int, int] = field(default_factory=dict)


def plan_rain(
    total_amount: int,
    recipient_ids: Sequence[int],
    *,
    min_share: int,
    burn_bps: int = 0,
) -> RainPlan:
    """Split *total_amount* equally across *recipient_ids*.

    The configured burn is taken first.  If the equal share of what remains
    falls below *min_share*, recipients are dropped from the end of the list
    one at a time until the share clears the minimum.  The integer remainder
    of the final division is burned.

    Raises
    ------
    BelowMinimum
        If not even a single recipient can receive *min_share*.
    """
    fee_burn = percent_of(total_amount, burn_bps)
    net = total_amount - fee_burn

    count = len(recipient_ids)
    while count > 0 and net // count < min_share:
        count -= 1
    if count == 0:
        raise BelowMinimum("rain_share", min_share, net // max(len(recipient_ids), 1))

    kept = tuple(recipient_ids[:count])
    share = net // count
    distributed = share * count
    remainder = net - distributed
    return RainPlan(
        recipients=kept,
        excluded=tuple(recipient_ids[count:]),
        share=share,
        distributed=distributed,
        burned=fee_burn + remainder,
        charged=distributed + fee_burn + remainder,
        fee_burn=fee_burn,
        remainder_burn=remainder,
        shares={uid: share for uid in kept},
    )


# ---------------------------------------------------------------------------
# Withdrawal
# ---------------------------------------------------------------------------
def withdrawal_fee_cents(usd_cents: int, fee_bps: int, flat_fee_cents: int) -> int:
    """Percentage + flat withdrawal fee, in USD cents."""
    return percent_of(usd_cents, fee_bps) + flat_fee_cents


# ---------------------------------------------------------------------------
# Currency conversion
# ---------------------------------------------------------------------------
def usd_cents_to_minor(
    usd_cents: int,
    *,
    minor_units_per_dgt: int,
    usd_cents_per_dgt: int,
    round_up: bool = False,
) -> int:
    """Convert USD cents to DGT minor units at the given peg."""
    numerator = usd_cents * minor_units_per_dgt
    if round_up:
        return -(-numerator // usd_cents_per_dgt)
    return numerator // usd_cents_per_dgt


def minor_to_usd_cents(
    minor: int, *, minor_units_per_dgt: int, usd_cents_per_dgt: int
) -> int:
    """Floor-convert DGT minor units to USD cents."""
    return minor * usd_cents_per_dgt // minor_units_per_dgt
