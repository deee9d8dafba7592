"""
dgtledger.engine.events — Economic event envelope
==================================================

Every settled money movement is reported to the XP/leveling service as an
:class:`EconomicEvent`.  Events are built only *after* settlement and are
delivered fire-and-forget.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from dgtledger.constants import utcnow

__all__ = ["EconomicEvent", "EconomicEventType"]


class EconomicEventType(enum.StrEnum):
    TIP_SENT = "tip_sent"
    TIP_RECEIVED = "tip_received"
    RAIN_SENT = "rain_sent"
    RAIN_RECEIVED = "rain_received"
    DEPOSIT_SETTLED = "deposit_settled"
    WITHDRAWAL_SETTLED = "withdrawal_settled"


@dataclass(frozen=True, slots=True)
class EconomicEvent:
    user_id: int
    event_type: EconomicEventType
    amount: int
    transaction_id: int | None = None
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
