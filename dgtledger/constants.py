"""
dgtledger.constants — Shared Constants & Helpers
=================================================

Single source of truth for presentation constants and timezone helpers.
Import from here instead of duplicating in services, projector and API
routes.
"""

from __future__ import annotations

from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Transaction categories (owner-facing grouping of ledger types)
# ---------------------------------------------------------------------------
TRANSACTION_CATEGORIES: dict[str, str] = {
    "tip": "social",
    "rain": "social",
    "shop_purchase": "shopping",
    "deposit": "wallet",
    "withdrawal": "wallet",
    "fee": "system",
    "burn": "system",
    "adjustment": "system",
}

# Human-readable labels for the ``source`` feature recorded in metadata.
SOURCE_LABELS: dict[str, str] = {
    "forum_post": "Forum post",
    "thread": "Thread",
    "shoutbox": "Shoutbox",
    "profile": "Profile",
    "whisper": "Private message",
    "shop": "Shop",
    "gateway": "Crypto gateway",
    "admin": "Administration",
}

# Coarse balance bands shown to third parties instead of the exact balance.
# (lower bound in minor units, label) — highest first.
BALANCE_TIERS: list[tuple[int, str]] = [
    (10_000_000, "whale"),
    (1_000_000, "dolphin"),
    (100_000, "fish"),
    (1, "shrimp"),
    (0, "empty"),
]


def balance_tier(balance: int) -> str:
    """Map an exact balance to its public tier label."""
    for floor, label in BALANCE_TIERS:
        if balance >= floor:
            return label
    return "empty"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
