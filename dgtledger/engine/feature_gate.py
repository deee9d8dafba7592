"""
dgtledger.engine.feature_gate — Wallet Capability Gate
=======================================================

Pure decision layer: is *feature* available to *this* user right now?
No DB I/O, no environment reads — the gate table is handed in at
construction time.

Rules, evaluated in order (first failure wins):

1. unknown feature                → ``unknown_feature``
2. feature disabled               → ``disabled``
3. developer-only, caller isn't   → ``developer_only``
4. caller level below minimum     → ``level_too_low``
5. rollout set and bucket ≥ pct   → ``not_in_rollout``
6. otherwise                      → allowed

Rollout buckets use 32-bit FNV-1a over the UTF-8 user id, modulo 100.  The
hash is fixed here rather than borrowed from ``hash()`` (salted per process)
so a user's bucket never moves between restarts.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from dgtledger.config import FeatureGateConfig
from dgtledger.engine.errors import FeatureDisabled

logger = logging.getLogger(__name__)

FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193


def fnv1a_32(text: str) -> int:
    """32-bit FNV-1a hash of *text* encoded as UTF-8."""
    h = FNV32_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def rollout_bucket(user_id: int | str) -> int:
    """Stable 0–99 bucket for *user_id*."""
    return fnv1a_32(str(user_id)) % 100


@dataclass(frozen=True, slots=True)
class GateDecision:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


class FeatureGateEvaluator:
    """Evaluates :class:`FeatureGateConfig` entries for a user."""

    def __init__(self, gates: Mapping[str, FeatureGateConfig]) -> None:
        self._gates = gates

    def has_access(
        self,
        feature_id: str,
        user_level: int,
        is_developer: bool,
        user_id: int | str,
    ) -> GateDecision:
        gate = self._gates.get(feature_id)
        if gate is None:
            return GateDecision(False, "unknown_feature")
        if not gate.enabled:
            return GateDecision(False, "disabled")
        if gate.developer_only and not is_developer:
            return GateDecision(False, "developer_only")
        if user_level < gate.min_level:
            return GateDecision(False, "level_too_low")
        if gate.rollout_percentage is not None:
            if rollout_bucket(user_id) >= gate.rollout_percentage:
                return GateDecision(False, "not_in_rollout")
        return GateDecision(True, "allowed")

    def require(
        self,
        feature_id: str,
        user_level: int,
        is_developer: bool,
        user_id: int | str,
    ) -> None:
        """Raise :class:`FeatureDisabled` unless :meth:`has_access` allows."""
        decision = self.has_access(feature_id, user_level, is_developer, user_id)
        if not decision.allowed:
            logger.info(
                "Feature gate %s denied user %s: %s", feature_id, user_id, decision.reason
            )
            raise FeatureDisabled(feature_id, decision.reason)
