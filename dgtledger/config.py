"""
dgtledger.config — YAML Economy Configuration Loader
=====================================================

**Why this file exists:**
Every number that governs money movement (burn rates, caps, cooldowns,
withdrawal bounds, feature gates) is read **once** from ``config.yaml`` into
immutable dataclasses and handed to the engine at construction time.  Nothing
in the ledger reads the environment or a settings table at call time, so a
decision made with a given :class:`EconomyConfig` is reproducible.

Secrets and infrastructure URLs (``DATABASE_URL``, ``JWT_SECRET``, gateway
credentials) are *not* here — they come from the environment (``.env``).

Usage::

    from dgtledger.config import load_config

    cfg = load_config()                  # reads ./config.yaml by default
    print(cfg.tip.burn_bps)              # 500  (5 %)
    print(cfg.limits["tip"].daily_cap)   # 1000
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

BPS_DENOMINATOR = 10_000


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FeatureGateConfig:
    """One wallet capability switch (deposit, withdrawal, tipping, rain, shop)."""

    id: str
    enabled: bool = True
    min_level: int = 0
    developer_only: bool = False
    rollout_percentage: int | None = None  # 0-100; None → everyone


@dataclass(frozen=True, slots=True)
class ActionLimit:
    """Cooldown + rolling cap for one rate-limited action type."""

    cooldown_seconds: int
    daily_cap: int
    window_seconds: int = 86_400


@dataclass(frozen=True, slots=True)
class TipSettings:
    min_amount: int = 1
    burn_bps: int = 500


@dataclass(frozen=True, slots=True)
class RainSettings:
    min_share: int = 5
    max_recipients: int = 15
    burn_bps: int = 0


@dataclass(frozen=True, slots=True)
class WithdrawalSettings:
    """Withdrawal bounds and fee, all in USD cents."""

    min_usd_cents: int = 500
    max_usd_cents: int = 100_000
    fee_bps: int = 200
    flat_fee_cents: int = 50
    min_level: int = 3


@dataclass(frozen=True, slots=True)
class DepositSettings:
    min_usd_cents: int = 100


def _default_limits() -> Mapping[str, ActionLimit]:
    return MappingProxyType({
        "tip": ActionLimit(cooldown_seconds=60, daily_cap=1_000),
        "rain": ActionLimit(cooldown_seconds=3_600, daily_cap=5_000),
        "withdrawal": ActionLimit(cooldown_seconds=86_400, daily_cap=200_000),
    })


def _default_gates() -> Mapping[str, FeatureGateConfig]:
    return MappingProxyType({
        "deposit": FeatureGateConfig(id="deposit"),
        "withdrawal": FeatureGateConfig(id="withdrawal", min_level=3),
        "tipping": FeatureGateConfig(id="tipping", min_level=1),
        "rain": FeatureGateConfig(id="rain", min_level=2),
        "shop": FeatureGateConfig(id="shop"),
    })


@dataclass(frozen=True, slots=True)
class EconomyConfig:
    """Immutable economy configuration.

    ``limits`` and ``feature_gates`` are read-only mappings so that a shared
    instance cannot be edited behind the engine's back.
    """

    # Currency — DGT is tracked in integer minor units.
    minor_units_per_dgt: int = 100
    usd_cents_per_dgt: int = 10  # 1 DGT = $0.10 peg

    tip: TipSettings = field(default_factory=TipSettings)
    rain: RainSettings = field(default_factory=RainSettings)
    withdrawal: WithdrawalSettings = field(default_factory=WithdrawalSettings)
    deposit: DepositSettings = field(default_factory=DepositSettings)

    limits: Mapping[str, ActionLimit] = field(default_factory=_default_limits)
    feature_gates: Mapping[str, FeatureGateConfig] = field(default_factory=_default_gates)

    # Settlement
    max_settle_retries: int = 3
    gateway_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: int = 3_600
    sweep_interval_seconds: int = 60

    @classmethod
    def default(cls) -> EconomyConfig:
        """Built-in configuration used when no YAML file is supplied."""
        return cls()

    def limit_for(self, action: str) -> ActionLimit:
        """Return the :class:`ActionLimit` for *action* or raise ``KeyError``."""
        try:
            return self.limits[action]
        except KeyError:
            raise KeyError(f"No rate limit configured for action {action!r}") from None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def _check_bps(name: str, value: int) -> int:
    if not 0 <= value <= BPS_DENOMINATOR:
        raise ValueError(f"{name} must be between 0 and {BPS_DENOMINATOR} (got {value})")
    return value


def _parse_gate(gate_id: str, raw: dict) -> FeatureGateConfig:
    rollout = raw.get("rollout_percentage")
    if rollout is not None:
        rollout = int(rollout)
        if not 0 <= rollout <= 100:
            raise ValueError(f"feature_gates.{gate_id}.rollout_percentage must be 0-100")
    return FeatureGateConfig(
        id=gate_id,
        enabled=bool(raw.get("enabled", True)),
        min_level=int(raw.get("min_level", 0)),
        developer_only=bool(raw.get("developer_only", False)),
        rollout_percentage=rollout,
    )


def _parse_limit(raw: dict) -> ActionLimit:
    return ActionLimit(
        cooldown_seconds=int(raw["cooldown_seconds"]),
        daily_cap=int(raw["daily_cap"]),
        window_seconds=int(raw.get("window_seconds", 86_400)),
    )


def parse_config(raw: dict) -> EconomyConfig:
    """Build an :class:`EconomyConfig` from an already-parsed YAML mapping.

    Missing sections fall back to the built-in defaults; present sections are
    validated (basis points in range, positive peg values).
    """
    defaults = EconomyConfig.default()
    currency = raw.get("currency", {})
    tip = raw.get("tip", {})
    rain = raw.get("rain", {})
    withdrawal = raw.get("withdrawal", {})
    deposit = raw.get("deposit", {})
    settlement = raw.get("settlement", {})

    limits = dict(defaults.limits)
    for action, spec in (raw.get("limits") or {}).items():
        limits[action] = _parse_limit(spec)

    gates = dict(defaults.feature_gates)
    for gate_id, spec in (raw.get("feature_gates") or {}).items():
        gates[gate_id] = _parse_gate(gate_id, spec or {})

    minor = int(currency.get("minor_units_per_dgt", defaults.minor_units_per_dgt))
    peg = int(currency.get("usd_cents_per_dgt", defaults.usd_cents_per_dgt))
    if minor <= 0 or peg <= 0:
        raise ValueError("currency.minor_units_per_dgt and usd_cents_per_dgt must be positive")

    return EconomyConfig(
        minor_units_per_dgt=minor,
        usd_cents_per_dgt=peg,
        tip=TipSettings(
            min_amount=int(tip.get("min_amount", defaults.tip.min_amount)),
            burn_bps=_check_bps("tip.burn_bps", int(tip.get("burn_bps", defaults.tip.burn_bps))),
        ),
        rain=RainSettings(
            min_share=int(rain.get("min_share", defaults.rain.min_share)),
            max_recipients=int(rain.get("max_recipients", defaults.rain.max_recipients)),
            burn_bps=_check_bps("rain.burn_bps", int(rain.get("burn_bps", defaults.rain.burn_bps))),
        ),
        withdrawal=WithdrawalSettings(
            min_usd_cents=int(withdrawal.get("min_usd_cents", defaults.withdrawal.min_usd_cents)),
            max_usd_cents=int(withdrawal.get("max_usd_cents", defaults.withdrawal.max_usd_cents)),
            fee_bps=_check_bps(
                "withdrawal.fee_bps",
                int(withdrawal.get("fee_bps", defaults.withdrawal.fee_bps)),
            ),
            flat_fee_cents=int(withdrawal.get("flat_fee_cents", defaults.withdrawal.flat_fee_cents)),
            min_level=int(withdrawal.get("min_level", defaults.withdrawal.min_level)),
        ),
        deposit=DepositSettings(
            min_usd_cents=int(deposit.get("min_usd_cents", defaults.deposit.min_usd_cents)),
        ),
        limits=MappingProxyType(limits),
        feature_gates=MappingProxyType(gates),
        max_settle_retries=int(settlement.get("max_retries", defaults.max_settle_retries)),
        gateway_timeout_seconds=float(
            settlement.get("gateway_timeout_seconds", defaults.gateway_timeout_seconds)
        ),
        confirmation_timeout_seconds=int(
            settlement.get("confirmation_timeout_seconds", defaults.confirmation_timeout_seconds)
        ),
        sweep_interval_seconds=int(
            settlement.get("sweep_interval_seconds", defaults.sweep_interval_seconds)
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> EconomyConfig:
    """Read *path* and return an :class:`EconomyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a limit entry is missing ``cooldown_seconds`` or ``daily_cap``.
    ValueError
        If a basis-point or percentage value is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return parse_config(raw)
