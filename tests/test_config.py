"""
tests/test_config.py — YAML economy configuration
==================================================
"""

from __future__ import annotations

from pathlib import Path

import pytest

from dgtledger.config import EconomyConfig, load_config, parse_config


class TestDefaults:
    def test_empty_yaml_gives_defaults(self):
        assert parse_config({}) == EconomyConfig.default()

    def test_default_values(self):
        cfg = EconomyConfig.default()
        assert cfg.tip.burn_bps == 500
        assert cfg.limit_for("tip").cooldown_seconds == 60
        assert cfg.limit_for("tip").daily_cap == 1_000
        assert cfg.limit_for("rain").cooldown_seconds == 3_600
        assert cfg.limit_for("withdrawal").daily_cap == 200_000
        assert cfg.feature_gates["withdrawal"].min_level == 3

    def test_unknown_action_limit(self):
        with pytest.raises(KeyError, match="No rate limit configured"):
            EconomyConfig.default().limit_for("teleport")

    def test_limits_are_read_only(self):
        cfg = EconomyConfig.default()
        with pytest.raises(TypeError):
            cfg.limits["tip"] = None  # type: ignore[index]


class TestParsing:
    def test_sections_override_defaults(self):
        cfg = parse_config({
            "tip": {"burn_bps": 0, "min_amount": 10},
            "rain": {"min_share": 20},
            "limits": {"tip": {"cooldown_seconds": 5, "daily_cap": 50}},
            "feature_gates": {"shop": {"enabled": False, "rollout_percentage": 25}},
            "settlement": {"gateway_timeout_seconds": 2.5, "max_retries": 1},
        })
        assert cfg.tip.burn_bps == 0
        assert cfg.tip.min_amount == 10
        assert cfg.rain.min_share == 20
        assert cfg.rain.max_recipients == 15
        assert cfg.limit_for("tip").daily_cap == 50
        assert cfg.limit_for("rain").daily_cap == 5_000
        assert cfg.feature_gates["shop"].enabled is False
        assert cfg.feature_gates["shop"].rollout_percentage == 25
        assert cfg.gateway_timeout_seconds == 2.5
        assert cfg.max_settle_retries == 1

    def test_rejects_bps_out_of_range(self):
        with pytest.raises(ValueError, match="tip.burn_bps"):
            parse_config({"tip": {"burn_bps": 10_001}})

    def test_rejects_bad_rollout(self):
        with pytest.raises(ValueError, match="rollout_percentage"):
            parse_config({"feature_gates": {"shop": {"rollout_percentage": 150}}})

    def test_rejects_non_positive_peg(self):
        with pytest.raises(ValueError, match="positive"):
            parse_config({"currency": {"usd_cents_per_dgt": 0}})

    def test_limit_requires_cap(self):
        with pytest.raises(KeyError):
            parse_config({"limits": {"tip": {"cooldown_seconds": 5}}})


class TestLoadConfig:
    def test_missing_file_hint(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="config.yaml.example"):
            load_config(tmp_path / "nope.yaml")

    def test_reads_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("withdrawal:\n  fee_bps: 300\n  flat_fee_cents: 25\n", encoding="utf-8")
        cfg = load_config(path)
        assert cfg.withdrawal.fee_bps == 300
        assert cfg.withdrawal.flat_fee_cents == 25
        assert cfg.withdrawal.max_usd_cents == 100_000

    def test_example_file_parses(self):
        example = Path(__file__).resolve().parents[1] / "config.yaml.example"
        assert load_config(example) == EconomyConfig.default()
