"""
tests/test_rate_guard.py — Cooldown & rolling-cap guard
========================================================
"""

from __future__ import annotations

import logging

import pytest

from dgtledger.config import ActionLimit
from dgtledger.engine.errors import CooldownActive, DailyCapExceeded
from dgtledger.services.rate_guard import RateGuard


@pytest.fixture
def guard(db_engine, clock):
    return RateGuard(
        db_engine,
        {
            "tip": ActionLimit(cooldown_seconds=60, daily_cap=1_000),
            "rain": ActionLimit(cooldown_seconds=0, daily_cap=1_000),
        },
        clock=clock,
    )


class TestCooldown:
    def test_second_action_inside_cooldown(self, guard):
        guard.check_and_reserve(1, "tip", 10)
        with pytest.raises(CooldownActive) as excinfo:
            guard.check_and_reserve(1, "tip", 10)
        assert excinfo.value.remaining_seconds == 60

    def test_remaining_rounds_up(self, guard, clock):
        guard.check_and_reserve(1, "tip", 10)
        clock.advance(59.5)
        with pytest.raises(CooldownActive) as excinfo:
            guard.check_and_reserve(1, "tip", 10)
        assert excinfo.value.remaining_seconds == 1

    def test_blocked_at_exact_cooldown(self, guard, clock):
        guard.check_and_reserve(1, "tip", 10)
        clock.advance(60)
        with pytest.raises(CooldownActive) as excinfo:
            guard.check_and_reserve(1, "tip", 10)
        assert excinfo.value.remaining_seconds == 1
        assert guard.remaining_allowance(1, "tip")["cooldown_remaining_seconds"] == 1

    def test_allowed_once_cooldown_exceeded(self, guard, clock):
        guard.check_and_reserve(1, "tip", 10)
        clock.advance(60.001)
        guard.check_and_reserve(1, "tip", 10)
        assert guard.remaining_allowance(1, "tip")["used"] == 20

    def test_cooldown_is_per_user_and_action(self, guard):
        guard.check_and_reserve(1, "tip", 10)
        guard.check_and_reserve(2, "tip", 10)
        guard.check_and_reserve(1, "rain", 10)

    def test_failed_check_changes_nothing(self, guard):
        guard.check_and_reserve(1, "tip", 10)
        with pytest.raises(CooldownActive):
            guard.check_and_reserve(1, "tip", 10)
        assert guard.remaining_allowance(1, "tip")["used"] == 10


class TestDailyCap:
    def test_cap_reports_remaining(self, guard):
        guard.check_and_reserve(1, "rain", 600)
        with pytest.raises(DailyCapExceeded) as excinfo:
            guard.check_and_reserve(1, "rain", 500)
        assert excinfo.value.remaining_allowance == 400
        guard.check_and_reserve(1, "rain", 400)
        assert guard.remaining_allowance(1, "rain")["remaining"] == 0

    def test_single_action_over_cap(self, guard):
        with pytest.raises(DailyCapExceeded):
            guard.check_and_reserve(1, "rain", 1_001)

    def test_window_resets(self, guard, clock):
        guard.check_and_reserve(1, "rain", 1_000)
        clock.advance(86_400)
        guard.check_and_reserve(1, "rain", 1_000)
        assert guard.remaining_allowance(1, "rain")["used"] == 1_000

    def test_unknown_action(self, guard):
        with pytest.raises(KeyError):
            guard.check_and_reserve(1, "withdrawal", 1)


class TestRelease:
    def test_release_restores_allowance_and_cooldown(self, guard):
        reservation = guard.check_and_reserve(1, "tip", 300)
        guard.release(1, "tip", 300, reservation=reservation)
        allowance = guard.remaining_allowance(1, "tip")
        assert allowance["used"] == 0
        assert allowance["cooldown_remaining_seconds"] == 0
        guard.check_and_reserve(1, "tip", 300)

    def test_release_keeps_earlier_action_time(self, guard, clock):
        guard.check_and_reserve(1, "tip", 100)
        clock.advance(90)
        reservation = guard.check_and_reserve(1, "tip", 100)
        clock.advance(10)
        guard.release(1, "tip", 100, reservation=reservation)
        # Cooldown now measured from the first action, 100s ago.
        assert guard.remaining_allowance(1, "tip")["cooldown_remaining_seconds"] == 0
        assert guard.remaining_allowance(1, "tip")["used"] == 100

    def test_release_clamps_at_zero(self, guard, caplog):
        guard.check_and_reserve(1, "rain", 50)
        with caplog.at_level(logging.WARNING, logger="dgtledger.services.rate_guard"):
            guard.release(1, "rain", 80)
        assert guard.remaining_allowance(1, "rain")["used"] == 0
        assert "clamping" in caplog.text

    def test_release_after_window_rollover_is_noop(self, guard, clock):
        reservation = guard.check_and_reserve(1, "rain", 700)
        clock.advance(86_400)
        guard.check_and_reserve(1, "rain", 200)
        guard.release(1, "rain", 700, reservation=reservation)
        assert guard.remaining_allowance(1, "rain")["used"] == 200

    def test_release_without_record(self, guard, caplog):
        with caplog.at_level(logging.WARNING, logger="dgtledger.services.rate_guard"):
            guard.release(5, "rain", 10)
        assert "no usage record" in caplog.text


class TestAllowances:
    def test_fresh_user(self, guard):
        assert guard.allowances(9) == {
            "tip": {"daily_cap": 1_000, "used": 0, "remaining": 1_000,
                    "cooldown_remaining_seconds": 0},
            "rain": {"daily_cap": 1_000, "used": 0, "remaining": 1_000,
                     "cooldown_remaining_seconds": 0},
        }

    def test_reflects_cooldown(self, guard, clock):
        guard.check_and_reserve(1, "tip", 10)
        clock.advance(15)
        assert guard.remaining_allowance(1, "tip")["cooldown_remaining_seconds"] == 45
