"""
tests/test_fees.py — Integer fee, burn, split and conversion math
==================================================================
"""

from __future__ import annotations

import pytest

from dgtledger.engine.errors import BelowMinimum
from dgtledger.engine.fees import (
    minor_to_usd_cents,
    percent_of,
    plan_rain,
    split_tip,
    usd_cents_to_minor,
    withdrawal_fee_cents,
)


class TestTipSplit:
    def test_five_percent_burn(self):
        split = split_tip(100, 500)
        assert (split.burn, split.net) == (5, 95)

    def test_burn_is_floored(self):
        split = split_tip(19, 500)
        assert split.burn == 0
        assert split.net == 19

    def test_zero_burn_rate(self):
        assert split_tip(1234, 0).net == 1234

    def test_parts_add_up(self):
        for amount in (1, 7, 99, 101, 12_345):
            split = split_tip(amount, 750)
            assert split.burn + split.net == amount


class TestRainPlan:
    def test_shrinks_recipient_list_to_meet_min_share(self):
        plan = plan_rain(100, [1, 2, 3, 4, 5, 6, 7], min_share=20)
        assert plan.recipients == (1, 2, 3, 4, 5)
        assert plan.excluded == (6, 7)
        assert plan.share == 20
        assert plan.distributed == 100
        assert plan.burned == 0
        assert plan.charged == 100

    def test_remainder_is_burned(self):
        plan = plan_rain(100, [1, 2, 3], min_share=5)
        assert plan.share == 33
        assert plan.remainder_burn == 1
        assert plan.burned == 1
        assert plan.charged == 100

    def test_configured_burn_taken_first(self):
        plan = plan_rain(100, [1, 2], min_share=1, burn_bps=1_000)
        assert plan.fee_burn == 10
        assert plan.share == 45
        assert plan.charged == plan.distributed + plan.burned == 100

    def test_keeps_earliest_recipients(self):
        plan = plan_rain(50, [9, 3, 7], min_share=20)
        assert plan.recipients == (9, 3)
        assert plan.shares == {9: 25, 3: 25}

    def test_nobody_clears_minimum(self):
        with pytest.raises(BelowMinimum):
            plan_rain(10, [1, 2], min_share=20)

    def test_never_charges_more_than_total(self):
        for total in (10, 99, 100, 101, 997):
            plan = plan_rain(total, list(range(1, 8)), min_share=3, burn_bps=250)
            assert plan.charged == total


class TestWithdrawalFee:
    def test_percent_plus_flat(self):
        assert withdrawal_fee_cents(1_000, 200, 50) == 70

    def test_percent_is_floored(self):
        assert withdrawal_fee_cents(999, 200, 0) == 19


class TestConversion:
    def test_usd_to_minor_at_peg(self):
        assert usd_cents_to_minor(25, minor_units_per_dgt=100, usd_cents_per_dgt=10) == 250

    def test_credit_rounds_down_debit_rounds_up(self):
        kwargs = {"minor_units_per_dgt": 100, "usd_cents_per_dgt": 3}
        assert usd_cents_to_minor(1, **kwargs) == 33
        assert usd_cents_to_minor(1, round_up=True, **kwargs) == 34

    def test_exact_conversion_not_rounded_up(self):
        assert usd_cents_to_minor(
            10, minor_units_per_dgt=100, usd_cents_per_dgt=10, round_up=True
        ) == 100

    def test_minor_to_usd(self):
        assert minor_to_usd_cents(255, minor_units_per_dgt=100, usd_cents_per_dgt=10) == 25

    def test_percent_of(self):
        assert percent_of(10_000, 1) == 1
        assert percent_of(9_999, 1) == 0
