"""
test_config.py - Unit tests for StrategyConfig

Tests:
- Defaults and Decimal coercion
- Bound validation for every threshold
- with_changes() returns a validated copy
"""

import pytest
from dataclasses import FrozenInstanceError
from decimal import Decimal

from cdp_lever import (
    StrategyConfig, ThresholdViolation, create_strategy_config,
    MAX_SLIPPAGE, MAX_MIN_SURPLUS_RELATIVE,
)


class TestDefaults:

    def test_default_values(self):
        config = create_strategy_config()
        assert config.target_ltv_multiplier == Decimal("0.70")
        assert config.warning_ltv_multiplier == Decimal("0.80")
        assert config.slippage == Decimal("0.05")
        assert config.min_surplus_relative == Decimal("0.001")
        assert config.deposit_limit == Decimal("Infinity")
        assert config.force_leverage is False

    def test_floats_and_ints_coerced(self):
        config = StrategyConfig(target_ltv_multiplier=0.6, warning_ltv_multiplier=0.75, max_base_fee=50)
        assert config.target_ltv_multiplier == Decimal("0.6")
        assert config.warning_ltv_multiplier == Decimal("0.75")
        assert config.max_base_fee == Decimal("50")

    def test_frozen(self):
        config = create_strategy_config()
        with pytest.raises(FrozenInstanceError):
            config.slippage = Decimal("0.01")


class TestBounds:

    def test_target_must_be_below_warning(self):
        with pytest.raises(ThresholdViolation):
            create_strategy_config(target_ltv_multiplier=Decimal("0.8"), warning_ltv_multiplier=Decimal("0.8"))

    def test_target_must_be_positive(self):
        with pytest.raises(ThresholdViolation):
            create_strategy_config(target_ltv_multiplier=Decimal("0"))

    def test_warning_cannot_exceed_one(self):
        with pytest.raises(ThresholdViolation):
            create_strategy_config(warning_ltv_multiplier=Decimal("1.01"))

    def test_warning_of_one_allowed(self):
        config = create_strategy_config(warning_ltv_multiplier=Decimal("1"))
        assert config.warning_ltv_multiplier == Decimal("1")

    def test_slippage_cap(self):
        create_strategy_config(slippage=MAX_SLIPPAGE)
        with pytest.raises(ThresholdViolation):
            create_strategy_config(slippage=MAX_SLIPPAGE + Decimal("0.001"))

    def test_relative_surplus_cap(self):
        create_strategy_config(min_surplus_relative=MAX_MIN_SURPLUS_RELATIVE)
        with pytest.raises(ThresholdViolation):
            create_strategy_config(min_surplus_relative=Decimal("0.2"))

    def test_negative_absolute_surplus(self):
        with pytest.raises(ThresholdViolation):
            create_strategy_config(min_surplus_absolute=Decimal("-1"))

    def test_correction_factor_at_least_one(self):
        with pytest.raises(ThresholdViolation):
            create_strategy_config(correction_factor=Decimal("0.99"))

    @pytest.mark.parametrize("field", ["max_base_fee", "min_ltv_gap", "min_borrow_amount", "deposit_limit"])
    def test_non_negative_fields(self, field):
        with pytest.raises(ThresholdViolation):
            create_strategy_config(**{field: Decimal("-1")})


class TestWithChanges:

    def test_returns_new_config(self):
        config = create_strategy_config()
        changed = config.with_changes(slippage=Decimal("0.02"))
        assert changed.slippage == Decimal("0.02")
        assert config.slippage == Decimal("0.05")

    def test_changes_are_validated(self):
        config = create_strategy_config()
        with pytest.raises(ThresholdViolation):
            config.with_changes(target_ltv_multiplier=Decimal("0.9"))

    def test_changes_are_coerced(self):
        changed = create_strategy_config().with_changes(max_base_fee=25)
        assert changed.max_base_fee == Decimal("25")
