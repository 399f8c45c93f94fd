"""
Liquidation Precedence Conformance Tests

INVARIANT: Liquidation risk overrides every other decision.

    ∀ state S with debt_usd / collateral_usd * correction >= liquidation_factor
    on an ACTIVE entry:
        tend_trigger() = True
            regardless of network fee, force_leverage or pending surplus
        tend() delevers before doing anything else
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from cdp_lever import PositionStatus, create_strategy_config

from tests.simulation import KEEPER, MANAGEMENT, build_simulation


class TestPrecedenceExamples:

    def test_trigger_ignores_network_fee(self, opened):
        opened.set_price("1390")
        opened.set_base_fee("1000000000")
        assert opened.strategy.tend_trigger()

    def test_trigger_ignores_force_leverage(self, opened):
        opened.strategy.set_force_leverage(MANAGEMENT, True)
        opened.set_price("1390")
        opened.set_base_fee("1000000000")
        assert opened.strategy.tend_trigger()

    def test_delever_before_surplus_sale(self, opened):
        opened.redeem("2000")
        opened.set_price("1300")
        opened.set_base_fee("1000000000")
        strategy = opened.strategy
        assert strategy.has_surplus()
        assert strategy.tend_trigger()

        strategy.tend(KEEPER)
        # Debt was repaid; nothing was sold
        assert strategy.balance_of_asset() == Decimal("0")
        assert strategy.current_ltv() <= strategy.target_ltv()

    def test_correction_factor_triggers_early(self):
        sim = build_simulation(config=create_strategy_config(correction_factor=Decimal("1.3")))
        sim.open("10")
        # 0.707 LTV: under warning, but liquidatable once corrected
        sim.set_price("1800")
        sim.set_base_fee("1000000000")
        assert sim.strategy.current_ltv() < sim.strategy.warning_ltv()
        assert sim.strategy.tend_trigger()

    def test_zombie_not_treated_as_liquidatable(self, opened):
        opened.redeem(opened.strategy.balance_of_debt() - Decimal("1000"))
        assert opened.strategy.status() == PositionStatus.ZOMBIE
        opened.strategy.tend(KEEPER)
        opened.set_price("200")
        assert not opened.strategy.tend_trigger()


class TestPrecedenceProperties:

    @given(
        st.decimals(min_value=Decimal("1000"), max_value=Decimal("1399"), places=0),
        st.booleans(),
    )
    @settings(max_examples=25, deadline=None)
    def test_liquidatable_always_triggers_and_recovers(self, price, force):
        """
        PROPERTY: Below the liquidation price the trigger fires whatever the
        gates, and one tend brings LTV back to target.
        """
        sim = build_simulation(config=create_strategy_config(force_leverage=force))
        sim.open("10")
        sim.set_price(price)
        sim.set_base_fee("1000000000")
        assert sim.strategy.tend_trigger()
        sim.strategy.tend(KEEPER)
        assert sim.strategy.current_ltv() <= sim.strategy.target_ltv()
        assert sim.strategy.balance_of_debt() >= sim.branch.get_min_debt()
