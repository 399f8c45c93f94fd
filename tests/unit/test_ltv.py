"""
test_ltv.py - Unit tests for position snapshots and pure LTV calculations

Tests:
- PositionSnapshot coercion, validation and derived values
- load_position_snapshot against live collaborators
- Borrow sizing, capping and upfront-fee gross-down
- Repayable debt and the minimum-debt floor
- max_withdrawal / calculate_amount_to_repay (examples and properties)
- Surplus boundary
- Liquidation and branch solvency tests
- Total assets and swap minimum output
"""

import pytest
from decimal import Decimal
from hypothesis import given, settings, assume
from hypothesis import strategies as st

from cdp_lever import PositionStatus, round_amount
from cdp_lever.ltv import (
    INFINITY,
    load_position_snapshot,
    calculate_ltv,
    calculate_target_ltv,
    calculate_borrow_amount,
    cap_borrow_amount,
    calculate_repayable,
    calculate_repay_to_target,
    calculate_max_withdrawal,
    calculate_amount_to_repay,
    calculate_surplus,
    calculate_surplus_floor,
    has_surplus,
    is_liquidatable,
    is_below_critical_ratio,
    calculate_total_assets,
    calculate_min_out,
    from_usd,
)

from tests.conftest import make_snapshot
from tests.simulation import STRATEGY, WETH, BOLD


LIQUIDATION_FACTOR = Decimal("1") / Decimal("1.1")

amounts = st.decimals(min_value=Decimal("0"), max_value=Decimal("1000000"), places=4,
                      allow_nan=False, allow_infinity=False)
positive_amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000000"), places=4,
                               allow_nan=False, allow_infinity=False)
prices = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("100000"), places=2,
                     allow_nan=False, allow_infinity=False)
targets = st.decimals(min_value=Decimal("0.05"), max_value=Decimal("0.95"), places=2,
                      allow_nan=False, allow_infinity=False)


# ============================================================================
# SNAPSHOT
# ============================================================================

class TestPositionSnapshot:

    def test_numeric_fields_coerced_to_decimal(self):
        snap = make_snapshot(collateral=10, debt=5000.5, lent="12")
        assert snap.collateral == Decimal("10")
        assert snap.debt == Decimal("5000.5")
        assert snap.lent == Decimal("12")

    def test_non_positive_price_rejected(self):
        with pytest.raises(ValueError):
            make_snapshot(collateral_price=Decimal("0"))
        with pytest.raises(ValueError):
            make_snapshot(borrow_price=Decimal("-1"))

    def test_derived_values(self):
        snap = make_snapshot(lent=Decimal("9000"), loose_borrow=Decimal("500"))
        assert snap.collateral_usd == Decimal("20000")
        assert snap.debt_usd == Decimal("10000")
        assert snap.held_borrow == Decimal("9500")
        assert snap.current_ltv == Decimal("0.5")

    def test_snapshot_is_frozen(self):
        snap = make_snapshot()
        with pytest.raises(AttributeError):
            snap.debt = Decimal("1")


class TestLoadPositionSnapshot:

    def test_before_open_reads_no_entry(self, sim):
        snap = load_position_snapshot(
            sim.branch, sim.lender, sim.prices, sim.book, STRATEGY, None, WETH, BOLD,
        )
        assert snap.status == PositionStatus.NONE
        assert snap.collateral == Decimal("0")
        assert snap.debt == Decimal("0")
        assert snap.collateral_price == Decimal("2000")
        assert snap.min_debt == Decimal("2000")

    def test_after_open_reads_live_values(self, opened):
        strategy = opened.strategy
        snap = load_position_snapshot(
            opened.branch, opened.lender, opened.prices, opened.book,
            STRATEGY, strategy.position_id, WETH, BOLD,
        )
        assert snap.status == PositionStatus.ACTIVE
        assert snap.collateral == Decimal("10")
        assert snap.debt == opened.branch.get_debt(strategy.position_id)
        assert snap.lent == opened.lender.balance()
        assert snap.loose_borrow == Decimal("0")

    def test_price_change_visible_on_next_read(self, opened):
        before = opened.strategy.read_position()
        opened.set_price("1800")
        after = opened.strategy.read_position()
        assert before.collateral_price == Decimal("2000")
        assert after.collateral_price == Decimal("1800")
        assert after.current_ltv > before.current_ltv


# ============================================================================
# LTV
# ============================================================================

class TestCalculateLtv:

    def test_basic_ratio(self):
        assert calculate_ltv(Decimal("5000"), Decimal("10000")) == Decimal("0.5")

    def test_no_debt_is_zero(self):
        assert calculate_ltv(Decimal("0"), Decimal("10000")) == Decimal("0")

    def test_no_collateral_is_zero(self):
        assert calculate_ltv(Decimal("100"), Decimal("0")) == Decimal("0")

    def test_target_is_fraction_of_liquidation_factor(self):
        target = calculate_target_ltv(LIQUIDATION_FACTOR, Decimal("0.70"))
        assert target == LIQUIDATION_FACTOR * Decimal("0.70")
        assert target < LIQUIDATION_FACTOR


# ============================================================================
# BORROW SIZING
# ============================================================================

class TestCalculateBorrowAmount:

    def test_borrow_to_target(self):
        snap = make_snapshot()
        target = Decimal("0.6")
        # 0.6 * 20000 - 10000
        assert calculate_borrow_amount(snap, target) == Decimal("2000")

    def test_at_or_above_target_borrows_nothing(self):
        snap = make_snapshot(debt=Decimal("12000"))
        assert calculate_borrow_amount(snap, Decimal("0.6")) == Decimal("0")
        assert calculate_borrow_amount(snap, Decimal("0.5")) == Decimal("0")

    def test_upfront_fee_grossed_down(self):
        snap = make_snapshot(upfront_fee_rate=Decimal("0.01"))
        amount = calculate_borrow_amount(snap, Decimal("0.6"))
        assert amount == round_amount(Decimal("2000") / Decimal("1.01"))
        # Debt including the fee lands on, not above, the target
        assert (snap.debt + amount * Decimal("1.01")) / snap.collateral_usd <= Decimal("0.6")

    def test_borrow_price_conversion(self):
        snap = make_snapshot(borrow_price=Decimal("2"), debt=Decimal("5000"))
        # (0.6 * 20000 - 10000) USD at $2
        assert calculate_borrow_amount(snap, Decimal("0.6")) == Decimal("1000")

    @given(collateral=positive_amounts, debt=amounts, price=prices, target=targets)
    @settings(max_examples=100)
    def test_borrow_never_overshoots_target(self, collateral, debt, price, target):
        snap = make_snapshot(collateral=collateral, debt=debt, collateral_price=price)
        amount = calculate_borrow_amount(snap, target)
        assert amount >= 0
        new_debt = debt + amount
        if amount > 0:
            assert new_debt / (collateral * price) <= target


class TestCapBorrowAmount:

    def test_uncapped(self):
        assert cap_borrow_amount(Decimal("500"), make_snapshot()) == Decimal("500")

    def test_lender_capacity_caps(self):
        snap = make_snapshot(lender_max_deposit=Decimal("300"))
        assert cap_borrow_amount(Decimal("500"), snap) == Decimal("300")

    def test_branch_capacity_caps(self):
        snap = make_snapshot(max_borrow=Decimal("100"), lender_max_deposit=Decimal("300"))
        assert cap_borrow_amount(Decimal("500"), snap) == Decimal("100")

    def test_paused_borrowing_caps_to_zero(self):
        snap = make_snapshot(borrow_paused=True)
        assert cap_borrow_amount(Decimal("500"), snap) == Decimal("0")


# ============================================================================
# REPAYMENT
# ============================================================================

class TestRepayable:

    def test_debt_above_floor(self):
        assert calculate_repayable(make_snapshot()) == Decimal("8000")

    def test_debt_at_floor(self):
        assert calculate_repayable(make_snapshot(debt=Decimal("2000"))) == Decimal("0")

    def test_zombie_cannot_repay(self):
        snap = make_snapshot(status=PositionStatus.ZOMBIE, debt=Decimal("1500"))
        assert calculate_repayable(snap) == Decimal("0")

    def test_repay_to_target(self):
        snap = make_snapshot(debt=Decimal("13000"))
        # 13000 - 0.6 * 20000
        assert calculate_repay_to_target(snap, Decimal("0.6")) == Decimal("1000")

    def test_repay_to_target_when_under_target(self):
        assert calculate_repay_to_target(make_snapshot(), Decimal("0.6")) == Decimal("0")

    def test_repay_to_target_rounds_up(self):
        snap = make_snapshot(debt=Decimal("13000"))
        target = Decimal("1") / Decimal("3")
        repay = calculate_repay_to_target(snap, target)
        assert (snap.debt - repay) <= target * snap.collateral_usd


# ============================================================================
# WITHDRAWAL
# ============================================================================

class TestMaxWithdrawal:

    def test_no_debt_frees_everything(self):
        assert calculate_max_withdrawal(Decimal("10"), Decimal("0"), Decimal("2000"), Decimal("1"),
                                        Decimal("0.5")) == Decimal("10")

    def test_at_bound_frees_nothing(self):
        # 10000 / (0.5 * 2000) = 10 required
        assert calculate_max_withdrawal(Decimal("10"), Decimal("10000"), Decimal("2000"), Decimal("1"),
                                        Decimal("0.5")) == Decimal("0")

    def test_over_bound_frees_nothing(self):
        assert calculate_max_withdrawal(Decimal("10"), Decimal("15000"), Decimal("2000"), Decimal("1"),
                                        Decimal("0.5")) == Decimal("0")

    def test_partial_headroom(self):
        # 10000 / (0.625 * 2000) = 8 required
        assert calculate_max_withdrawal(Decimal("10"), Decimal("10000"), Decimal("2000"), Decimal("1"),
                                        Decimal("0.625")) == Decimal("2")

    def test_no_collateral(self):
        assert calculate_max_withdrawal(Decimal("0"), Decimal("0"), Decimal("2000"), Decimal("1"),
                                        Decimal("0.5")) == Decimal("0")

    @given(collateral=positive_amounts, d1=amounts, d2=amounts, price=prices, target=targets)
    @settings(max_examples=100)
    def test_non_increasing_in_debt(self, collateral, d1, d2, price, target):
        low, high = sorted((d1, d2))
        at_low = calculate_max_withdrawal(collateral, low, price, Decimal("1"), target)
        at_high = calculate_max_withdrawal(collateral, high, price, Decimal("1"), target)
        assert at_low >= at_high

    @given(c1=positive_amounts, c2=positive_amounts, debt=amounts, price=prices, target=targets)
    @settings(max_examples=100)
    def test_non_decreasing_in_collateral(self, c1, c2, debt, price, target):
        low, high = sorted((c1, c2))
        at_low = calculate_max_withdrawal(low, debt, price, Decimal("1"), target)
        at_high = calculate_max_withdrawal(high, debt, price, Decimal("1"), target)
        assert at_low <= at_high

    @given(collateral=positive_amounts, debt=amounts, price=prices, target=targets)
    @settings(max_examples=100)
    def test_withdrawing_max_respects_target(self, collateral, debt, price, target):
        freed = calculate_max_withdrawal(collateral, debt, price, Decimal("1"), target)
        remaining = collateral - freed
        assert 0 <= freed <= collateral
        if debt > 0 and freed > 0:
            assert debt <= remaining * price * target


class TestAmountToRepay:

    def test_within_target_needs_nothing(self):
        assert calculate_amount_to_repay(
            Decimal("2"), Decimal("10"), Decimal("10000"), Decimal("2000"), Decimal("1"), Decimal("0.625"),
        ) == Decimal("0")

    def test_breach_requires_repayment(self):
        # 6 WETH left carries 6 * 2000 * 0.625 = 7500
        assert calculate_amount_to_repay(
            Decimal("4"), Decimal("10"), Decimal("10000"), Decimal("2000"), Decimal("1"), Decimal("0.625"),
        ) == Decimal("2500")

    def test_full_withdrawal_requires_all_debt(self):
        assert calculate_amount_to_repay(
            Decimal("10"), Decimal("10"), Decimal("10000"), Decimal("2000"), Decimal("1"), Decimal("0.625"),
        ) == Decimal("10000")

    def test_no_debt(self):
        assert calculate_amount_to_repay(
            Decimal("4"), Decimal("10"), Decimal("0"), Decimal("2000"), Decimal("1"), Decimal("0.5"),
        ) == Decimal("0")

    @given(collateral=positive_amounts, debt=positive_amounts, amount=positive_amounts,
           price=prices, target=targets)
    @settings(max_examples=100)
    def test_repayment_restores_target(self, collateral, debt, amount, price, target):
        assume(amount < collateral)
        repay = calculate_amount_to_repay(amount, collateral, debt, price, Decimal("1"), target)
        assert 0 <= repay <= debt
        assert (debt - repay) <= (collateral - amount) * price * target


# ============================================================================
# SURPLUS
# ============================================================================

class TestSurplus:

    def test_surplus_value(self):
        assert calculate_surplus(Decimal("10500"), Decimal("10000")) == Decimal("500")
        assert calculate_surplus(Decimal("9500"), Decimal("10000")) == Decimal("-500")

    def test_floor_is_larger_of_absolute_and_relative(self):
        assert calculate_surplus_floor(Decimal("10000"), Decimal("0"), Decimal("0.001")) == Decimal("10")
        assert calculate_surplus_floor(Decimal("10000"), Decimal("50"), Decimal("0.001")) == Decimal("50")

    def test_false_exactly_at_floor(self):
        assert not has_surplus(Decimal("10010"), Decimal("10000"), Decimal("0"), Decimal("0.001"))

    def test_true_one_unit_above_floor(self):
        one_unit = Decimal("1e-18")
        assert has_surplus(Decimal("10010") + one_unit, Decimal("10000"), Decimal("0"), Decimal("0.001"))

    def test_held_below_debt(self):
        assert not has_surplus(Decimal("9000"), Decimal("10000"), Decimal("0"), Decimal("0"))

    @given(debt=amounts, absolute=amounts, relative=st.decimals(min_value=Decimal("0"), max_value=Decimal("0.1"),
                                                                places=4))
    @settings(max_examples=100)
    def test_boundary_property(self, debt, absolute, relative):
        floor = calculate_surplus_floor(debt, absolute, relative)
        assert not has_surplus(debt + floor, debt, absolute, relative)
        assert has_surplus(debt + floor + Decimal("1e-18"), debt, absolute, relative)


# ============================================================================
# LIQUIDATION AND SOLVENCY
# ============================================================================

class TestIsLiquidatable:

    def test_at_factor_is_liquidatable(self):
        assert is_liquidatable(Decimal("9100"), Decimal("10000"), Decimal("1"), Decimal("0.91"))

    def test_below_factor_is_safe(self):
        assert not is_liquidatable(Decimal("9000"), Decimal("10000"), Decimal("1"), Decimal("0.91"))

    def test_correction_factor_tightens_test(self):
        assert is_liquidatable(Decimal("9000"), Decimal("10000"), Decimal("1.02"), Decimal("0.91"))

    def test_no_debt_never_liquidatable(self):
        assert not is_liquidatable(Decimal("0"), Decimal("0"), Decimal("1"), Decimal("0.91"))

    def test_debt_without_collateral_is_liquidatable(self):
        assert is_liquidatable(Decimal("100"), Decimal("0"), Decimal("1"), Decimal("0.91"))


class TestBranchSolvency:

    def test_above_critical(self):
        assert not is_below_critical_ratio(Decimal("100"), Decimal("100000"), Decimal("2000"), Decimal("1.5"))

    def test_below_critical(self):
        assert is_below_critical_ratio(Decimal("100"), Decimal("150000"), Decimal("1400"), Decimal("1.5"))

    def test_exactly_at_critical_is_not_below(self):
        assert not is_below_critical_ratio(Decimal("75"), Decimal("100000"), Decimal("2000"), Decimal("1.5"))


# ============================================================================
# VALUATION AND SWAPS
# ============================================================================

class TestTotalAssets:

    def test_net_borrow_converted_to_asset(self):
        snap = make_snapshot(lent=Decimal("10500"), loose_asset=Decimal("1"))
        # 1 + 10 + 500 / 2000
        assert calculate_total_assets(snap) == Decimal("11.25")

    def test_shortfall_reduces_total(self):
        snap = make_snapshot(lent=Decimal("8000"))
        assert calculate_total_assets(snap) == Decimal("9")


class TestConversions:

    def test_min_out_applies_slippage(self):
        assert calculate_min_out(Decimal("1"), Decimal("2000"), Decimal("1"), Decimal("0.05")) == Decimal("1900")

    def test_from_usd_rejects_bad_price(self):
        with pytest.raises(ValueError):
            from_usd(Decimal("100"), Decimal("0"))

    def test_infinite_capacity_survives_conversion(self):
        assert from_usd(INFINITY, Decimal("2000")) == INFINITY
