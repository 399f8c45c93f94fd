"""
test_lender_exchange.py - Unit tests for the in-memory lender and exchange

Tests:
- Lender: deposits, withdrawals limited by pool cash, caps, pauses,
  yield dilution and accrual, snapshot/restore
- Exchange: oracle quotes less fee, slippage, venue liquidity
"""

import pytest
from decimal import Decimal

from cdp_lever import LiquidityError, SlippageError, StateError, SwapDirection

from tests.simulation import BOLD, STRATEGY, WETH


def fund(sim, token, amount):
    sim.book.mint(token, STRATEGY, Decimal(amount))


class TestLender:

    def test_deposit_and_withdraw(self, sim):
        fund(sim, BOLD, "1000")
        sim.lender.deposit(Decimal("1000"))
        assert sim.lender.balance() == Decimal("1000")
        assert sim.lender.total_supplied() == Decimal("101000")
        assert sim.book.balance(STRATEGY, BOLD) == Decimal("0")

        sim.lender.withdraw(Decimal("400"))
        assert sim.lender.balance() == Decimal("600")
        assert sim.book.balance(STRATEGY, BOLD) == Decimal("400")

    def test_withdraw_limited_by_cash(self, sim):
        fund(sim, BOLD, "1000")
        sim.lender.deposit(Decimal("1000"))
        sim.lender.utilize("borrower", Decimal("100500"))
        assert sim.lender.max_withdraw() == Decimal("500")
        with pytest.raises(LiquidityError):
            sim.lender.withdraw(Decimal("600"))

        sim.lender.return_utilized("borrower", Decimal("100500"))
        assert sim.lender.max_withdraw() == Decimal("1000")

    def test_supply_cap(self, sim):
        sim.lender.supply_cap = Decimal("100500")
        assert sim.lender.max_deposit() == Decimal("500")
        fund(sim, BOLD, "1000")
        with pytest.raises(LiquidityError):
            sim.lender.deposit(Decimal("501"))

    def test_paused(self, sim):
        fund(sim, BOLD, "1000")
        sim.lender.deposit(Decimal("1000"))
        sim.lender.set_paused(True)
        assert sim.lender.max_deposit() == Decimal("0")
        assert sim.lender.max_withdraw() == Decimal("0")

    def test_apr_dilutes_with_supply(self, sim):
        assert sim.lender.apr_after_deposit(Decimal("0")) == Decimal("0.08")
        assert sim.lender.apr_after_deposit(Decimal("100000")) == Decimal("0.04")

    def test_accrue_credits_yield(self, sim):
        fund(sim, BOLD, "1000")
        sim.lender.deposit(Decimal("1000"))
        earned = sim.lender.accrue(365)
        assert earned == Decimal("80")
        assert sim.lender.balance() == Decimal("1080")

    def test_negative_base_apr_rejected(self, sim):
        with pytest.raises(StateError):
            sim.lender.set_base_apr(Decimal("-0.01"))

    def test_snapshot_restore(self, sim):
        snap = sim.lender.snapshot()
        sim.lender.set_paused(True)
        sim.lender.set_base_apr(Decimal("0.5"))
        sim.lender.restore(snap)
        assert not sim.lender.paused
        assert sim.lender.base_apr == Decimal("0.08")


class TestExchange:

    def test_quote_applies_fee(self, sim):
        assert sim.exchange.quote(Decimal("1"), SwapDirection.COLLATERAL_TO_BORROW) == Decimal("1994")
        assert sim.exchange.quote(Decimal("2000"), SwapDirection.BORROW_TO_COLLATERAL) == Decimal("0.997")

    def test_swap_moves_both_legs(self, sim):
        fund(sim, WETH, "1")
        out = sim.exchange.swap(Decimal("1"), Decimal("1900"), SwapDirection.COLLATERAL_TO_BORROW)
        assert out == Decimal("1994")
        assert sim.book.balance(STRATEGY, WETH) == Decimal("0")
        assert sim.book.balance(STRATEGY, BOLD) == Decimal("1994")

    def test_slippage(self, sim):
        fund(sim, WETH, "1")
        with pytest.raises(SlippageError):
            sim.exchange.swap(Decimal("1"), Decimal("1999"), SwapDirection.COLLATERAL_TO_BORROW)
        assert sim.book.balance(STRATEGY, WETH) == Decimal("1")

    def test_venue_out_of_reserves(self, sim):
        fund(sim, BOLD, "3000000")
        with pytest.raises(LiquidityError):
            sim.exchange.swap(Decimal("3000000"), Decimal("0"), SwapDirection.BORROW_TO_COLLATERAL)

    def test_follows_oracle_price(self, sim):
        sim.set_price("1000")
        assert sim.exchange.quote(Decimal("1"), SwapDirection.COLLATERAL_TO_BORROW) == Decimal("997")
