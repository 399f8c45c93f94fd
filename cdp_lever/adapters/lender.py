"""
lender.py - In-memory pooled lender for the borrowed asset

The pool holds every supplier's tokens under one holder. Some of that cash is
lent out to third-party borrowers (utilize()), which is what makes
withdrawals illiquid: a supplier can only take out what is still in the pool.

Yield model:
    The pool earns a fixed annual income equal to base_apr on the supply it
    was sized for; extra supply dilutes it.

        apr_after_deposit(delta) = base_apr * total_supplied / (total_supplied + delta)
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any
import logging

from ..book import TokenBook
from ..core import LiquidityError, StateError, round_amount, to_decimal

logger = logging.getLogger(__name__)


class InMemoryLender:
    """
    Pooled lender implementing LenderAdapter for `holder`.

    Attributes:
        supplied: The strategy's claim on the pool, principal plus yield
        external_supply: Everyone else's claim on the pool
        utilized: Pool cash currently lent to third parties
    """

    def __init__(
        self,
        book: TokenBook,
        token: str,
        holder: str,
        pool_holder: str = "lender_pool",
        base_apr: Decimal = Decimal("0.08"),
        supply_cap: Decimal = Decimal("Infinity"),
    ):
        self.book = book
        self.token = token
        self.holder = holder
        self.pool_holder = book.register_holder(pool_holder)
        self.base_apr = to_decimal(base_apr)
        self.supply_cap = to_decimal(supply_cap)
        self.supplied = Decimal("0")
        self.external_supply = Decimal("0")
        self.utilized = Decimal("0")
        self.paused = False

    # ------------------------------------------------------------------
    # LenderAdapter
    # ------------------------------------------------------------------

    def balance(self) -> Decimal:
        return self.supplied

    def total_supplied(self) -> Decimal:
        return self.supplied + self.external_supply

    def cash(self) -> Decimal:
        return self.book.balance(self.pool_holder, self.token)

    def max_deposit(self) -> Decimal:
        if self.paused:
            return Decimal("0")
        return max(Decimal("0"), self.supply_cap - self.total_supplied())

    def max_withdraw(self) -> Decimal:
        if self.paused:
            return Decimal("0")
        return min(self.supplied, self.cash())

    def deposit(self, amount: Decimal) -> None:
        amount = round_amount(to_decimal(amount))
        if amount > self.max_deposit():
            raise LiquidityError(f"lender cannot accept {amount} (max {self.max_deposit()})")
        self.book.transfer(self.token, self.holder, self.pool_holder, amount, "lender deposit")
        self.supplied += amount

    def withdraw(self, amount: Decimal) -> None:
        amount = round_amount(to_decimal(amount))
        if amount > self.max_withdraw():
            raise LiquidityError(f"lender cannot pay out {amount} (max {self.max_withdraw()})")
        self.book.transfer(self.token, self.pool_holder, self.holder, amount, "lender withdraw")
        self.supplied -= amount

    def apr_after_deposit(self, delta: Decimal) -> Decimal:
        total = self.total_supplied()
        after = total + to_decimal(delta)
        if total <= 0 or after <= 0:
            return self.base_apr
        return self.base_apr * total / after

    # ------------------------------------------------------------------
    # Other participants and time
    # ------------------------------------------------------------------

    def supply_from(self, supplier: str, amount: Decimal) -> None:
        """A third party supplies `amount` to the pool."""
        amount = to_decimal(amount)
        self.book.transfer(self.token, supplier, self.pool_holder, amount, "external supply")
        self.external_supply += amount

    def utilize(self, borrower: str, amount: Decimal) -> None:
        """Lend `amount` of pool cash to a third party, reducing withdrawable liquidity."""
        amount = to_decimal(amount)
        if amount > self.cash():
            raise LiquidityError(f"pool holds {self.cash()}, cannot lend {amount}")
        self.book.register_holder(borrower)
        self.book.transfer(self.token, self.pool_holder, borrower, amount, "pool loan")
        self.utilized += amount

    def return_utilized(self, borrower: str, amount: Decimal) -> None:
        amount = min(to_decimal(amount), self.utilized)
        self.book.transfer(self.token, borrower, self.pool_holder, amount, "pool loan repaid")
        self.utilized -= amount

    def accrue(self, days: int) -> Decimal:
        """Credit the strategy's share of pool yield over `days`. Returns the amount credited."""
        if self.supplied <= 0:
            return Decimal("0")
        earned = round_amount(self.supplied * self.apr_after_deposit(Decimal("0")) * Decimal(days) / Decimal("365"))
        if earned > 0:
            self.book.mint(self.token, self.pool_holder, earned, "lender yield")
            self.supplied += earned
        return earned

    def set_paused(self, paused: bool) -> None:
        self.paused = paused

    def set_base_apr(self, base_apr: Decimal) -> None:
        base_apr = to_decimal(base_apr)
        if base_apr < 0:
            raise StateError(f"base apr cannot be negative, got {base_apr}")
        self.base_apr = base_apr

    # ------------------------------------------------------------------
    # Transactional
    # ------------------------------------------------------------------

    def snapshot(self) -> Any:
        return (self.supplied, self.external_supply, self.utilized, self.paused, self.base_apr)

    def restore(self, snapshot: Any) -> None:
        self.supplied, self.external_supply, self.utilized, self.paused, self.base_apr = snapshot

    def __repr__(self) -> str:
        return f"InMemoryLender({self.token}, supplied={self.supplied}, cash={self.cash()})"
