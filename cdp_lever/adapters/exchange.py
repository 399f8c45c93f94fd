"""
exchange.py - Oracle-priced swap venue

Quotes every swap at the oracle price less a proportional fee, and pays out
of the venue's own reserves. A fee above the engine's slippage tolerance makes
every swap fail with SlippageError.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any

from ..book import TokenBook
from ..core import LiquidityError, SlippageError, SwapDirection, round_amount, to_decimal
from ..pricing_source import PriceSource


class InMemoryExchange:
    """ExchangeAdapter between `collateral_token` and `borrow_token` for `holder`."""

    def __init__(
        self,
        book: TokenBook,
        prices: PriceSource,
        holder: str,
        collateral_token: str,
        borrow_token: str,
        venue_holder: str = "exchange",
        fee: Decimal = Decimal("0.003"),
    ):
        self.book = book
        self.prices = prices
        self.holder = holder
        self.collateral_token = collateral_token
        self.borrow_token = borrow_token
        self.venue_holder = book.register_holder(venue_holder)
        self.fee = to_decimal(fee)

    def quote(self, amount: Decimal, direction: SwapDirection) -> Decimal:
        token_in, token_out = self._pair(direction)
        gross = to_decimal(amount) * self.prices.price(token_in) / self.prices.price(token_out)
        return round_amount(gross * (Decimal("1") - self.fee))

    def swap(self, amount: Decimal, min_out: Decimal, direction: SwapDirection) -> Decimal:
        amount = to_decimal(amount)
        token_in, token_out = self._pair(direction)
        out = self.quote(amount, direction)
        if out < to_decimal(min_out):
            raise SlippageError(f"swap of {amount} {token_in} yields {out} {token_out}, below {min_out}")
        if out > self.book.balance(self.venue_holder, token_out):
            raise LiquidityError(f"exchange cannot pay {out} {token_out}")
        self.book.transfer(token_in, self.holder, self.venue_holder, amount, "swap in")
        self.book.transfer(token_out, self.venue_holder, self.holder, out, "swap out")
        return out

    def set_fee(self, fee: Decimal) -> None:
        self.fee = to_decimal(fee)

    def _pair(self, direction: SwapDirection):
        if direction == SwapDirection.BORROW_TO_COLLATERAL:
            return self.borrow_token, self.collateral_token
        return self.collateral_token, self.borrow_token

    def snapshot(self) -> Any:
        return self.fee

    def restore(self, snapshot: Any) -> None:
        self.fee = snapshot
