"""
pricing_source.py - USD price feeds for position valuation

Classes:
- PriceSource: Protocol defining the pricing interface
- StaticPriceSource: Mutable spot prices, updated by tests and simulations

All prices are fixed-point Decimal USD per whole token.
"""

from decimal import Decimal
from typing import Any, Dict, Protocol, runtime_checkable

from .core import LeverError, to_decimal


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for price sources.

    A price source quotes a single asset in USD. Implementations raise
    LeverError for unknown assets rather than returning a default.
    """
    base_currency: str

    def price(self, asset: str) -> Decimal:
        """Get the USD price of one unit of `asset`."""
        ...


class StaticPriceSource:
    """
    Price source holding one spot price per asset.

    Prices change only through update_price()/update_prices(), which models an
    oracle update landing between two operations. The base currency always
    prices at 1.
    """

    def __init__(self, prices: Dict[str, Decimal], base_currency: str = "USD"):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping asset symbols to USD prices
            base_currency: The currency in which prices are quoted
        """
        self.base_currency = base_currency
        self.prices: Dict[str, Decimal] = {}
        for asset, value in prices.items():
            self.update_price(asset, value)
        self.prices[base_currency] = Decimal("1")

    def price(self, asset: str) -> Decimal:
        if asset not in self.prices:
            raise LeverError(f"No price for asset '{asset}'")
        return self.prices[asset]

    def update_price(self, asset: str, price: Decimal) -> None:
        """Update the price of an asset."""
        price = to_decimal(price)
        if not price.is_finite() or price <= 0:
            raise ValueError(f"price for {asset} must be positive and finite, got {price}")
        self.prices[asset] = price

    def update_prices(self, prices: Dict[str, Decimal]) -> None:
        """Update multiple prices at once."""
        for asset, value in prices.items():
            self.update_price(asset, value)

    def snapshot(self) -> Any:
        return dict(self.prices)

    def restore(self, snapshot: Any) -> None:
        self.prices = dict(snapshot)

    def __repr__(self):
        return f"StaticPriceSource({len(self.prices)} prices, base={self.base_currency})"
