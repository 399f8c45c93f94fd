"""
ltv.py - Position snapshots and pure leverage calculations

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS (explicit input):
   - PositionSnapshot: everything a decision needs, read at one instant

2. PURE CALCULATION FUNCTIONS (calculate_*, is_*, has_*):
   - Take all inputs explicitly as parameters
   - No adapters, no hidden state
   - Trivially testable and property-testable

3. ADAPTER FUNCTION (load_position_snapshot):
   - Reads the position ledger, lender, prices and balance book once
   - The ONLY place the calculation layer touches collaborators

Key Formulas:
    current_ltv = debt * borrow_price / (collateral * collateral_price)
    target_ltv = liquidation_factor * target_ltv_multiplier
    borrow = (target_ltv * collateral_usd - debt_usd) / (borrow_price * (1 + upfront_fee_rate))
    max_withdrawal = collateral - debt_usd / (target_ltv * collateral_price)
    surplus = (lent + loose_borrowed) - debt
    liquidatable = debt_usd / collateral_usd * correction_factor >= liquidation_factor
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Optional

from .core import (
    BalanceBook, LenderAdapter, PositionAdapter, PositionStatus,
    QUANTITY_EPSILON, round_amount, to_decimal,
)
from .pricing_source import PriceSource


ZERO = Decimal("0")
INFINITY = Decimal("Infinity")


# ============================================================================
# FROZEN DATACLASS - Explicit Input for Pure Functions
# ============================================================================

@dataclass(frozen=True, slots=True)
class PositionSnapshot:
    """
    Immutable reading of the position and everything around it.

    Taken at the start of an operation and again after each mutating step.
    Never carried from one operation to the next.
    """
    status: PositionStatus
    collateral: Decimal            # Collateral posted, asset units
    debt: Decimal                  # Debt owed, borrowed-asset units
    collateral_price: Decimal      # USD per asset unit
    borrow_price: Decimal          # USD per borrowed-asset unit
    liquidation_factor: Decimal    # LTV at/above which the ledger liquidates
    min_debt: Decimal              # Ledger-imposed debt floor
    lent: Decimal = ZERO           # Borrowed asset deposited in the lender
    loose_borrow: Decimal = ZERO   # Borrowed asset held by the strategy
    loose_asset: Decimal = ZERO    # Collateral asset held by the strategy
    lender_max_deposit: Decimal = INFINITY
    lender_max_withdraw: Decimal = ZERO
    max_borrow: Decimal = INFINITY
    max_collateral_deposit: Decimal = INFINITY
    upfront_fee_rate: Decimal = ZERO
    supply_paused: bool = False
    borrow_paused: bool = False

    def __post_init__(self):
        """Convert numeric fields to Decimal to ensure type consistency."""
        for name in (
            'collateral', 'debt', 'collateral_price', 'borrow_price', 'liquidation_factor',
            'min_debt', 'lent', 'loose_borrow', 'loose_asset', 'lender_max_deposit',
            'lender_max_withdraw', 'max_borrow', 'max_collateral_deposit', 'upfront_fee_rate',
        ):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if self.collateral_price <= 0 or self.borrow_price <= 0:
            raise ValueError("prices must be positive")

    @property
    def collateral_usd(self) -> Decimal:
        return self.collateral * self.collateral_price

    @property
    def debt_usd(self) -> Decimal:
        return self.debt * self.borrow_price

    @property
    def held_borrow(self) -> Decimal:
        """Borrowed asset under the strategy's control: lent plus loose."""
        return self.lent + self.loose_borrow

    @property
    def current_ltv(self) -> Decimal:
        return calculate_ltv(self.debt_usd, self.collateral_usd)


# ============================================================================
# ADAPTER FUNCTION - Bridge Between Collaborators and Pure Functions
# ============================================================================

def load_position_snapshot(
    position: PositionAdapter,
    lender: LenderAdapter,
    prices: PriceSource,
    book: BalanceBook,
    holder: str,
    position_id: Optional[int],
    asset: str,
    borrow_token: str,
) -> PositionSnapshot:
    """
    Read a fresh PositionSnapshot.

    Args:
        position: Debt position ledger
        lender: Yield source for the borrowed asset
        prices: USD price source
        book: Balance book holding the strategy's loose tokens
        holder: The strategy's holder id in the book
        position_id: Ledger entry id (None before the position is opened)
        asset: Collateral asset symbol
        borrow_token: Borrowed asset symbol

    Returns:
        PositionSnapshot with every field read now
    """
    status = position.get_status(position_id)
    has_entry = position_id is not None and status != PositionStatus.NONE

    return PositionSnapshot(
        status=status,
        collateral=position.get_collateral(position_id) if has_entry else ZERO,
        debt=position.get_debt(position_id) if has_entry else ZERO,
        collateral_price=prices.price(asset),
        borrow_price=prices.price(borrow_token),
        liquidation_factor=position.get_liquidation_factor(),
        min_debt=position.get_min_debt(),
        lent=lender.balance(),
        loose_borrow=book.balance(holder, borrow_token),
        loose_asset=book.balance(holder, asset),
        lender_max_deposit=lender.max_deposit(),
        lender_max_withdraw=lender.max_withdraw(),
        max_borrow=position.max_borrow(position_id),
        max_collateral_deposit=position.max_collateral_deposit(),
        upfront_fee_rate=position.get_upfront_fee_rate(),
        supply_paused=position.is_supply_paused(),
        borrow_paused=position.is_borrow_paused(),
    )


# ============================================================================
# PURE CALCULATION FUNCTIONS - No Adapters, All Inputs Explicit
# ============================================================================

def to_usd(amount: Decimal, price: Decimal) -> Decimal:
    return amount * price


def from_usd(usd: Decimal, price: Decimal) -> Decimal:
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    return usd / price


def calculate_ltv(debt_usd: Decimal, collateral_usd: Decimal) -> Decimal:
    """
    Loan-to-value ratio.

    Returns 0 with no debt or no collateral. A position with debt and no
    collateral is caught by is_liquidatable instead.
    """
    if debt_usd <= 0 or collateral_usd <= 0:
        return ZERO
    return debt_usd / collateral_usd


def calculate_target_ltv(liquidation_factor: Decimal, multiplier: Decimal) -> Decimal:
    return liquidation_factor * multiplier


def calculate_borrow_amount(snapshot: PositionSnapshot, target_ltv: Decimal) -> Decimal:
    """
    Borrowed-asset amount that brings the position up to `target_ltv`.

    The ledger adds the upfront fee to the debt, so the amount is grossed down
    by (1 + upfront_fee_rate); the resulting debt then lands on the target
    rather than above it. Uncapped; see cap_borrow_amount.
    """
    borrow_usd = target_ltv * snapshot.collateral_usd - snapshot.debt_usd
    if borrow_usd <= 0:
        return ZERO
    gross_price = snapshot.borrow_price * (Decimal("1") + snapshot.upfront_fee_rate)
    return round_amount(from_usd(borrow_usd, gross_price))


def cap_borrow_amount(amount: Decimal, snapshot: PositionSnapshot) -> Decimal:
    """Cap a borrow by what the lender can absorb and the ledger will lend."""
    if snapshot.borrow_paused:
        return ZERO
    return max(ZERO, min(amount, snapshot.lender_max_deposit, snapshot.max_borrow))


def calculate_repayable(snapshot: PositionSnapshot) -> Decimal:
    """Debt that may be repaid without breaching the ledger's minimum-debt floor."""
    if snapshot.status != PositionStatus.ACTIVE:
        return ZERO
    return max(ZERO, snapshot.debt - snapshot.min_debt)


def calculate_repay_to_target(snapshot: PositionSnapshot, target_ltv: Decimal) -> Decimal:
    """Debt, in borrowed units, to retire so the position sits at `target_ltv`."""
    excess_usd = snapshot.debt_usd - target_ltv * snapshot.collateral_usd
    if excess_usd <= 0:
        return ZERO
    return min(snapshot.debt, round_amount(from_usd(excess_usd, snapshot.borrow_price), ROUND_UP))


def calculate_max_withdrawal(
    collateral: Decimal,
    debt: Decimal,
    collateral_price: Decimal,
    borrow_price: Decimal,
    target_ltv: Decimal,
) -> Decimal:
    """
    Collateral withdrawable while keeping debt_usd <= remaining_collateral_usd * target_ltv.

    PURE FUNCTION. Non-increasing in debt, non-decreasing in collateral.

    Returns:
        0 when the position is already at or beyond the bound.
    """
    if collateral <= 0:
        return ZERO
    debt_usd = debt * borrow_price
    if debt_usd <= 0:
        return collateral
    if target_ltv <= 0:
        return ZERO
    required = round_amount(debt_usd / (target_ltv * collateral_price), ROUND_UP)
    if required >= collateral:
        return ZERO
    return collateral - required


def calculate_amount_to_repay(
    amount: Decimal,
    collateral: Decimal,
    debt: Decimal,
    collateral_price: Decimal,
    borrow_price: Decimal,
    target_ltv: Decimal,
) -> Decimal:
    """
    Debt to retire before withdrawing `amount` of collateral so that the
    remaining position still respects `target_ltv`.

    PURE FUNCTION.

    Returns:
        0 when the withdrawal does not breach the target; all debt when the
        withdrawal takes every unit of collateral.
    """
    if amount <= 0 or debt <= 0:
        return ZERO
    remaining = collateral - amount
    if remaining <= 0:
        return debt
    allowed_debt_usd = remaining * collateral_price * target_ltv
    excess_usd = debt * borrow_price - allowed_debt_usd
    if excess_usd <= 0:
        return ZERO
    return min(debt, round_amount(excess_usd / borrow_price, ROUND_UP))


def calculate_surplus(held: Decimal, debt: Decimal) -> Decimal:
    """Borrowed asset held or lent in excess of debt (may be negative)."""
    return held - debt


def calculate_surplus_floor(debt: Decimal, min_absolute: Decimal, min_relative: Decimal) -> Decimal:
    return max(min_absolute, min_relative * debt)


def has_surplus(held: Decimal, debt: Decimal, min_absolute: Decimal, min_relative: Decimal) -> bool:
    """
    True when surplus strictly exceeds max(min_absolute, min_relative * debt).

    PURE FUNCTION. False at exactly the floor.
    """
    return calculate_surplus(held, debt) > calculate_surplus_floor(debt, min_absolute, min_relative)


def is_liquidatable(
    debt_usd: Decimal,
    collateral_usd: Decimal,
    correction_factor: Decimal,
    liquidation_factor: Decimal,
) -> bool:
    """
    Ledger liquidation test: debt_usd / collateral_usd * correction >= liquidation_factor.

    PURE FUNCTION. A position without debt is never liquidatable; debt
    against zero collateral always is.
    """
    if debt_usd <= QUANTITY_EPSILON:
        return False
    if collateral_usd <= 0:
        return True
    return debt_usd / collateral_usd * correction_factor >= liquidation_factor


def is_below_critical_ratio(
    branch_collateral: Decimal,
    branch_debt: Decimal,
    collateral_price: Decimal,
    critical_ratio: Decimal,
) -> bool:
    """Branch solvency guard: branch_collateral * price < critical_ratio * branch_debt."""
    return branch_collateral * collateral_price < critical_ratio * branch_debt


def calculate_total_assets(snapshot: PositionSnapshot) -> Decimal:
    """
    Assets under management in collateral-asset units.

    total = loose_asset + collateral + (held_borrow - debt) converted at oracle prices.
    A shortfall of borrowed asset against debt reduces the total.
    """
    net_borrow_usd = (snapshot.held_borrow - snapshot.debt) * snapshot.borrow_price
    return snapshot.loose_asset + snapshot.collateral + net_borrow_usd / snapshot.collateral_price


def calculate_min_out(amount: Decimal, price_in: Decimal, price_out: Decimal, slippage: Decimal) -> Decimal:
    """Minimum acceptable swap output: oracle value of `amount` less `slippage`."""
    expected = amount * price_in / price_out
    return round_amount(expected * (Decimal("1") - slippage))
