"""
position_ledger.py - In-memory branch of a redeemable debt-position ledger

=== BRANCH MODEL ===

A branch holds every debt position against one collateral asset:
    - An owner posts collateral and borrows the branch's debt token
    - Debt is minted to the owner on borrow and burned on repay
    - Every borrow pays an upfront fee, added to the debt
    - Opening posts a fixed stipend, returned on close

Entries move through:

    NONE -> ACTIVE -> CLOSED_BY_OWNER
               |  \\
               |   -> CLOSED_BY_LIQUIDATION   (liquidate)
               v
             ZOMBIE  -> ACTIVE                 (adjust_zombie)
                     -> CLOSED_BY_OWNER        (close)

=== EXTERNAL EVENTS ===

redeem(), liquidate() and accrue_interest() model third parties and time.
They run outside the strategy's operations, the way they would on chain.

    redeem: a redeemer burns debt tokens and takes collateral at par.
            Debt left under min_debt turns the entry ZOMBIE.
    liquidate: seizes collateral worth debt * (1 + penalty); whatever is
            left is kept as a claimable collateral surplus.

=== BRANCH SOLVENCY ===

    TCR = branch_collateral * price / branch_debt

Below the critical ratio the branch refuses zombie exits, collateral
withdrawals and any borrow that would lower TCR further.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import logging

from ..book import TokenBook
from ..core import (
    ANY_FEE, NO_HINTS, QUANTITY_EPSILON,
    PositionStatus,
    LiquidityError, SolvencyGuardError, StateError, ThresholdViolation,
    round_amount, to_decimal,
)
from ..pricing_source import PriceSource

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_MIN_DEBT = Decimal("2000")
DEFAULT_LIQUIDATION_FACTOR = Decimal("1") / Decimal("1.1")   # MCR of 110%
DEFAULT_CRITICAL_RATIO = Decimal("1.5")                     # CCR of 150%
DEFAULT_STIPEND = Decimal("0.0375")
DEFAULT_LIQUIDATION_PENALTY = Decimal("0.05")

MIN_INTEREST_RATE = Decimal("0.005")
MAX_INTEREST_RATE = Decimal("2.5")

DAYS_PER_YEAR = Decimal("365")


# =============================================================================
# ENTRY
# =============================================================================

@dataclass(frozen=True, slots=True)
class DebtPositionLedgerEntry:
    """
    One position in the branch. Replaced, never mutated.

    Attributes:
        position_id: Ledger-assigned id
        owner: Holder that posted the collateral and received the debt
        collateral: Collateral posted, asset units
        debt: Debt owed including fees and accrued interest
        status: Lifecycle status
        interest_rate: Annual rate chosen by the owner
        collateral_surplus: Claimable collateral left after a liquidation
    """
    position_id: int
    owner: str
    collateral: Decimal
    debt: Decimal
    status: PositionStatus
    interest_rate: Decimal
    collateral_surplus: Decimal = Decimal("0")


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def compute_collateral_ratio(collateral: Decimal, debt: Decimal, price: Decimal) -> Decimal:
    """collateral * price / debt; Infinity without debt."""
    if debt <= 0:
        return Decimal("Infinity")
    return collateral * price / debt


def compute_liquidation_split(
    collateral: Decimal,
    debt: Decimal,
    collateral_price: Decimal,
    debt_price: Decimal,
    penalty: Decimal,
) -> Tuple[Decimal, Decimal]:
    """
    Split collateral into (seized, surplus) for a liquidation.

    Seized collateral is worth debt * (1 + penalty), capped at the collateral.
    """
    seized = min(collateral, round_amount(debt * debt_price * (Decimal("1") + penalty) / collateral_price))
    return seized, collateral - seized


# =============================================================================
# BRANCH
# =============================================================================

class InMemoryPositionLedger:
    """
    One collateral branch of a debt-position ledger, backed by a TokenBook.

    Implements PositionAdapter for `holder`. Other owners can open positions
    with open_for() so branch aggregates reflect more than the strategy.

    Example:
        branch = InMemoryPositionLedger(book, prices, "WETH", "BOLD", holder="strategy")
        position_id = branch.open(Decimal("10"), Decimal("12000"), Decimal("0.05"))
        branch.redeem("redeemer", position_id, Decimal("11000"))
        branch.get_status(position_id)     # PositionStatus.ZOMBIE
    """

    def __init__(
        self,
        book: TokenBook,
        prices: PriceSource,
        collateral_token: str,
        debt_token: str,
        holder: str,
        branch_holder: str = "branch",
        min_debt: Decimal = DEFAULT_MIN_DEBT,
        liquidation_factor: Decimal = DEFAULT_LIQUIDATION_FACTOR,
        critical_ratio: Decimal = DEFAULT_CRITICAL_RATIO,
        stipend: Decimal = DEFAULT_STIPEND,
        stipend_token: Optional[str] = None,
        liquidation_penalty: Decimal = DEFAULT_LIQUIDATION_PENALTY,
        upfront_fee_rate: Decimal = Decimal("0"),
        collateral_cap: Decimal = Decimal("Infinity"),
        debt_ceiling: Decimal = Decimal("Infinity"),
    ):
        self.book = book
        self.prices = prices
        self.collateral_token = collateral_token
        self.debt_token = debt_token
        self.holder = holder
        self.branch_holder = book.register_holder(branch_holder)
        self.min_debt = to_decimal(min_debt)
        self.liquidation_factor = to_decimal(liquidation_factor)
        self.critical_ratio = to_decimal(critical_ratio)
        self.stipend = to_decimal(stipend)
        self.stipend_token = stipend_token or collateral_token
        self.liquidation_penalty = to_decimal(liquidation_penalty)
        self.upfront_fee_rate = to_decimal(upfront_fee_rate)
        self.collateral_cap = to_decimal(collateral_cap)
        self.debt_ceiling = to_decimal(debt_ceiling)
        self.supply_paused = False
        self.borrow_paused = False
        self.entries: Dict[int, DebtPositionLedgerEntry] = {}
        self._next_id = 1

    # =========================================================================
    # READS
    # =========================================================================

    def get_status(self, position_id: Optional[int]) -> PositionStatus:
        if position_id is None or position_id not in self.entries:
            return PositionStatus.NONE
        return self.entries[position_id].status

    def get_collateral(self, position_id: int) -> Decimal:
        return self._entry(position_id).collateral

    def get_debt(self, position_id: int) -> Decimal:
        return self._entry(position_id).debt

    def get_interest_rate(self, position_id: int) -> Decimal:
        return self._entry(position_id).interest_rate

    def get_collateral_surplus(self, position_id: int) -> Decimal:
        return self._entry(position_id).collateral_surplus

    def get_liquidation_factor(self) -> Decimal:
        return self.liquidation_factor

    def get_min_debt(self) -> Decimal:
        return self.min_debt

    def get_stipend(self) -> Decimal:
        return self.stipend

    def get_stipend_token(self) -> str:
        return self.stipend_token

    def get_upfront_fee_rate(self) -> Decimal:
        return self.upfront_fee_rate

    def get_critical_ratio(self) -> Decimal:
        return self.critical_ratio

    def get_branch_aggregate_collateral(self) -> Decimal:
        return sum((e.collateral for e in self.entries.values() if e.status.is_open), Decimal("0"))

    def get_branch_aggregate_debt(self) -> Decimal:
        return sum((e.debt for e in self.entries.values() if e.status.is_open), Decimal("0"))

    def total_collateral_ratio(self) -> Decimal:
        return compute_collateral_ratio(
            self.get_branch_aggregate_collateral(),
            self.get_branch_aggregate_debt(),
            self._collateral_price(),
        )

    def max_collateral_deposit(self) -> Decimal:
        if self.supply_paused:
            return Decimal("0")
        return max(Decimal("0"), self.collateral_cap - self.get_branch_aggregate_collateral())

    def max_borrow(self, position_id: Optional[int]) -> Decimal:
        if self.borrow_paused:
            return Decimal("0")
        return max(Decimal("0"), self.debt_ceiling - self.get_branch_aggregate_debt())

    def is_supply_paused(self) -> bool:
        return self.supply_paused

    def is_borrow_paused(self) -> bool:
        return self.borrow_paused

    # =========================================================================
    # OWNER OPERATIONS
    # =========================================================================

    def open(
        self,
        collateral_amount: Decimal,
        debt_amount: Decimal,
        interest_rate: Decimal,
        hints: Tuple[int, int] = NO_HINTS,
        max_fee: Decimal = ANY_FEE,
    ) -> int:
        return self.open_for(self.holder, collateral_amount, debt_amount, interest_rate, max_fee)

    def open_for(
        self,
        owner: str,
        collateral_amount: Decimal,
        debt_amount: Decimal,
        interest_rate: Decimal,
        max_fee: Decimal = ANY_FEE,
    ) -> int:
        """
        Open a position for `owner`: take collateral and stipend, mint debt.

        Raises:
            StateError: supply or borrow paused
            ThresholdViolation: debt under min_debt, rate out of bounds,
                LTV at/above the liquidation factor, or fee above max_fee
            SolvencyGuardError: the branch would end below the critical ratio
            LiquidityError: owner lacks collateral or stipend
        """
        collateral_amount = to_decimal(collateral_amount)
        debt_amount = to_decimal(debt_amount)
        interest_rate = to_decimal(interest_rate)
        self._require_unpaused(supply=True, borrow=True)
        self._require_rate(interest_rate)

        fee = self._upfront_fee(debt_amount, max_fee)
        debt = debt_amount + fee
        if debt < self.min_debt:
            raise ThresholdViolation(f"debt {debt} below minimum {self.min_debt}")
        if collateral_amount > self.max_collateral_deposit():
            raise LiquidityError(f"collateral {collateral_amount} exceeds branch capacity")
        if debt_amount > self.max_borrow(None):
            raise LiquidityError(f"debt {debt_amount} exceeds branch debt ceiling")
        self._require_healthy(collateral_amount, debt)
        self._require_branch_ratio(collateral_amount, debt)

        self.book.transfer(self.collateral_token, owner, self.branch_holder, collateral_amount, "open collateral")
        if self.stipend > 0:
            self.book.transfer(self.stipend_token, owner, self.branch_holder, self.stipend, "stipend")
        self.book.mint(self.debt_token, owner, debt_amount, "open borrow")

        position_id = self._next_id
        self._next_id += 1
        self.entries[position_id] = DebtPositionLedgerEntry(
            position_id=position_id,
            owner=owner,
            collateral=collateral_amount,
            debt=debt,
            status=PositionStatus.ACTIVE,
            interest_rate=interest_rate,
        )
        logger.debug(f"branch: opened {position_id} for {owner}: {collateral_amount} / {debt}")
        return position_id

    def add_collateral(self, position_id: int, amount: Decimal) -> None:
        entry = self._active(position_id)
        amount = to_decimal(amount)
        self._require_unpaused(supply=True)
        if amount > self.max_collateral_deposit():
            raise LiquidityError(f"collateral {amount} exceeds branch capacity")
        self.book.transfer(self.collateral_token, entry.owner, self.branch_holder, amount, "add collateral")
        self.entries[position_id] = replace(entry, collateral=entry.collateral + amount)

    def remove_collateral(self, position_id: int, amount: Decimal) -> None:
        entry = self._active(position_id)
        amount = to_decimal(amount)
        if amount > entry.collateral:
            raise ThresholdViolation(f"cannot remove {amount}, position holds {entry.collateral}")
        if self._branch_below_critical():
            raise SolvencyGuardError("branch below critical ratio: collateral withdrawals refused")
        remaining = entry.collateral - amount
        self._require_healthy(remaining, entry.debt)
        self.book.transfer(self.collateral_token, self.branch_holder, entry.owner, amount, "remove collateral")
        self.entries[position_id] = replace(entry, collateral=remaining)

    def borrow(self, position_id: int, amount: Decimal, max_fee: Decimal = ANY_FEE) -> None:
        entry = self._active(position_id)
        amount = to_decimal(amount)
        self._require_unpaused(borrow=True)
        if amount > self.max_borrow(position_id):
            raise LiquidityError(f"borrow {amount} exceeds branch debt ceiling")
        debt = entry.debt + amount + self._upfront_fee(amount, max_fee)
        self._require_healthy(entry.collateral, debt)
        self._require_branch_ratio(Decimal("0"), debt - entry.debt)
        self.book.mint(self.debt_token, entry.owner, amount, "borrow")
        self.entries[position_id] = replace(entry, debt=debt)

    def repay(self, position_id: int, amount: Decimal) -> None:
        entry = self._active(position_id)
        amount = to_decimal(amount)
        if entry.debt - amount < self.min_debt:
            raise ThresholdViolation(
                f"repaying {amount} would leave {entry.debt - amount}, below minimum {self.min_debt}"
            )
        self.book.burn(self.debt_token, entry.owner, amount, "repay")
        self.entries[position_id] = replace(entry, debt=entry.debt - amount)

    def close(self, position_id: int) -> None:
        """Burn all debt from the owner and return collateral plus stipend."""
        entry = self._entry(position_id)
        if not entry.status.is_open:
            raise StateError(f"position {position_id} is {entry.status.value}")
        if entry.debt > 0:
            self.book.burn(self.debt_token, entry.owner, entry.debt, "close repay")
        if entry.collateral > 0:
            self.book.transfer(self.collateral_token, self.branch_holder, entry.owner, entry.collateral, "close")
        if self.stipend > 0:
            self.book.transfer(self.stipend_token, self.branch_holder, entry.owner, self.stipend, "stipend refund")
        self.entries[position_id] = replace(
            entry, collateral=Decimal("0"), debt=Decimal("0"), status=PositionStatus.CLOSED_BY_OWNER,
        )

    def adjust_zombie(
        self,
        position_id: int,
        collateral_added: Decimal,
        debt_added: Decimal,
        max_fee: Decimal = ANY_FEE,
    ) -> None:
        """
        Top up a ZOMBIE entry and reactivate it.

        Raises:
            StateError: entry is not ZOMBIE
            SolvencyGuardError: branch below critical ratio
            ThresholdViolation: resulting debt under min_debt or LTV unhealthy
        """
        entry = self._entry(position_id)
        if entry.status != PositionStatus.ZOMBIE:
            raise StateError(f"position {position_id} is {entry.status.value}, not zombie")
        if self._branch_below_critical():
            raise SolvencyGuardError("branch below critical ratio: zombie adjustment refused")
        collateral_added = to_decimal(collateral_added)
        debt_added = to_decimal(debt_added)

        collateral = entry.collateral + collateral_added
        debt = entry.debt + debt_added + self._upfront_fee(debt_added, max_fee)
        if debt < self.min_debt:
            raise ThresholdViolation(f"debt {debt} still below minimum {self.min_debt}")
        self._require_healthy(collateral, debt)

        if collateral_added > 0:
            self.book.transfer(self.collateral_token, entry.owner, self.branch_holder, collateral_added, "zombie top-up")
        if debt_added > 0:
            self.book.mint(self.debt_token, entry.owner, debt_added, "zombie borrow")
        self.entries[position_id] = replace(
            entry, collateral=collateral, debt=debt, status=PositionStatus.ACTIVE,
        )

    def set_interest_rate(self, position_id: int, rate: Decimal, max_fee: Decimal = ANY_FEE) -> None:
        entry = self._active(position_id)
        rate = to_decimal(rate)
        self._require_rate(rate)
        self.entries[position_id] = replace(entry, interest_rate=rate)

    def claim_collateral_surplus(self, position_id: int) -> Decimal:
        entry = self._entry(position_id)
        amount = entry.collateral_surplus
        if amount <= 0:
            raise StateError(f"position {position_id} has no collateral surplus")
        self.book.transfer(self.collateral_token, self.branch_holder, entry.owner, amount, "collateral surplus")
        self.entries[position_id] = replace(entry, collateral_surplus=Decimal("0"))
        return amount

    # =========================================================================
    # EXTERNAL EVENTS
    # =========================================================================

    def redeem(self, redeemer: str, position_id: int, amount: Decimal) -> Decimal:
        """
        Redeem `amount` of debt against a position at par.

        Returns:
            Collateral paid to the redeemer
        """
        entry = self._entry(position_id)
        if not entry.status.is_open:
            raise StateError(f"position {position_id} is {entry.status.value}")
        amount = min(to_decimal(amount), entry.debt)
        if amount <= 0:
            logger.debug(f"branch: nothing to redeem from {position_id}")
            return Decimal("0")
        collateral_out = min(
            entry.collateral,
            round_amount(amount * self._debt_price() / self._collateral_price()),
        )
        self.book.burn(self.debt_token, redeemer, amount, "redeem")
        if collateral_out > 0:
            self.book.transfer(self.collateral_token, self.branch_holder, redeemer, collateral_out, "redeem")

        debt = entry.debt - amount
        status = PositionStatus.ZOMBIE if debt < self.min_debt else entry.status
        self.entries[position_id] = replace(
            entry, collateral=entry.collateral - collateral_out, debt=debt, status=status,
        )
        logger.info(f"branch: redeemed {amount} from {position_id}, status {status.value}")
        return collateral_out

    def liquidate(self, position_id: int, liquidator: str = "stability_pool") -> Decimal:
        """
        Liquidate an unhealthy ACTIVE position.

        The owner keeps the debt tokens it borrowed; the debt is absorbed by
        the liquidator. Returns the collateral seized.
        """
        entry = self._active(position_id)
        ltv = entry.debt * self._debt_price() / (entry.collateral * self._collateral_price())
        if ltv < self.liquidation_factor:
            raise StateError(f"position {position_id} is healthy (ltv {ltv})")
        seized, surplus = compute_liquidation_split(
            entry.collateral, entry.debt, self._collateral_price(), self._debt_price(), self.liquidation_penalty,
        )
        self.book.register_holder(liquidator)
        if seized > 0:
            self.book.transfer(self.collateral_token, self.branch_holder, liquidator, seized, "liquidation")
        if self.stipend > 0:
            self.book.transfer(self.stipend_token, self.branch_holder, liquidator, self.stipend, "liquidation stipend")
        self.entries[position_id] = replace(
            entry,
            collateral=Decimal("0"),
            debt=Decimal("0"),
            status=PositionStatus.CLOSED_BY_LIQUIDATION,
            collateral_surplus=surplus,
        )
        logger.info(f"branch: liquidated {position_id}, seized {seized}, surplus {surplus}")
        return seized

    def accrue_interest(self, days: int) -> None:
        """Add simple interest over `days` to every open position's debt."""
        fraction = Decimal(days) / DAYS_PER_YEAR
        for position_id, entry in list(self.entries.items()):
            if entry.status.is_open and entry.debt > 0:
                interest = round_amount(entry.debt * entry.interest_rate * fraction)
                self.entries[position_id] = replace(entry, debt=entry.debt + interest)

    def set_paused(self, supply: Optional[bool] = None, borrow: Optional[bool] = None) -> None:
        if supply is not None:
            self.supply_paused = supply
        if borrow is not None:
            self.borrow_paused = borrow

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _entry(self, position_id: int) -> DebtPositionLedgerEntry:
        if position_id not in self.entries:
            raise StateError(f"no position {position_id}")
        return self.entries[position_id]

    def _active(self, position_id: int) -> DebtPositionLedgerEntry:
        entry = self._entry(position_id)
        if entry.status != PositionStatus.ACTIVE:
            raise StateError(f"position {position_id} is {entry.status.value}, not active")
        return entry

    def _collateral_price(self) -> Decimal:
        return self.prices.price(self.collateral_token)

    def _debt_price(self) -> Decimal:
        return self.prices.price(self.debt_token)

    def _upfront_fee(self, amount: Decimal, max_fee: Decimal) -> Decimal:
        fee = round_amount(amount * self.upfront_fee_rate)
        if fee > max_fee:
            raise ThresholdViolation(f"upfront fee {fee} exceeds max {max_fee}")
        return fee

    def _require_rate(self, rate: Decimal) -> None:
        if not MIN_INTEREST_RATE <= rate <= MAX_INTEREST_RATE:
            raise ThresholdViolation(f"interest rate {rate} outside [{MIN_INTEREST_RATE}, {MAX_INTEREST_RATE}]")

    def _require_unpaused(self, supply: bool = False, borrow: bool = False) -> None:
        if supply and self.supply_paused:
            raise StateError("branch supply is paused")
        if borrow and self.borrow_paused:
            raise StateError("branch borrowing is paused")

    def _require_healthy(self, collateral: Decimal, debt: Decimal) -> None:
        if debt <= QUANTITY_EPSILON:
            return
        collateral_usd = collateral * self._collateral_price()
        if collateral_usd <= 0 or debt * self._debt_price() / collateral_usd >= self.liquidation_factor:
            raise ThresholdViolation(f"{collateral} collateral cannot carry {debt} debt")

    def _branch_below_critical(self) -> bool:
        return self.total_collateral_ratio() < self.critical_ratio

    def _require_branch_ratio(self, collateral_added: Decimal, debt_added: Decimal) -> None:
        collateral = self.get_branch_aggregate_collateral() + collateral_added
        debt = self.get_branch_aggregate_debt() + debt_added
        if compute_collateral_ratio(collateral, debt, self._collateral_price()) < self.critical_ratio:
            raise SolvencyGuardError("operation would leave the branch below its critical ratio")

    # =========================================================================
    # TRANSACTIONAL
    # =========================================================================

    def snapshot(self) -> Any:
        return (dict(self.entries), self._next_id, self.supply_paused, self.borrow_paused)

    def restore(self, snapshot: Any) -> None:
        entries, self._next_id, self.supply_paused, self.borrow_paused = snapshot
        self.entries = dict(entries)

    def __repr__(self) -> str:
        return (
            f"InMemoryPositionLedger({self.collateral_token}/{self.debt_token}, "
            f"{len(self.entries)} entries, tcr={self.total_collateral_ratio()})"
        )
