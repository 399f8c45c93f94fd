"""
Core types for the leveraged-position engine.

This module provides the foundational data structures and protocols:
1. Protocols: the collaborator interfaces the engine depends on
   (PositionAdapter, LenderAdapter, ExchangeAdapter, Transactional)
2. Enums: PositionStatus, SwapDirection, OperationStatus
3. Exceptions: LeverError and the operation failure taxonomy
4. Immutable records: OperationRecord, Report
5. Decimal helpers shared by every module

The engine never imports a concrete adapter. Everything it calls is declared
here as a Protocol, so tests and alternative venues plug in by shape alone.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, getcontext
from enum import Enum
from typing import Any, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All amounts, prices and ratios are Decimal. The global context is fixed at
# import so every caller shares the same precision and rounding.
#
#   - prec=50: ample headroom for 18-decimal token amounts times USD prices
#   - rounding=ROUND_HALF_EVEN for intermediate arithmetic
#
_LEVER_DECIMAL_CONTEXT = getcontext()
_LEVER_DECIMAL_CONTEXT.prec = 50
_LEVER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved holder for mint/burn. Exempt from balance validation.
SYSTEM_HOLDER = "system"

# Token amounts carry 18 decimal places, as on the ledgers this engine targets.
TOKEN_DECIMAL_PLACES = 18

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# Rounding tolerance for LTV comparisons after an engine-driven operation.
LTV_EPSILON = Decimal("1e-9")

# Accept-any-fee sentinel for debt-adjusting calls. Deliberate upstream
# economic choice: the engine never bounds the upfront fee it pays.
ANY_FEE = Decimal("Infinity")

# Hints are opaque to the engine; (0, 0) lets the ledger search for itself.
NO_HINTS: Tuple[int, int] = (0, 0)

_TOKEN_QUANTUM = Decimal(10) ** -TOKEN_DECIMAL_PLACES


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Coerce ints, floats and strings to Decimal via str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_amount(value: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
    """
    Quantize a token amount to TOKEN_DECIMAL_PLACES.

    Outgoing amounts (borrow, withdraw, swap input) round down so the engine
    never asks an adapter for more than it computed.
    """
    if value.is_infinite():
        return value
    return to_decimal(value).quantize(_TOKEN_QUANTUM, rounding=rounding)


# ============================================================================
# ENUMS
# ============================================================================

class PositionStatus(Enum):
    """
    Lifecycle status of a debt position as reported by the ledger.

    NONE: no entry has been opened.
    ACTIVE: open and adjustable.
    CLOSED_BY_OWNER: fully repaid and closed (terminal).
    CLOSED_BY_LIQUIDATION: force-closed by the ledger (terminal).
    ZOMBIE: debt fell below the ledger minimum, normally via redemption; only
            a zombie adjustment or a close is accepted.
    """
    NONE = "none"
    ACTIVE = "active"
    CLOSED_BY_OWNER = "closed_by_owner"
    CLOSED_BY_LIQUIDATION = "closed_by_liquidation"
    ZOMBIE = "zombie"

    @property
    def is_open(self) -> bool:
        return self in (PositionStatus.ACTIVE, PositionStatus.ZOMBIE)


class SwapDirection(Enum):
    COLLATERAL_TO_BORROW = "collateral_to_borrow"
    BORROW_TO_COLLATERAL = "borrow_to_collateral"


class OperationStatus(Enum):
    """
    Outcome of a top-level operation.

    APPLIED: every step completed and the new state persisted.
    REJECTED: a step raised; every participant was restored to its snapshot.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LeverError(Exception):
    """Base exception for all engine and adapter failures."""
    pass


class AuthorizationError(LeverError):
    """Raised when the caller does not hold the role a privileged action requires."""
    pass


class StateError(LeverError):
    """Raised when an operation is invalid for the current position status."""
    pass


class ThresholdViolation(LeverError):
    """Raised when a parameter or resulting amount falls outside an allowed bound."""
    pass


class LiquidityError(LeverError):
    """Raised when an adapter or holder cannot satisfy the requested amount."""
    pass


class SolvencyGuardError(LeverError):
    """
    Raised when the branch-wide collateral ratio forbids the requested transition.

    Distinct from LiquidityError: retrying with different amounts will not
    help until branch solvency recovers.
    """
    pass


class SlippageError(LeverError):
    """Raised when a swap's realized output is below the requested minimum."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Transactional(Protocol):
    """
    A participant in the operation boundary.

    snapshot() returns an opaque value; restore() puts the participant back
    exactly as it was when that value was taken.
    """

    def snapshot(self) -> Any:
        ...

    def restore(self, snapshot: Any) -> None:
        ...


@runtime_checkable
class BalanceBook(Protocol):
    """Token balances of the strategy and its counterparties."""

    def balance(self, holder: str, token: str) -> Decimal:
        ...

    def transfer(self, token: str, source: str, dest: str, quantity: Decimal, memo: str) -> Any:
        ...


@runtime_checkable
class PositionAdapter(Protocol):
    """
    Interface to the collateralized-debt-position ledger.

    Every read is live; callers must not cache results across operations.
    Mutating calls move tokens to/from the strategy's holder and raise a
    LeverError subclass on failure.
    """

    def open(
        self,
        collateral_amount: Decimal,
        debt_amount: Decimal,
        interest_rate: Decimal,
        hints: Tuple[int, int] = NO_HINTS,
        max_fee: Decimal = ANY_FEE,
    ) -> int:
        ...

    def add_collateral(self, position_id: int, amount: Decimal) -> None:
        ...

    def remove_collateral(self, position_id: int, amount: Decimal) -> None:
        ...

    def borrow(self, position_id: int, amount: Decimal, max_fee: Decimal = ANY_FEE) -> None:
        ...

    def repay(self, position_id: int, amount: Decimal) -> None:
        ...

    def close(self, position_id: int) -> None:
        ...

    def adjust_zombie(
        self,
        position_id: int,
        collateral_added: Decimal,
        debt_added: Decimal,
        max_fee: Decimal = ANY_FEE,
    ) -> None:
        ...

    def set_interest_rate(self, position_id: int, rate: Decimal, max_fee: Decimal = ANY_FEE) -> None:
        ...

    def claim_collateral_surplus(self, position_id: int) -> Decimal:
        ...

    def get_collateral(self, position_id: int) -> Decimal:
        ...

    def get_debt(self, position_id: int) -> Decimal:
        ...

    def get_status(self, position_id: Optional[int]) -> PositionStatus:
        ...

    def get_interest_rate(self, position_id: int) -> Decimal:
        ...

    def get_collateral_surplus(self, position_id: int) -> Decimal:
        ...

    def get_liquidation_factor(self) -> Decimal:
        ...

    def get_min_debt(self) -> Decimal:
        ...

    def get_stipend(self) -> Decimal:
        ...

    def get_stipend_token(self) -> str:
        ...

    def get_upfront_fee_rate(self) -> Decimal:
        ...

    def get_branch_aggregate_collateral(self) -> Decimal:
        ...

    def get_branch_aggregate_debt(self) -> Decimal:
        ...

    def get_critical_ratio(self) -> Decimal:
        ...

    def max_collateral_deposit(self) -> Decimal:
        ...

    def max_borrow(self, position_id: Optional[int]) -> Decimal:
        ...

    def is_supply_paused(self) -> bool:
        ...

    def is_borrow_paused(self) -> bool:
        ...


@runtime_checkable
class LenderAdapter(Protocol):
    """Interface to the yield source the borrowed asset is lent into."""

    def deposit(self, amount: Decimal) -> None:
        ...

    def withdraw(self, amount: Decimal) -> None:
        ...

    def max_deposit(self) -> Decimal:
        ...

    def max_withdraw(self) -> Decimal:
        ...

    def balance(self) -> Decimal:
        ...

    def apr_after_deposit(self, delta: Decimal) -> Decimal:
        """Projected annual yield after lending an extra `delta`."""
        ...


@runtime_checkable
class ExchangeAdapter(Protocol):
    """Interface to the venue that swaps collateral and borrowed asset."""

    def swap(self, amount: Decimal, min_out: Decimal, direction: SwapDirection) -> Decimal:
        ...


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class OperationRecord:
    """
    Immutable audit entry for one top-level operation.

    Attributes:
        sequence_number: Monotonic within the OperationLedger
        exec_id: Unique execution identifier
        name: Operation name (e.g. "tend", "open_position")
        caller: Identity that invoked the operation
        status: APPLIED or REJECTED
        error: Exception class name for REJECTED records
        timestamp: Logical time the operation ran at
    """
    sequence_number: int
    exec_id: str
    name: str
    caller: str
    status: OperationStatus
    timestamp: datetime
    error: Optional[str] = None

    def __repr__(self) -> str:
        tail = f", error={self.error}" if self.error else ""
        return f"OperationRecord(#{self.sequence_number} {self.name} by {self.caller}: {self.status.value}{tail})"


@dataclass(frozen=True, slots=True)
class Report:
    """Result of a harvest: assets under management and the change since the last one."""
    total_assets: Decimal
    profit: Decimal
    loss: Decimal

    def __post_init__(self):
        for name in ('total_assets', 'profit', 'loss'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if self.profit < 0 or self.loss < 0:
            raise ValueError("profit and loss are reported as non-negative magnitudes")
