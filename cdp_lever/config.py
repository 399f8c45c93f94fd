"""
config.py - Strategy configuration

StrategyConfig is the immutable set of thresholds the engine decides with.
It is built once by create_strategy_config(), passed by reference to the
engine, and replaced wholesale (dataclasses.replace) by the management-gated
setters. Nothing reads configuration from globals.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from decimal import Decimal

from .core import ThresholdViolation, to_decimal


# Upper bounds enforced by every setter.
MAX_SLIPPAGE = Decimal("0.10")
MAX_MIN_SURPLUS_RELATIVE = Decimal("0.10")


@dataclass(frozen=True, slots=True)
class StrategyConfig:
    """
    Immutable thresholds for the leverage engine.

    LTV multipliers are fractions of the ledger's liquidation factor, so
    target_ltv = liquidation_factor * target_ltv_multiplier.
    """
    target_ltv_multiplier: Decimal = Decimal("0.70")   # Lever up to this share of the liquidation factor
    warning_ltv_multiplier: Decimal = Decimal("0.80")  # Delever above this share
    slippage: Decimal = Decimal("0.05")                # Max swap shortfall vs oracle value
    min_surplus_absolute: Decimal = Decimal("0")       # Surplus floor, borrowed-asset units
    min_surplus_relative: Decimal = Decimal("0.001")   # Surplus floor, fraction of debt
    max_base_fee: Decimal = Decimal("100")             # Network-fee gate for non-critical tends
    min_ltv_gap: Decimal = Decimal("0.005")            # Under-target gap worth levering for
    min_borrow_amount: Decimal = Decimal("0.000001")   # Smaller borrows are skipped
    correction_factor: Decimal = Decimal("1")          # Multiplier applied in the liquidation test
    deposit_limit: Decimal = Decimal("Infinity")       # Cap on total managed assets
    force_leverage: bool = False                       # Treat borrowing as always profitable

    def __post_init__(self):
        """Convert numeric fields to Decimal and validate bounds."""
        for f in fields(self):
            if f.name == 'force_leverage':
                continue
            value = getattr(self, f.name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, f.name, to_decimal(value))

        if not Decimal("0") < self.target_ltv_multiplier < self.warning_ltv_multiplier:
            raise ThresholdViolation(
                f"target_ltv_multiplier ({self.target_ltv_multiplier}) must be positive "
                f"and below warning_ltv_multiplier ({self.warning_ltv_multiplier})"
            )
        if self.warning_ltv_multiplier > Decimal("1"):
            raise ThresholdViolation(
                f"warning_ltv_multiplier cannot exceed 1, got {self.warning_ltv_multiplier}"
            )
        if not Decimal("0") <= self.slippage <= MAX_SLIPPAGE:
            raise ThresholdViolation(f"slippage must be in [0, {MAX_SLIPPAGE}], got {self.slippage}")
        if self.min_surplus_absolute < 0:
            raise ThresholdViolation(f"min_surplus_absolute cannot be negative, got {self.min_surplus_absolute}")
        if not Decimal("0") <= self.min_surplus_relative <= MAX_MIN_SURPLUS_RELATIVE:
            raise ThresholdViolation(
                f"min_surplus_relative must be in [0, {MAX_MIN_SURPLUS_RELATIVE}], "
                f"got {self.min_surplus_relative}"
            )
        if self.correction_factor < 1:
            raise ThresholdViolation(f"correction_factor must be at least 1, got {self.correction_factor}")
        for name in ('max_base_fee', 'min_ltv_gap', 'min_borrow_amount', 'deposit_limit'):
            if getattr(self, name) < 0:
                raise ThresholdViolation(f"{name} cannot be negative, got {getattr(self, name)}")

    def with_changes(self, **changes) -> 'StrategyConfig':
        """Return a validated copy with `changes` applied."""
        return replace(self, **changes)


def create_strategy_config(
    target_ltv_multiplier: Decimal = Decimal("0.70"),
    warning_ltv_multiplier: Decimal = Decimal("0.80"),
    slippage: Decimal = Decimal("0.05"),
    min_surplus_absolute: Decimal = Decimal("0"),
    min_surplus_relative: Decimal = Decimal("0.001"),
    max_base_fee: Decimal = Decimal("100"),
    min_ltv_gap: Decimal = Decimal("0.005"),
    min_borrow_amount: Decimal = Decimal("0.000001"),
    correction_factor: Decimal = Decimal("1"),
    deposit_limit: Decimal = Decimal("Infinity"),
    force_leverage: bool = False,
) -> StrategyConfig:
    """
    Build a StrategyConfig.

    Raises:
        ThresholdViolation: If any value is outside its allowed bound.

    Example:
        config = create_strategy_config(
            target_ltv_multiplier=Decimal("0.70"),
            warning_ltv_multiplier=Decimal("0.80"),
            min_surplus_relative=Decimal("0.005"),
        )
    """
    return StrategyConfig(
        target_ltv_multiplier=target_ltv_multiplier,
        warning_ltv_multiplier=warning_ltv_multiplier,
        slippage=slippage,
        min_surplus_absolute=min_surplus_absolute,
        min_surplus_relative=min_surplus_relative,
        max_base_fee=max_base_fee,
        min_ltv_gap=min_ltv_gap,
        min_borrow_amount=min_borrow_amount,
        correction_factor=correction_factor,
        deposit_limit=deposit_limit,
        force_leverage=force_leverage,
    )
