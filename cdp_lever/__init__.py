"""
cdp_lever - Leveraged collateralized-debt-position strategy engine

Keeps a debt position levered to a target LTV: collateral in, borrowed asset
out and lent for yield, pulled back to repay when the position drifts toward
liquidation.

Usage:
    from cdp_lever import (
        DebtPositionCoupling, OperationLedger, Roles, TokenBook, Token,
        StaticPriceSource, create_strategy_config,
    )
    from cdp_lever.adapters import InMemoryPositionLedger, InMemoryLender, InMemoryExchange

    strategy = DebtPositionCoupling(
        asset="WETH", borrow_token="BOLD",
        position=branch, lender=lender, exchange=exchange, prices=prices,
        book=book, holder="strategy", roles=Roles("management", "governance"),
        config=create_strategy_config(), ledger=OperationLedger("strategy"),
    )
    strategy.open_position("management", Decimal("10"), branch.get_stipend())
    if strategy.tend_trigger():
        strategy.tend("keeper")
"""

__version__ = "0.3.0"

# Core types
from .core import (
    PositionAdapter,
    LenderAdapter,
    ExchangeAdapter,
    BalanceBook,
    Transactional,
    PositionStatus,
    SwapDirection,
    OperationStatus,
    OperationRecord,
    Report,
    LeverError,
    AuthorizationError,
    StateError,
    ThresholdViolation,
    LiquidityError,
    SolvencyGuardError,
    SlippageError,
    SYSTEM_HOLDER,
    ANY_FEE,
    NO_HINTS,
    QUANTITY_EPSILON,
    LTV_EPSILON,
    round_amount,
    to_decimal,
)

# Balances and operation boundary
from .book import Token, Transfer, TokenBook
from .ledger import OperationLedger

# Pricing
from .pricing_source import PriceSource, StaticPriceSource

# Configuration and roles
from .config import StrategyConfig, create_strategy_config, MAX_SLIPPAGE, MAX_MIN_SURPLUS_RELATIVE
from .roles import AllowList, Roles

# LTV calculations
from .ltv import (
    PositionSnapshot,
    load_position_snapshot,
    calculate_ltv,
    calculate_target_ltv,
    calculate_borrow_amount,
    calculate_max_withdrawal,
    calculate_amount_to_repay,
    calculate_surplus,
    has_surplus,
    is_liquidatable,
    is_below_critical_ratio,
    calculate_total_assets,
)

# Engines
from .engine import LeverageEngine
from .coupling import DebtPositionCoupling

__all__ = [
    # Core
    'PositionAdapter',
    'LenderAdapter',
    'ExchangeAdapter',
    'BalanceBook',
    'Transactional',
    'PositionStatus',
    'SwapDirection',
    'OperationStatus',
    'OperationRecord',
    'Report',
    'LeverError',
    'AuthorizationError',
    'StateError',
    'ThresholdViolation',
    'LiquidityError',
    'SolvencyGuardError',
    'SlippageError',
    'SYSTEM_HOLDER',
    'ANY_FEE',
    'NO_HINTS',
    'QUANTITY_EPSILON',
    'LTV_EPSILON',
    'round_amount',
    'to_decimal',
    # Book and boundary
    'Token',
    'Transfer',
    'TokenBook',
    'OperationLedger',
    # Pricing
    'PriceSource',
    'StaticPriceSource',
    # Config and roles
    'StrategyConfig',
    'create_strategy_config',
    'MAX_SLIPPAGE',
    'MAX_MIN_SURPLUS_RELATIVE',
    'AllowList',
    'Roles',
    # LTV
    'PositionSnapshot',
    'load_position_snapshot',
    'calculate_ltv',
    'calculate_target_ltv',
    'calculate_borrow_amount',
    'calculate_max_withdrawal',
    'calculate_amount_to_repay',
    'calculate_surplus',
    'has_surplus',
    'is_liquidatable',
    'is_below_critical_ratio',
    'calculate_total_assets',
    # Engines
    'LeverageEngine',
    'DebtPositionCoupling',
]
