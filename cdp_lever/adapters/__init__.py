"""
Adapters module - In-memory collaborators for the leverage engine.

Each adapter implements one collaborator protocol from core.py on top of a
shared TokenBook, so a whole strategy can be exercised without a chain:
- InMemoryPositionLedger: one branch of a redeemable debt-position ledger
- InMemoryLender: pooled lender for the borrowed asset
- InMemoryExchange: oracle-priced swap venue

All adapters support snapshot()/restore() and join the operation boundary.
"""

from .position_ledger import (
    DebtPositionLedgerEntry,
    InMemoryPositionLedger,
    compute_collateral_ratio,
    compute_liquidation_split,
)

from .lender import InMemoryLender

from .exchange import InMemoryExchange

__all__ = [
    # Position ledger
    'DebtPositionLedgerEntry',
    'InMemoryPositionLedger',
    'compute_collateral_ratio',
    'compute_liquidation_split',
    # Lender
    'InMemoryLender',
    # Exchange
    'InMemoryExchange',
]
