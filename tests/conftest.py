"""
conftest.py - Shared pytest fixtures for strategy tests

Provides:
- A wired, unopened simulation (funded counterparties, healthy branch)
- The same simulation with a 10 WETH position opened at target LTV
- Snapshot builders for pure-function tests
"""

import pytest
from decimal import Decimal

from cdp_lever import PositionSnapshot, PositionStatus

from tests.simulation import build_simulation


# =============================================================================
# SIMULATIONS
# =============================================================================

@pytest.fixture
def sim():
    """Unopened strategy over a funded market."""
    return build_simulation()


@pytest.fixture
def opened(sim):
    """Strategy with 10 WETH posted and debt at target LTV, all borrowed BOLD lent."""
    sim.open("10")
    return sim


# =============================================================================
# SNAPSHOTS
# =============================================================================

def make_snapshot(**overrides) -> PositionSnapshot:
    """PositionSnapshot of a 10 WETH / 10,000 BOLD position at $2000 unless overridden."""
    values = dict(
        status=PositionStatus.ACTIVE,
        collateral=Decimal("10"),
        debt=Decimal("10000"),
        collateral_price=Decimal("2000"),
        borrow_price=Decimal("1"),
        liquidation_factor=Decimal("1") / Decimal("1.1"),
        min_debt=Decimal("2000"),
    )
    values.update(overrides)
    return PositionSnapshot(**values)


@pytest.fixture
def snapshot_factory():
    return make_snapshot
