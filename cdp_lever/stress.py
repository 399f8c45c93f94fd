"""
stress.py - Price-path stress harness

Generates geometric Brownian motion price paths with numpy and replays them
against an engine: each step lands an oracle update, asks tend_trigger, runs
tend when it says so, and records the resulting LTV. The result answers two
questions about a configuration: does the position ever reach the
liquidation factor, and does maintenance keep LTV under warning between
moves?

    dS / S = mu dt + sigma dW
    S(t + dt) = S(t) * exp((mu - sigma^2 / 2) dt + sigma sqrt(dt) Z)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional
import logging

import numpy as np

from .core import LeverError, PositionStatus
from .engine import LeverageEngine
from .ltv import is_liquidatable
from .pricing_source import StaticPriceSource

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.0
PRICE_QUANTUM = Decimal("1e-8")


@dataclass(frozen=True)
class PricePathParams:
    """GBM parameters; drift and volatility are annualized."""
    initial_price: float
    annual_drift: float = 0.0
    annual_volatility: float = 0.8
    days: int = 90
    steps_per_day: int = 1
    seed: Optional[int] = None

    def __post_init__(self):
        if self.initial_price <= 0:
            raise ValueError(f"initial_price must be positive, got {self.initial_price}")
        if self.annual_volatility < 0:
            raise ValueError(f"annual_volatility cannot be negative, got {self.annual_volatility}")
        if self.days <= 0 or self.steps_per_day <= 0:
            raise ValueError("days and steps_per_day must be positive")


def generate_price_path(params: PricePathParams) -> np.ndarray:
    """
    GBM price path of days * steps_per_day + 1 points, starting at initial_price.

    Deterministic for a given seed.
    """
    rng = np.random.default_rng(params.seed)
    steps = params.days * params.steps_per_day
    dt = 1.0 / (DAYS_PER_YEAR * params.steps_per_day)
    sigma = params.annual_volatility
    log_returns = rng.normal((params.annual_drift - 0.5 * sigma ** 2) * dt, sigma * np.sqrt(dt), steps)
    return params.initial_price * np.exp(np.concatenate(([0.0], np.cumsum(log_returns))))


@dataclass(frozen=True)
class StressStep:
    step: int
    price: Decimal
    ltv: Decimal
    tended: bool
    liquidatable: bool
    status: PositionStatus
    error: Optional[str] = None


@dataclass
class StressResult:
    steps: List[StressStep] = field(default_factory=list)

    @property
    def ltvs(self) -> np.ndarray:
        return np.array([float(s.ltv) for s in self.steps])

    @property
    def max_ltv(self) -> float:
        return float(self.ltvs.max()) if self.steps else 0.0

    @property
    def tend_count(self) -> int:
        return sum(1 for s in self.steps if s.tended)

    @property
    def ever_liquidatable(self) -> bool:
        return any(s.liquidatable for s in self.steps)

    @property
    def errors(self) -> List[StressStep]:
        return [s for s in self.steps if s.error is not None]


def replay_price_path(
    engine: LeverageEngine,
    prices: StaticPriceSource,
    path: np.ndarray,
    keeper: str,
) -> StressResult:
    """
    Replay `path` as oracle prices for the engine's asset.

    A rejected tend is recorded on its step rather than aborting the replay;
    the operation boundary has already rolled it back.
    """
    result = StressResult()
    for step, raw_price in enumerate(path):
        price = Decimal(repr(float(raw_price))).quantize(PRICE_QUANTUM)
        prices.update_price(engine.asset, price)

        tended = False
        error = None
        if engine.tend_trigger():
            try:
                engine.tend(keeper)
                tended = True
            except LeverError as exc:
                error = type(exc).__name__
                logger.warning(f"stress step {step}: tend rejected at price {price}: {exc}")

        snap = engine.read_position()
        result.steps.append(StressStep(
            step=step,
            price=price,
            ltv=snap.current_ltv,
            tended=tended,
            liquidatable=snap.status == PositionStatus.ACTIVE and is_liquidatable(
                snap.debt_usd, snap.collateral_usd, Decimal("1"), snap.liquidation_factor,
            ),
            status=snap.status,
            error=error,
        ))
    logger.info(
        f"stress replay: {len(result.steps)} steps, {result.tend_count} tends, max ltv {result.max_ltv:.4f}"
    )
    return result
