"""
engine.py - Leverage/deleverage decision engine

LeverageEngine keeps a collateralized position levered to a target LTV:
supply collateral, borrow the second asset, lend it for yield, and pull it
back to repay when the position drifts toward liquidation.

The engine depends only on the collaborator protocols in core.py. Every
public mutating method runs inside the OperationLedger boundary, so it either
completes or leaves every participant untouched. Every decision starts from a
fresh PositionSnapshot; nothing read in one operation is reused in the next.

Decision order for maintenance (tend_trigger / tend):
    1. Liquidation test          -> always act, never gated
    2. No assets                 -> nothing to do
    3. LTV above warning         -> delever, never gated
    4. Levered but unprofitable  -> unwind, gated by network fee
    5. Under target by the gap   -> lever up if profitable, gated by network fee
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Callable, List, Optional
import logging

from .config import StrategyConfig
from .core import (
    ANY_FEE, QUANTITY_EPSILON,
    BalanceBook, ExchangeAdapter, LenderAdapter, PositionAdapter,
    OperationRecord, PositionStatus, Report, SwapDirection, Transactional,
    LiquidityError, SlippageError, StateError, ThresholdViolation,
    round_amount, to_decimal,
)
from .ledger import OperationLedger
from .ltv import (
    PositionSnapshot, ZERO, load_position_snapshot,
    calculate_amount_to_repay, calculate_borrow_amount, calculate_max_withdrawal,
    calculate_min_out, calculate_repay_to_target, calculate_repayable,
    calculate_target_ltv, calculate_total_assets, cap_borrow_amount, from_usd,
    is_liquidatable, to_usd,
)
from .pricing_source import PriceSource
from .roles import AllowList, Roles

logger = logging.getLogger(__name__)

ENGINE_CALLER = "engine"


def _no_base_fee() -> Decimal:
    return ZERO


class LeverageEngine:
    """
    Target-LTV leverage engine over injected collaborators.

    Args:
        asset: Collateral asset symbol
        borrow_token: Borrowed asset symbol
        position: Debt position ledger
        lender: Yield source for the borrowed asset
        exchange: Swap venue between the two assets
        prices: USD price source
        book: Balance book holding the strategy's loose tokens
        holder: The strategy's holder id in the book
        roles: Role holders for privileged operations
        config: Thresholds
        ledger: Transactional boundary every operation runs in
        interest_rate: Annual rate requested when the position is opened
        base_fee: Callable returning the current network fee
        position_id: Existing ledger entry, if any
        recorded_assets: Total assets already accounted to depositors, for an existing entry
        deposit_allow_list: Gate for deposit(); open to all by default
    """

    def __init__(
        self,
        *,
        asset: str,
        borrow_token: str,
        position: PositionAdapter,
        lender: LenderAdapter,
        exchange: ExchangeAdapter,
        prices: PriceSource,
        book: BalanceBook,
        holder: str,
        roles: Roles,
        config: StrategyConfig,
        ledger: OperationLedger,
        interest_rate: Decimal = Decimal("0.05"),
        base_fee: Callable[[], Decimal] = _no_base_fee,
        position_id: Optional[int] = None,
        recorded_assets: Decimal = ZERO,
        deposit_allow_list: Optional[AllowList] = None,
    ):
        self.asset = asset
        self.borrow_token = borrow_token
        self.position = position
        self.lender = lender
        self.exchange = exchange
        self.prices = prices
        self.book = book
        self.holder = holder
        self.roles = roles
        self.config = config
        self.ledger = ledger
        self.interest_rate = to_decimal(interest_rate)
        self.base_fee = base_fee
        self.position_id = position_id
        self.deposit_allow_list = deposit_allow_list or AllowList("deposit", open_to_all=True)
        self.shutdown = False
        # Deposits less withdrawals, reset to total assets at each report
        self.recorded_assets = to_decimal(recorded_assets)

        for participant in (self, book, position, lender, exchange, prices, roles, self.deposit_allow_list):
            if isinstance(participant, Transactional):
                ledger.register(participant)

    # ========================================================================
    # READ VIEWS
    # ========================================================================

    def read_position(self) -> PositionSnapshot:
        """Fresh snapshot of the position, balances and capacities."""
        return load_position_snapshot(
            self.position, self.lender, self.prices, self.book,
            self.holder, self.position_id, self.asset, self.borrow_token,
        )

    def target_ltv(self) -> Decimal:
        return calculate_target_ltv(self.position.get_liquidation_factor(), self.config.target_ltv_multiplier)

    def warning_ltv(self) -> Decimal:
        return calculate_target_ltv(self.position.get_liquidation_factor(), self.config.warning_ltv_multiplier)

    def current_ltv(self) -> Decimal:
        return self.read_position().current_ltv

    def balance_of_asset(self) -> Decimal:
        return self.book.balance(self.holder, self.asset)

    def balance_of_borrow_token(self) -> Decimal:
        return self.book.balance(self.holder, self.borrow_token)

    def balance_of_collateral(self) -> Decimal:
        return self.read_position().collateral

    def balance_of_debt(self) -> Decimal:
        return self.read_position().debt

    def balance_of_lent_assets(self) -> Decimal:
        return self.lender.balance()

    def total_assets(self) -> Decimal:
        return calculate_total_assets(self.read_position())

    def net_borrow_apr(self, amount: Decimal = ZERO) -> Decimal:
        """Annual borrow cost. Fixed per position on the ledgers this engine targets."""
        if self.position_id is not None and self.position.get_status(self.position_id).is_open:
            return self.position.get_interest_rate(self.position_id)
        return self.interest_rate

    def net_reward_apr(self, amount: Decimal = ZERO) -> Decimal:
        """Annual lender yield after lending an extra `amount`."""
        return self.lender.apr_after_deposit(to_decimal(amount))

    def is_base_fee_acceptable(self) -> bool:
        return to_decimal(self.base_fee()) <= self.config.max_base_fee

    def max_withdrawal(self) -> Decimal:
        """Collateral withdrawable while debt_usd stays within remaining_collateral_usd * target_ltv."""
        snap = self.read_position()
        return calculate_max_withdrawal(
            snap.collateral, snap.debt, snap.collateral_price, snap.borrow_price, self._target_ltv(snap),
        )

    def calculate_amount_to_repay(self, amount: Decimal) -> Decimal:
        """Debt to retire before withdrawing `amount` of collateral; 0 if the target is not breached."""
        snap = self.read_position()
        return calculate_amount_to_repay(
            to_decimal(amount), snap.collateral, snap.debt,
            snap.collateral_price, snap.borrow_price, self._target_ltv(snap),
        )

    def available_deposit_limit(self, owner: str) -> Decimal:
        """
        Most `owner` may deposit right now, in asset units.

        The tightest of: remaining deposit limit, ledger collateral capacity,
        lender capacity and ledger borrow capacity, the last two converted to
        collateral through target LTV. Zero when supply or borrow is paused,
        after shutdown, or for owners outside the deposit allow-list.
        """
        if self.shutdown or not self.deposit_allow_list.is_allowed(owner):
            return ZERO
        snap = self.read_position()
        if snap.supply_paused or snap.borrow_paused:
            return ZERO

        limits = [
            self.config.deposit_limit - calculate_total_assets(snap),
            snap.max_collateral_deposit,
        ]
        target = self._target_ltv(snap)
        if target > 0:
            for capacity in (snap.lender_max_deposit, snap.max_borrow):
                limits.append(from_usd(to_usd(capacity, snap.borrow_price) / target, snap.collateral_price))
        return max(ZERO, round_amount(min(limits)))

    def available_withdraw_limit(self, owner: str) -> Decimal:
        """
        Most `owner` may withdraw right now, in asset units.

        Loose asset plus the collateral that can be freed by repaying with
        borrowed asset actually reachable (loose plus lender liquidity), down
        to the debt floor. Zero when supply or borrow is paused.
        """
        snap = self.read_position()
        if snap.supply_paused or snap.borrow_paused:
            return ZERO
        if snap.status != PositionStatus.ACTIVE:
            return snap.loose_asset

        reachable = snap.loose_borrow + min(snap.lent, snap.lender_max_withdraw)
        repay = min(reachable, calculate_repayable(snap))
        freed = calculate_max_withdrawal(
            snap.collateral, snap.debt - repay, snap.collateral_price, snap.borrow_price, self._target_ltv(snap),
        )
        return snap.loose_asset + freed

    def tend_trigger(self) -> bool:
        """True when maintenance should run now. See module docstring for the order."""
        return self._tend_trigger(self.read_position())

    @property
    def operation_log(self) -> List[OperationRecord]:
        return self.ledger.operation_log

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def lever_up(self, amount: Decimal) -> None:
        """Supply `amount` of loose asset as collateral, then borrow up to target LTV and lend."""
        with self.ledger.operation("lever_up", ENGINE_CALLER):
            self._lever_up(to_decimal(amount))

    def delever(self) -> Decimal:
        """Repay down toward target LTV when above warning. Returns debt repaid."""
        with self.ledger.operation("delever", ENGINE_CALLER):
            return self._delever()

    def deposit(self, owner: str, amount: Decimal) -> None:
        """Take `amount` of asset from `owner` and put it to work."""
        amount = to_decimal(amount)
        with self.ledger.operation("deposit", owner):
            if amount <= 0:
                raise ThresholdViolation(f"deposit amount must be positive, got {amount}")
            limit = self.available_deposit_limit(owner)
            if amount > limit:
                raise ThresholdViolation(f"deposit of {amount} exceeds available limit {limit}")
            self.book.transfer(self.asset, owner, self.holder, amount, "deposit")
            self.recorded_assets += amount
            self._lever_up(amount)

    def withdraw(self, owner: str, amount: Decimal) -> None:
        """Free `amount` of asset, repaying debt first where needed, and pay it to `owner`."""
        amount = to_decimal(amount)
        with self.ledger.operation("withdraw", owner):
            if amount <= 0:
                raise ThresholdViolation(f"withdrawal amount must be positive, got {amount}")
            limit = self.available_withdraw_limit(owner)
            if amount > limit:
                raise LiquidityError(f"withdrawal of {amount} exceeds available limit {limit}")
            self._free_funds(amount)
            self.book.transfer(self.asset, self.holder, owner, amount, "withdraw")
            self.recorded_assets -= amount

    def tend(self, caller: str) -> None:
        """Keeper maintenance: act on the tend_trigger decision order."""
        with self.ledger.operation("tend", caller):
            self.roles.require_keeper(caller)
            self._tend()

    def report(self, caller: str) -> Report:
        """
        Keeper harvest: deploy idle funds and report the change in total assets
        since the last report, net of deposits and withdrawals.
        """
        with self.ledger.operation("report", caller):
            self.roles.require_keeper(caller)
            self._harvest()
            total = calculate_total_assets(self.read_position())
            previous = self.recorded_assets
            self.recorded_assets = total
            report = Report(
                total_assets=total,
                profit=max(ZERO, total - previous),
                loss=max(ZERO, previous - total),
            )
            logger.info(f"report: total_assets={total} profit={report.profit} loss={report.loss}")
            return report

    # -- privileged -----------------------------------------------------------

    def buy_borrow_token(self, caller: str, amount: Decimal) -> Decimal:
        """Emergency: swap `amount` of loose asset into the borrowed asset."""
        with self.ledger.operation("buy_borrow_token", caller):
            self.roles.require_emergency(caller)
            return self._swap(to_decimal(amount), SwapDirection.COLLATERAL_TO_BORROW)

    def sell_borrow_token(self, caller: str, amount: Decimal) -> Decimal:
        """Emergency: swap `amount` of borrowed asset into the collateral asset."""
        amount = to_decimal(amount)
        with self.ledger.operation("sell_borrow_token", caller):
            self.roles.require_emergency(caller)
            self._withdraw_from_lender(amount - self.balance_of_borrow_token())
            return self._swap(amount, SwapDirection.BORROW_TO_COLLATERAL)

    def set_ltv_multipliers(self, caller: str, target: Decimal, warning: Decimal) -> None:
        self._update_config(caller, "set_ltv_multipliers",
                            target_ltv_multiplier=target, warning_ltv_multiplier=warning)

    def set_slippage(self, caller: str, slippage: Decimal) -> None:
        self._update_config(caller, "set_slippage", slippage=slippage)

    def set_min_surplus(self, caller: str, absolute: Decimal, relative: Decimal) -> None:
        self._update_config(caller, "set_min_surplus",
                            min_surplus_absolute=absolute, min_surplus_relative=relative)

    def set_max_base_fee(self, caller: str, max_base_fee: Decimal) -> None:
        self._update_config(caller, "set_max_base_fee", max_base_fee=max_base_fee)

    def set_force_leverage(self, caller: str, force: bool) -> None:
        self._update_config(caller, "set_force_leverage", force_leverage=bool(force))

    def set_deposit_limit(self, caller: str, limit: Decimal) -> None:
        self._update_config(caller, "set_deposit_limit", deposit_limit=limit)

    def set_keeper(self, caller: str, keeper: str, enabled: bool) -> None:
        with self.ledger.operation("set_keeper", caller):
            self.roles.require_management(caller)
            if enabled:
                self.roles.keepers.add(keeper)
            else:
                self.roles.keepers.discard(keeper)

    def set_deposit_allowed(self, caller: str, owner: str, allowed: bool) -> None:
        with self.ledger.operation("set_deposit_allowed", caller):
            self.roles.require_management(caller)
            self.deposit_allow_list.set_allowed(owner, allowed)

    def sweep(self, caller: str, token: str) -> Decimal:
        """Governance: send a stray token balance to governance. Managed tokens are refused."""
        with self.ledger.operation("sweep", caller):
            self.roles.require_governance(caller)
            if token in (self.asset, self.borrow_token):
                raise StateError(f"{token} is managed by the strategy and cannot be swept")
            amount = self.book.balance(self.holder, token)
            if amount > 0:
                self.book.transfer(token, self.holder, self.roles.governance, amount, "sweep")
            return amount

    # ========================================================================
    # DECISIONS (override points)
    # ========================================================================

    def _target_ltv(self, snap: PositionSnapshot) -> Decimal:
        return calculate_target_ltv(snap.liquidation_factor, self.config.target_ltv_multiplier)

    def _warning_ltv(self, snap: PositionSnapshot) -> Decimal:
        return calculate_target_ltv(snap.liquidation_factor, self.config.warning_ltv_multiplier)

    def _is_liquidatable(self, snap: PositionSnapshot) -> bool:
        return is_liquidatable(
            snap.debt_usd, snap.collateral_usd, self.config.correction_factor, snap.liquidation_factor,
        )

    def _is_active(self, snap: PositionSnapshot) -> bool:
        return self.position_id is not None and snap.status == PositionStatus.ACTIVE

    def _is_borrow_profitable(self, amount: Decimal) -> bool:
        if self.config.force_leverage:
            return True
        return self.net_borrow_apr(amount) <= self.net_reward_apr(amount)

    def _reachable_borrow(self, snap: PositionSnapshot) -> Decimal:
        """Borrowed asset the strategy can actually put its hands on now."""
        return snap.loose_borrow + min(snap.lent, snap.lender_max_withdraw)

    def _is_levered(self, snap: PositionSnapshot) -> bool:
        """Debt above the floor and borrowed asset reachable to repay it with."""
        return calculate_repayable(snap) > QUANTITY_EPSILON and self._reachable_borrow(snap) > QUANTITY_EPSILON

    def _projected_borrow(self, snap: PositionSnapshot) -> Decimal:
        return cap_borrow_amount(calculate_borrow_amount(snap, self._target_ltv(snap)), snap)

    def _tend_trigger(self, snap: PositionSnapshot) -> bool:
        # Liquidation risk is checked first and is never gated or overridden.
        if self._is_liquidatable(snap):
            return True
        if calculate_total_assets(snap) <= QUANTITY_EPSILON:
            return False
        return self._maintenance_trigger(snap)

    def _maintenance_trigger(self, snap: PositionSnapshot) -> bool:
        if not self._is_active(snap) or snap.collateral_usd <= 0:
            return False

        ltv = snap.current_ltv
        if ltv > self._warning_ltv(snap):
            return True

        if self._is_levered(snap) and not self._is_borrow_profitable(ZERO):
            return self.is_base_fee_acceptable()

        target = self._target_ltv(snap)
        if ltv < target - self.config.min_ltv_gap:
            amount = self._projected_borrow(snap)
            if amount >= self.config.min_borrow_amount and amount > 0 and self._is_borrow_profitable(amount):
                return self.is_base_fee_acceptable()
        return False

    # ========================================================================
    # STEPS (run inside an operation)
    # ========================================================================

    def _tend(self) -> None:
        snap = self.read_position()
        if not self._is_active(snap):
            logger.debug(f"tend: position not active ({snap.status.value}), nothing to do")
            return
        if self._is_liquidatable(snap) or snap.current_ltv > self._warning_ltv(snap):
            self._delever()
            return
        if self._is_levered(snap) and not self._is_borrow_profitable(ZERO):
            self._unwind_unprofitable(snap)
            return
        self._lever_up(snap.loose_asset)

    def _harvest(self) -> None:
        snap = self.read_position()
        if self.shutdown or not self._is_active(snap):
            return
        if snap.loose_asset > QUANTITY_EPSILON:
            self._lever_up(snap.loose_asset)

    def _lever_up(self, amount: Decimal) -> None:
        snap = self.read_position()
        if amount > QUANTITY_EPSILON:
            self._supply_collateral(snap, amount)
        self._lever_to_target()

    def _supply_collateral(self, snap: PositionSnapshot, amount: Decimal) -> None:
        if not self._is_active(snap) or snap.supply_paused:
            logger.debug(f"supply skipped: status={snap.status.value} paused={snap.supply_paused}, {amount} stays loose")
            return
        amount = min(amount, snap.loose_asset, snap.max_collateral_deposit)
        if amount > QUANTITY_EPSILON:
            self.position.add_collateral(self.position_id, amount)

    def _lever_to_target(self) -> None:
        snap = self.read_position()
        if self._is_active(snap) and self._should_borrow(snap):
            target = self._target_ltv(snap)
            if snap.current_ltv < target:
                amount = self._projected_borrow(snap)
                if amount < self.config.min_borrow_amount or amount <= 0:
                    logger.debug(f"borrow skipped: capped amount {amount} below minimum")
                elif not self._is_borrow_profitable(amount):
                    logger.warning(
                        f"borrow skipped: borrow apr {self.net_borrow_apr(amount)} exceeds "
                        f"reward apr {self.net_reward_apr(amount)} at {amount}"
                    )
                else:
                    self.position.borrow(self.position_id, amount, ANY_FEE)
                    logger.info(f"borrowed {amount} {self.borrow_token} toward target ltv {target}")
        self._lend_loose_borrow()

    def _should_borrow(self, snap: PositionSnapshot) -> bool:
        return True

    def _lend_loose_borrow(self) -> None:
        loose = self.balance_of_borrow_token()
        amount = min(loose, self.lender.max_deposit())
        if amount > QUANTITY_EPSILON:
            self.lender.deposit(amount)

    def _delever(self) -> Decimal:
        snap = self.read_position()
        if not self._is_active(snap):
            return ZERO
        if not (snap.current_ltv > self._warning_ltv(snap) or self._is_liquidatable(snap)):
            return ZERO
        needed = min(calculate_repay_to_target(snap, self._target_ltv(snap)), calculate_repayable(snap))
        repaid = self._withdraw_and_repay(needed)
        logger.info(f"delever: ltv {snap.current_ltv} above warning, repaid {repaid} of {needed}")
        return repaid

    def _unwind_unprofitable(self, snap: PositionSnapshot) -> Decimal:
        repaid = self._withdraw_and_repay(calculate_repayable(snap))
        logger.info(f"unwind: borrow apr exceeds reward apr, repaid {repaid}")
        return repaid

    def _withdraw_and_repay(self, amount: Decimal) -> Decimal:
        """Pull up to `amount` from the lender as needed and repay it, never below the floor."""
        if amount <= QUANTITY_EPSILON:
            return ZERO
        self._withdraw_from_lender(amount - self.balance_of_borrow_token())
        return self._repay_debt(min(amount, self.balance_of_borrow_token()))

    def _withdraw_from_lender(self, amount: Decimal) -> Decimal:
        """Withdraw up to `amount`, bounded by balance and lender liquidity."""
        if amount <= QUANTITY_EPSILON:
            return ZERO
        amount = round_amount(min(amount, self.lender.balance(), self.lender.max_withdraw()))
        if amount > QUANTITY_EPSILON:
            self.lender.withdraw(amount)
            return amount
        return ZERO

    def _repay_debt(self, amount: Decimal) -> Decimal:
        snap = self.read_position()
        amount = round_amount(min(amount, calculate_repayable(snap)))
        if amount > QUANTITY_EPSILON:
            self.position.repay(self.position_id, amount)
            return amount
        return ZERO

    def _free_funds(self, amount: Decimal) -> None:
        snap = self.read_position()
        needed = amount - min(amount, snap.loose_asset)
        if needed <= QUANTITY_EPSILON:
            return
        if not self._is_active(snap):
            raise StateError(f"cannot free {needed} collateral: position is {snap.status.value}")

        repay = calculate_amount_to_repay(
            needed, snap.collateral, snap.debt, snap.collateral_price, snap.borrow_price, self._target_ltv(snap),
        )
        if repay > 0:
            self._withdraw_and_repay(min(repay, calculate_repayable(snap)))

        snap = self.read_position()
        allowed = calculate_max_withdrawal(
            snap.collateral, snap.debt, snap.collateral_price, snap.borrow_price, self._warning_ltv(snap),
        )
        if needed > allowed:
            raise LiquidityError(
                f"withdrawing {needed} collateral would push ltv above warning (max {allowed})"
            )
        self.position.remove_collateral(self.position_id, needed)

    def _swap(self, amount: Decimal, direction: SwapDirection) -> Decimal:
        amount = round_amount(amount)
        if amount <= QUANTITY_EPSILON:
            return ZERO
        if direction == SwapDirection.BORROW_TO_COLLATERAL:
            price_in, price_out = self.prices.price(self.borrow_token), self.prices.price(self.asset)
        else:
            price_in, price_out = self.prices.price(self.asset), self.prices.price(self.borrow_token)
        min_out = calculate_min_out(amount, price_in, price_out, self.config.slippage)
        out = self.exchange.swap(amount, min_out, direction)
        if out < min_out:
            raise SlippageError(f"swap returned {out}, below minimum {min_out}")
        logger.info(f"swapped {amount} ({direction.value}) for {out}")
        return out

    def _update_config(self, caller: str, name: str, **changes) -> None:
        with self.ledger.operation(name, caller):
            self.roles.require_management(caller)
            self.config = self.config.with_changes(**changes)
            logger.info(f"{name}: {changes}")

    # ========================================================================
    # TRANSACTIONAL
    # ========================================================================

    def snapshot(self) -> Any:
        return (self.config, self.position_id, self.shutdown, self.recorded_assets, self.interest_rate)

    def restore(self, snapshot: Any) -> None:
        (self.config, self.position_id, self.shutdown,
         self.recorded_assets, self.interest_rate) = snapshot
