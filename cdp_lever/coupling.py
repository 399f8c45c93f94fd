"""
coupling.py - Leverage engine specialized for a redeemable debt-position ledger

On a ledger whose debt can be redeemed by third parties at par, three things
change relative to the plain engine:

    - Redemption cuts debt and collateral but leaves the borrowed asset we hold
      untouched, so we end up holding more than we owe. That surplus is sold
      back into collateral before any re-levering.
    - Redemption below the ledger's minimum debt leaves the entry ZOMBIE. Only
      a zombie adjustment (or a close) brings it back, and the ledger refuses
      it while the branch sits below its critical collateral ratio.
    - Liquidation closes the entry from the outside. The next tend or report
      sells what is left of the borrowed asset, claims any collateral
      surplus, and reports the loss instead of failing.

Opening the entry posts a stipend (gas compensation) the ledger holds until
close; the emergency unwind returns it to whoever opened the position.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_UP
from typing import Any, Optional, Tuple
import logging

from .core import (
    ANY_FEE, NO_HINTS, QUANTITY_EPSILON,
    PositionStatus, SwapDirection,
    LiquidityError, SolvencyGuardError, StateError, ThresholdViolation,
    round_amount, to_decimal,
)
from .engine import LeverageEngine
from .ltv import (
    PositionSnapshot, ZERO,
    calculate_ltv, calculate_surplus, calculate_total_assets,
    has_surplus, is_below_critical_ratio,
)
from .roles import AllowList

logger = logging.getLogger(__name__)


class DebtPositionCoupling(LeverageEngine):
    """
    LeverageEngine bound to one entry on a redeemable debt-position ledger.

    Adds: open_position, adjust_zombie_position, emergency_withdraw,
    set_interest_rate, set_zombie_allowed and surplus handling inside tend.

    Args:
        zombie_allow_list: Callers permitted to run adjust_zombie_position
        operator: Who paid the stipend for an existing entry; refunded on emergency close
        **kwargs: Forwarded to LeverageEngine
    """

    def __init__(
        self,
        *,
        zombie_allow_list: Optional[AllowList] = None,
        operator: Optional[str] = None,
        **kwargs,
    ):
        self.zombie_allow_list = zombie_allow_list or AllowList("zombie")
        self.operator = operator
        super().__init__(**kwargs)
        self.ledger.register(self.zombie_allow_list)

    # ========================================================================
    # READ VIEWS
    # ========================================================================

    def surplus(self) -> Decimal:
        snap = self.read_position()
        return calculate_surplus(snap.held_borrow, snap.debt)

    def has_surplus(self) -> bool:
        """Held-or-lent borrowed asset strictly exceeds debt by the configured floor."""
        return self._has_surplus(self.read_position())

    def is_branch_below_critical(self) -> bool:
        return is_below_critical_ratio(
            self.position.get_branch_aggregate_collateral(),
            self.position.get_branch_aggregate_debt(),
            self.prices.price(self.asset),
            self.position.get_critical_ratio(),
        )

    def status(self) -> PositionStatus:
        return self.position.get_status(self.position_id)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def open_position(
        self,
        caller: str,
        collateral_amount: Decimal,
        stipend: Decimal,
        hints: Tuple[int, int] = NO_HINTS,
    ) -> int:
        """
        Open the ledger entry with loose asset as collateral and borrow to target.

        The caller supplies the stipend, which must match what the ledger
        charges. Borrows target debt when that is profitable, else the
        ledger minimum.

        Raises:
            AuthorizationError: caller is not management
            StateError: an entry already exists
            ThresholdViolation: wrong stipend, or collateral cannot carry the minimum debt
        """
        collateral_amount = to_decimal(collateral_amount)
        stipend = to_decimal(stipend)
        with self.ledger.operation("open_position", caller):
            self.roles.require_management(caller)
            if self.position_id is not None and self.status() != PositionStatus.NONE:
                raise StateError(f"position {self.position_id} already exists ({self.status().value})")
            required = self.position.get_stipend()
            if stipend != required:
                raise ThresholdViolation(f"stipend must be {required}, got {stipend}")

            snap = self.read_position()
            target = self._target_ltv(snap)
            fee_factor = Decimal("1") + snap.upfront_fee_rate
            debt = round_amount(collateral_amount * snap.collateral_price * target / (snap.borrow_price * fee_factor))
            if debt * fee_factor < snap.min_debt:
                raise ThresholdViolation(
                    f"{collateral_amount} collateral supports {debt} debt at target ltv, "
                    f"below ledger minimum {snap.min_debt}"
                )
            if not self._is_borrow_profitable(debt):
                debt = round_amount(snap.min_debt / fee_factor, ROUND_UP)
                logger.warning(f"open_position: borrowing unprofitable, opening at minimum debt {debt}")

            if stipend > 0:
                self.book.transfer(self.position.get_stipend_token(), caller, self.holder, stipend, "stipend")
            self.position_id = self.position.open(collateral_amount, debt, self.interest_rate, hints, ANY_FEE)
            self.operator = caller
            self._lend_loose_borrow()
            logger.info(
                f"opened position {self.position_id}: collateral={collateral_amount} debt={debt} "
                f"rate={self.interest_rate}"
            )
            return self.position_id

    def adjust_zombie_position(self, caller: str, hints: Tuple[int, int] = NO_HINTS) -> None:
        """
        Bring a ZOMBIE entry back to ACTIVE.

        Supplies all loose asset and borrows back to max(min_debt, target debt).

        Raises:
            AuthorizationError: caller is not on the zombie allow-list
            StateError: entry is not ZOMBIE
            SolvencyGuardError: branch is below its critical collateral ratio
            ThresholdViolation: collateral cannot carry min_debt within warning LTV
        """
        with self.ledger.operation("adjust_zombie_position", caller):
            self.zombie_allow_list.require(caller)
            snap = self.read_position()
            if snap.status != PositionStatus.ZOMBIE:
                raise StateError(f"position is {snap.status.value}, not zombie")
            if self.is_branch_below_critical():
                raise SolvencyGuardError("branch collateral ratio is below critical; zombie exit refused")

            added_collateral = ZERO if snap.supply_paused else min(snap.loose_asset, snap.max_collateral_deposit)
            collateral = snap.collateral + added_collateral
            collateral_usd = collateral * snap.collateral_price
            target_debt = round_amount(collateral_usd * self._target_ltv(snap) / snap.borrow_price)
            new_debt = max(snap.min_debt, target_debt)

            new_ltv = calculate_ltv(new_debt * snap.borrow_price, collateral_usd)
            if collateral_usd <= 0 or new_ltv > self._warning_ltv(snap):
                raise ThresholdViolation(
                    f"{collateral} collateral cannot carry {new_debt} debt within warning ltv"
                )
            fee_factor = Decimal("1") + snap.upfront_fee_rate
            added_debt = max(ZERO, round_amount((new_debt - snap.debt) / fee_factor, ROUND_UP))

            self.position.adjust_zombie(self.position_id, added_collateral, added_debt, ANY_FEE)
            self._lend_loose_borrow()
            logger.info(
                f"zombie position {self.position_id} reactivated: +{added_collateral} collateral, "
                f"+{added_debt} debt"
            )

    def emergency_withdraw(self, caller: str) -> None:
        """
        Unwind everything: recall lent funds, close the entry, return the
        stipend to the operator and claim any liquidation surplus. Marks the
        strategy shut down.

        Raises:
            AuthorizationError: caller holds no emergency role
            LiquidityError: borrowed asset on hand cannot cover the debt
        """
        with self.ledger.operation("emergency_withdraw", caller):
            self.roles.require_emergency(caller)
            self.shutdown = True
            self._withdraw_from_lender(self.lender.balance())

            status = self.status()
            if status.is_open:
                debt = self.position.get_debt(self.position_id)
                on_hand = self.balance_of_borrow_token()
                if on_hand < debt:
                    raise LiquidityError(f"cannot close: {on_hand} on hand against {debt} debt")
                stipend = self.position.get_stipend()
                self.position.close(self.position_id)
                if stipend > 0 and self.operator is not None:
                    self.book.transfer(
                        self.position.get_stipend_token(), self.holder, self.operator, stipend, "stipend refund",
                    )
                logger.info(f"emergency: closed position {self.position_id}, repaid {debt}")
            elif status == PositionStatus.CLOSED_BY_LIQUIDATION:
                self._claim_collateral_surplus()

    def set_interest_rate(self, caller: str, rate: Decimal) -> None:
        """Change the annual rate on the open entry, or the rate used at open."""
        rate = to_decimal(rate)
        with self.ledger.operation("set_interest_rate", caller):
            self.roles.require_management(caller)
            if self.position_id is not None and self.status() == PositionStatus.ACTIVE:
                self.position.set_interest_rate(self.position_id, rate, ANY_FEE)
            self.interest_rate = rate
            logger.info(f"interest rate set to {rate}")

    def set_zombie_allowed(self, caller: str, address: str, allowed: bool) -> None:
        with self.ledger.operation("set_zombie_allowed", caller):
            self.roles.require_management(caller)
            self.zombie_allow_list.set_allowed(address, allowed)

    # ========================================================================
    # DECISIONS
    # ========================================================================

    def _is_liquidatable(self, snap: PositionSnapshot) -> bool:
        # Only an ACTIVE entry can be liquidated; a zombie or closed one cannot.
        return snap.status == PositionStatus.ACTIVE and super()._is_liquidatable(snap)

    def _has_surplus(self, snap: PositionSnapshot) -> bool:
        return has_surplus(
            snap.held_borrow, snap.debt, self.config.min_surplus_absolute, self.config.min_surplus_relative,
        )

    def _has_sellable_surplus(self, snap: PositionSnapshot) -> bool:
        return (
            snap.status.is_open
            and self._has_surplus(snap)
            and self._reachable_borrow(snap) > QUANTITY_EPSILON
        )

    def _needs_recovery(self, snap: PositionSnapshot) -> bool:
        """Liquidated with borrowed asset left to sell or collateral surplus left to claim."""
        if snap.status != PositionStatus.CLOSED_BY_LIQUIDATION:
            return False
        return (
            self._reachable_borrow(snap) > QUANTITY_EPSILON
            or self.position.get_collateral_surplus(self.position_id) > 0
        )

    def _maintenance_trigger(self, snap: PositionSnapshot) -> bool:
        if snap.status == PositionStatus.ACTIVE and snap.current_ltv > self._warning_ltv(snap):
            return True
        if self._needs_recovery(snap):
            return True
        if self._has_sellable_surplus(snap):
            return self.is_base_fee_acceptable()
        return super()._maintenance_trigger(snap)

    def _should_borrow(self, snap: PositionSnapshot) -> bool:
        if self._has_surplus(snap):
            logger.debug("borrow skipped: surplus must be sold first")
            return False
        return True

    # ========================================================================
    # STEPS
    # ========================================================================

    def _tend(self) -> None:
        snap = self.read_position()
        if snap.status == PositionStatus.ACTIVE and (
            self._is_liquidatable(snap) or snap.current_ltv > self._warning_ltv(snap)
        ):
            self._delever()
            return
        if self._needs_recovery(snap):
            self._recover_after_liquidation()
            return
        if self._has_sellable_surplus(snap):
            self._sell_surplus(snap)
            return
        super()._tend()

    def _sell_surplus(self, snap: PositionSnapshot) -> Decimal:
        """Sell min(surplus, reachable) borrowed asset for collateral; proceeds stay loose."""
        amount = min(calculate_surplus(snap.held_borrow, snap.debt), self._reachable_borrow(snap))
        self._withdraw_from_lender(amount - snap.loose_borrow)
        amount = min(amount, self.balance_of_borrow_token())
        out = self._swap(amount, SwapDirection.BORROW_TO_COLLATERAL)
        logger.info(f"sold surplus {amount} {self.borrow_token} for {out} {self.asset}")
        return out

    def _harvest(self) -> None:
        if self.position_id is not None and self.status() == PositionStatus.CLOSED_BY_LIQUIDATION:
            self._recover_after_liquidation()
            return
        super()._harvest()

    def _recover_after_liquidation(self) -> None:
        before = calculate_total_assets(self.read_position())
        self._withdraw_from_lender(self.lender.balance())
        loose = self.balance_of_borrow_token()
        if loose > QUANTITY_EPSILON:
            self._swap(loose, SwapDirection.BORROW_TO_COLLATERAL)
        self._claim_collateral_surplus()
        logger.warning(f"position {self.position_id} was liquidated; recovered assets valued before at {before}")

    def _claim_collateral_surplus(self) -> Decimal:
        if self.position.get_collateral_surplus(self.position_id) <= 0:
            return ZERO
        claimed = self.position.claim_collateral_surplus(self.position_id)
        logger.info(f"claimed {claimed} collateral surplus from position {self.position_id}")
        return claimed

    # ========================================================================
    # TRANSACTIONAL
    # ========================================================================

    def snapshot(self) -> Any:
        return (super().snapshot(), self.operator)

    def restore(self, snapshot: Any) -> None:
        base, self.operator = snapshot
        super().restore(base)
