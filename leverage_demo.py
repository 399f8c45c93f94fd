#!/usr/bin/env python3
"""
Leveraged WETH/BOLD Strategy Demo

This demonstrates a strategy that posts WETH on a redeemable debt-position
ledger, borrows BOLD to a target LTV and lends it for yield.

Key concepts:
- Target and warning LTV as fractions of the liquidation factor
- Keeper maintenance: tend_trigger() decides, tend() acts
- Redemption leaves a BOLD surplus that is sold before re-levering
- Redemption below minimum debt leaves a ZOMBIE entry
- Every operation is atomic and lands in the operation log

Usage:
    python leverage_demo.py
"""

from decimal import Decimal

from cdp_lever import (
    AllowList, DebtPositionCoupling, OperationLedger, Roles, StaticPriceSource,
    Token, TokenBook, create_strategy_config,
)
from cdp_lever.adapters import InMemoryExchange, InMemoryLender, InMemoryPositionLedger
from cdp_lever.stress import PricePathParams, generate_price_path, replay_price_path


def build_market():
    book = TokenBook()
    book.register_token(Token("WETH", "Wrapped Ether"))
    book.register_token(Token("BOLD", "Bold Stablecoin"))
    for holder in ("strategy", "management", "keeper", "depositor", "redeemer", "lp", "whale"):
        book.register_holder(holder)

    prices = StaticPriceSource({"WETH": Decimal("2000"), "BOLD": Decimal("1")})
    branch = InMemoryPositionLedger(book, prices, "WETH", "BOLD", holder="strategy")
    lender = InMemoryLender(book, "BOLD", holder="strategy", base_apr=Decimal("0.08"))
    exchange = InMemoryExchange(book, prices, "strategy", "WETH", "BOLD")

    book.mint("WETH", "depositor", Decimal("10"))
    book.mint("WETH", "management", Decimal("1"))
    book.mint("WETH", "whale", Decimal("101"))
    book.mint("WETH", exchange.venue_holder, Decimal("1000"))
    book.mint("BOLD", exchange.venue_holder, Decimal("2000000"))
    book.mint("BOLD", "redeemer", Decimal("100000"))
    book.mint("BOLD", "lp", Decimal("100000"))
    lender.supply_from("lp", Decimal("100000"))
    branch.open_for("whale", Decimal("100"), Decimal("50000"), Decimal("0.05"))

    strategy = DebtPositionCoupling(
        asset="WETH",
        borrow_token="BOLD",
        position=branch,
        lender=lender,
        exchange=exchange,
        prices=prices,
        book=book,
        holder="strategy",
        roles=Roles("management", "governance", keepers=["keeper"], emergency_admin="management"),
        config=create_strategy_config(),
        ledger=OperationLedger("demo"),
        zombie_allow_list=AllowList("zombie", ["keeper"]),
    )
    return strategy, branch, prices


def show(label, strategy):
    print(
        f"{label:<28} {str(strategy.status().value):<10} "
        f"{float(strategy.balance_of_collateral()):>10.4f} {float(strategy.balance_of_debt()):>12.2f} "
        f"{float(strategy.current_ltv()):>8.4f} {float(strategy.balance_of_asset()):>8.4f}"
    )


def main():
    print("=" * 82)
    print("LEVERAGED WETH/BOLD STRATEGY")
    print("=" * 82)

    strategy, branch, prices = build_market()
    print(f"\nLiquidation factor: {float(branch.get_liquidation_factor()):.4f}")
    print(f"Target LTV:         {float(strategy.target_ltv()):.4f}")
    print(f"Warning LTV:        {float(strategy.warning_ltv()):.4f}")

    print("\n" + "-" * 82)
    print(f"{'Event':<28} {'Status':<10} {'Collateral':>10} {'Debt':>12} {'LTV':>8} {'Loose':>8}")
    print("-" * 82)

    strategy.deposit("depositor", Decimal("10"))
    show("deposit 10 WETH", strategy)
    strategy.open_position("management", Decimal("10"), branch.get_stipend())
    show("open position", strategy)

    prices.update_price("WETH", Decimal("1700"))
    show("WETH falls to 1700", strategy)
    strategy.tend("keeper")
    show("tend (delever)", strategy)

    prices.update_price("WETH", Decimal("2000"))
    strategy.tend("keeper")
    show("WETH 2000, tend (lever)", strategy)

    branch.redeem("redeemer", strategy.position_id, Decimal("3000"))
    show("redeem 3000 BOLD", strategy)
    print(f"{'  surplus':<28} {float(strategy.surplus()):.2f} BOLD")
    strategy.tend("keeper")
    show("tend (sell surplus)", strategy)
    strategy.tend("keeper")
    show("tend (re-lever)", strategy)

    branch.redeem("redeemer", strategy.position_id, strategy.balance_of_debt() - Decimal("1000"))
    show("redeem below min debt", strategy)
    strategy.tend("keeper")
    strategy.adjust_zombie_position("keeper")
    show("zombie exit", strategy)

    print("\n" + "-" * 82)
    print("STRESS REPLAY: 60 days, 60% annual volatility")
    print("-" * 82)
    path = generate_price_path(PricePathParams(initial_price=2000.0, annual_volatility=0.6, days=60, seed=2025))
    result = replay_price_path(strategy, prices, path, "keeper")
    print(f"  Price range:     {path.min():,.2f} - {path.max():,.2f}")
    print(f"  Tends:           {result.tend_count}")
    print(f"  Max LTV:         {result.max_ltv:.4f}")
    print(f"  Ever liquidatable: {result.ever_liquidatable}")
    print(f"  Rejected tends:  {len(result.errors)}")

    print("\n" + "-" * 82)
    print("OPERATION LOG (last 5)")
    print("-" * 82)
    for record in strategy.operation_log[-5:]:
        print(f"  {record.sequence_number:>4} {record.name:<24} {record.caller:<12} {record.status.value}")

    print("\n" + "=" * 82)
    print(f"Total assets: {float(strategy.total_assets()):.4f} WETH")
    print("=" * 82)
    return strategy


if __name__ == "__main__":
    main()
