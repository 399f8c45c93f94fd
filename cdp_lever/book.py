"""
book.py - Double-entry token balance book

TokenBook is the single store of token balances shared by the strategy and
the in-memory collaborators. Every balance change is a Transfer between two
holders; minting and burning go through SYSTEM_HOLDER, which is exempt from
balance validation. Conservation therefore holds for every token at all times:
the sum over holders (SYSTEM_HOLDER included) is zero.

Key responsibilities:
    - Registers tokens and holders
    - Applies validated transfers (insufficient balance raises LiquidityError)
    - Keeps an append-only journal of applied transfers
    - Participates in the operation boundary via snapshot()/restore()
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Set
import copy

from .core import (
    SYSTEM_HOLDER, QUANTITY_EPSILON, TOKEN_DECIMAL_PLACES,
    LeverError, LiquidityError,
    round_amount, to_decimal,
)


@dataclass(frozen=True, slots=True)
class Token:
    """
    Definition of a token held in the book.

    Attributes:
        symbol: Short identifier (e.g. "WETH", "BOLD")
        name: Human-readable name
        decimal_places: Precision amounts are quantized to
    """
    symbol: str
    name: str
    decimal_places: int = TOKEN_DECIMAL_PLACES


@dataclass(frozen=True, slots=True)
class Transfer:
    """
    A single applied movement of a token between two holders.

    Attributes:
        quantity: Amount moved (positive, already quantized)
        token: Token symbol
        source: Holder debited
        dest: Holder credited
        memo: Free-form reason, e.g. "borrow" or "lender_deposit"
    """
    quantity: Decimal
    token: str
    source: str
    dest: str
    memo: str

    def __post_init__(self):
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Transfer quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite() or self.quantity <= 0:
            raise ValueError(f"Transfer quantity must be positive and finite, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Transfer({self.quantity} {self.token}: {self.source}→{self.dest} [{self.memo}])"


class TokenBook:
    """
    Token balances for every holder, with full validation.

    Thread Safety:
        Not thread-safe on its own. Mutations happen inside an
        OperationLedger boundary, which serializes them.

    Example:
        book = TokenBook()
        book.register_token(Token("WETH", "Wrapped Ether"))
        book.register_holder("alice")
        book.mint("WETH", "alice", Decimal("10"))
        book.transfer("WETH", "alice", "strategy", Decimal("4"), "deposit")
    """

    def __init__(self):
        self.tokens: Dict[str, Token] = {}
        self.holders: Set[str] = {SYSTEM_HOLDER}
        self.balances: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self.journal: List[Transfer] = []

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_token(self, token: Token) -> None:
        if token.symbol in self.tokens:
            raise ValueError(f"Token {token.symbol} already registered")
        self.tokens[token.symbol] = token

    def register_holder(self, holder: str) -> str:
        """Register a holder. Re-registering an existing holder is a no-op."""
        if not holder or not holder.strip():
            raise ValueError("holder cannot be empty")
        self.holders.add(holder)
        return holder

    # ========================================================================
    # READS
    # ========================================================================

    def balance(self, holder: str, token: str) -> Decimal:
        """Balance of `token` held by `holder` (Decimal("0") when none)."""
        self._require_token(token)
        return self.balances[holder].get(token, Decimal("0"))

    def total_supply(self, token: str) -> Decimal:
        """Supply held outside SYSTEM_HOLDER, i.e. everything minted and not burned."""
        self._require_token(token)
        return sum(
            (self.balances[h].get(token, Decimal("0")) for h in sorted(self.holders) if h != SYSTEM_HOLDER),
            Decimal("0"),
        )

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Check that every token nets to zero across all holders.

        Returns:
            Dict with 'valid' and a list of 'discrepancies' (token, net).
        """
        discrepancies = []
        for token in sorted(self.tokens):
            net = sum(
                (self.balances[h].get(token, Decimal("0")) for h in sorted(self.holders)),
                Decimal("0"),
            )
            if abs(net) > QUANTITY_EPSILON:
                discrepancies.append({'token': token, 'net': net})
        return {'valid': not discrepancies, 'discrepancies': discrepancies}

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def transfer(self, token: str, source: str, dest: str, quantity: Decimal, memo: str) -> Transfer:
        """
        Move `quantity` of `token` from `source` to `dest`.

        Raises:
            LiquidityError: If `source` (other than SYSTEM_HOLDER) holds less than `quantity`
            LeverError: If the token or either holder is unknown
        """
        self._require_token(token)
        for holder in (source, dest):
            if holder not in self.holders:
                raise LeverError(f"Holder {holder} not registered")

        quantity = round_amount(to_decimal(quantity))
        move = Transfer(quantity=quantity, token=token, source=source, dest=dest, memo=memo)

        available = self.balances[source].get(token, Decimal("0"))
        if source != SYSTEM_HOLDER and available < quantity:
            raise LiquidityError(
                f"{source} holds {available} {token}, cannot transfer {quantity} ({memo})"
            )

        self.balances[source][token] = available - quantity
        self.balances[dest][token] = self.balances[dest].get(token, Decimal("0")) + quantity
        self.journal.append(move)
        return move

    def mint(self, token: str, dest: str, quantity: Decimal, memo: str = "mint") -> Transfer:
        return self.transfer(token, SYSTEM_HOLDER, dest, quantity, memo)

    def burn(self, token: str, source: str, quantity: Decimal, memo: str = "burn") -> Transfer:
        return self.transfer(token, source, SYSTEM_HOLDER, quantity, memo)

    # ========================================================================
    # TRANSACTIONAL
    # ========================================================================

    def snapshot(self) -> Any:
        return (
            copy.deepcopy(dict(self.balances)),
            len(self.journal),
            set(self.holders),
        )

    def restore(self, snapshot: Any) -> None:
        balances, journal_len, holders = snapshot
        self.balances = defaultdict(dict, copy.deepcopy(balances))
        del self.journal[journal_len:]
        self.holders = set(holders)

    def _require_token(self, token: str) -> None:
        if token not in self.tokens:
            raise LeverError(f"Token {token} not registered")

    def __repr__(self) -> str:
        return f"TokenBook({len(self.tokens)} tokens, {len(self.holders)} holders, {len(self.journal)} transfers)"
