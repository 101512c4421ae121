"""
membership.py - Participation shares

Shares are an ordinary token unit on the host ledger. They are issued by
debiting SYSTEM_WALLET and burned by crediting it back, so the outstanding
supply is the negated SYSTEM_WALLET balance.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Optional

from .core import (
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType,
    SYSTEM_WALLET, build_transaction,
)


class Membership:
    """Read-only view of share balances and outstanding supply."""

    def __init__(self, view: LedgerView, share_symbol: str):
        self.view = view
        self.share_symbol = share_symbol

    def balance_of(self, account: str) -> Decimal:
        if account not in self.view.list_wallets():
            return Decimal("0")
        return self.view.get_balance(account, self.share_symbol)

    def total_supply(self) -> Decimal:
        """Shares issued and not yet burned."""
        return -self.view.get_balance(SYSTEM_WALLET, self.share_symbol)

    def holders(self) -> Dict[str, Decimal]:
        positions = self.view.get_positions(self.share_symbol)
        return {w: q for w, q in positions.items() if w != SYSTEM_WALLET and q > 0}

    def __repr__(self) -> str:
        return f"Membership({self.share_symbol}, supply={self.total_supply()})"


def compute_mint(
    view: LedgerView,
    share_symbol: str,
    allocations: Dict[str, Decimal],
    contract_id: str,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Issue shares to each account in allocations in a single transaction.

    Zero allocations are skipped.

    Raises:
        ValueError: If any allocation is negative
    """
    moves = []
    for account in sorted(allocations):
        amount = allocations[account]
        if amount < 0:
            raise ValueError(f"Cannot mint a negative amount to {account}: {amount}")
        if amount == 0:
            continue
        moves.append(Move(amount, share_symbol, SYSTEM_WALLET, account, f"{contract_id}:{account}"))
    if origin is None:
        origin = TransactionOrigin(OriginType.SYSTEM, SYSTEM_WALLET, share_symbol, "MINT")
    return build_transaction(view, moves, origin=origin)


def compute_burn(
    view: LedgerView,
    share_symbol: str,
    account: str,
    amount: Decimal,
    contract_id: str,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Return shares from account to SYSTEM_WALLET.

    Raises:
        ValueError: If amount is not positive
    """
    if amount <= 0:
        raise ValueError(f"Burn amount must be positive, got {amount}")
    if origin is None:
        origin = TransactionOrigin(OriginType.USER_ACTION, account, share_symbol, "BURN")
    return build_transaction(view, [
        Move(amount, share_symbol, account, SYSTEM_WALLET, contract_id)
    ], origin=origin)
