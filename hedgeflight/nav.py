"""
nav.py - Net asset value of the treasury

Values the holdings of a set of wallets at fresh oracle prices. Every price is
freshness-checked, so a stale feed stops valuation instead of producing a
number.
"""

from __future__ import annotations
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, Optional

from .core import LedgerView, PreconditionError
from .membership import Membership
from .pricing_source import PricingSource, fresh_price


class NAVCalculator:
    """
    Read-only valuation of treasury wallets.

    Example:
        calc = NAVCalculator(ledger, pricer, ["vault", "lp_pool"], "USDC",
                             membership=Membership(ledger, "HFLT"))
        calc.nav()            # Decimal total in USDC
        calc.nav_per_share()  # nav / outstanding shares
    """

    def __init__(
        self,
        view: LedgerView,
        source: PricingSource,
        wallets: Iterable[str],
        base_currency: str,
        membership: Optional[Membership] = None,
        max_age: Optional[timedelta] = None,
    ):
        self.view = view
        self.source = source
        self.wallets = tuple(wallets)
        self.base_currency = base_currency
        self.membership = membership
        self.max_age = max_age

    def _excluded(self) -> set:
        return {self.membership.share_symbol} if self.membership else set()

    def holdings(self) -> Dict[str, Decimal]:
        """Positive balances summed across the valued wallets."""
        excluded = self._excluded()
        totals: Dict[str, Decimal] = {}
        known = self.view.list_wallets()
        for wallet in self.wallets:
            if wallet not in known:
                continue
            for symbol in self.view.list_units():
                if symbol in excluded:
                    continue
                qty = Decimal(str(self.view.get_balance(wallet, symbol)))
                if qty > 0:
                    totals[symbol] = totals.get(symbol, Decimal("0")) + qty
        return totals

    def nav(self) -> Decimal:
        """
        Total value of holdings in the base currency.

        Raises:
            StaleDataError: If any held asset lacks a fresh, positive price
        """
        now = self.view.current_time
        total = Decimal("0")
        for symbol, qty in self.holdings().items():
            if symbol == self.base_currency:
                total += qty
            else:
                total += qty * fresh_price(self.source, symbol, now, self.max_age)
        return total

    def nav_per_share(self) -> Decimal:
        """
        Raises:
            PreconditionError: If there is no membership or no outstanding share
        """
        if self.membership is None:
            raise PreconditionError("NAV per share requires a membership ledger")
        supply = self.membership.total_supply()
        if supply <= 0:
            raise PreconditionError("No shares outstanding")
        return self.nav() / supply
