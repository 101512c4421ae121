"""
short.py - Hedge strategy: collateralized short

On execute the strategy sizes a short against the liquidity that was just
unwound: collateral is hedge_ratio times the liquidity strategy's deployed
notional, posted from the vault to the venue wallet. The short size is the
collateral divided by a fresh price of the hedged asset. An open position is
rolled: its collateral comes back before the new one goes out.

Without an explicit max_age the strategy uses the price_max_age of the flight
it is set on.
"""

from __future__ import annotations
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from ..core import (
    Move, TransactionOrigin, OriginType, UNIT_TYPE_STRATEGY,
    compute_state_update, control_unit,
)
from ..ledger import Ledger
from ..pricing_source import PricingSource, fresh_price
from ..vault import Vault
from .liquidity import LiquidityStrategy

logger = logging.getLogger(__name__)


class ShortStrategy:

    def __init__(
        self,
        ledger: Ledger,
        vault: Vault,
        liquidity: LiquidityStrategy,
        pricing_source: PricingSource,
        address: str,
        venue_wallet: str,
        base_symbol: str,
        hedge_symbol: str,
        hedge_ratio: Decimal = Decimal("0.5"),
        max_age: Optional[timedelta] = None,
    ):
        hedge_ratio = Decimal(str(hedge_ratio))
        if not Decimal("0") < hedge_ratio <= Decimal("1"):
            raise ValueError(f"hedge_ratio must be in (0, 1], got {hedge_ratio}")
        self.ledger = ledger
        self.vault = vault
        self.liquidity = liquidity
        self.pricing_source = pricing_source
        self.address = address
        self.venue_wallet = venue_wallet
        self.base_symbol = base_symbol
        self.hedge_symbol = hedge_symbol
        self.hedge_ratio = hedge_ratio
        self.max_age = max_age
        self.record_symbol = f"{address}_STATE"

        ledger.ensure_wallet(address)
        ledger.ensure_wallet(venue_wallet)
        ledger.register_unit(control_unit(
            self.record_symbol, f"{address} short position", UNIT_TYPE_STRATEGY,
            {'open': False, 'collateral': Decimal("0"), 'size': Decimal("0"),
             'entry_price': None, 'opened_at': None, 'rolls': 0},
        ))

    def target_collateral(self) -> Decimal:
        unit = self.ledger.get_unit(self.base_symbol)
        return unit.round(self.liquidity.deployed_value() * self.hedge_ratio)

    def validate(self) -> bool:
        collateral = self.target_collateral()
        if collateral <= 0:
            return False
        state = self.ledger.get_unit_state(self.record_symbol)
        available = self.ledger.get_balance(self.vault.address, self.base_symbol) + state['collateral']
        return available >= collateral

    def execute(self) -> bool:
        """
        Open, or roll, the short.

        Raises:
            StaleDataError: If the hedged asset has no fresh price
        """
        price = fresh_price(self.pricing_source, self.hedge_symbol,
                            self.ledger.current_time, self.max_age)
        collateral = self.target_collateral()
        if collateral <= 0:
            logger.warning("%s has no deployed notional to hedge", self.address)
            return False

        state = self.ledger.get_unit_state(self.record_symbol)
        rolls = state['rolls'] + 1
        moves = []
        if state['open'] and state['collateral'] > 0:
            moves.append(Move(state['collateral'], self.base_symbol, self.venue_wallet,
                              self.vault.address, f"{self.address}:close:{rolls}"))
        moves.append(Move(collateral, self.base_symbol, self.vault.address, self.venue_wallet,
                          f"{self.address}:open:{rolls}"))

        size = self.ledger.get_unit(self.base_symbol).round(collateral / price)
        origin = TransactionOrigin(OriginType.STRATEGY, self.address, self.hedge_symbol, "OPEN_SHORT")
        self.ledger.apply(compute_state_update(self.ledger, self.record_symbol, {
            'open': True, 'collateral': collateral, 'size': size,
            'entry_price': price, 'opened_at': self.ledger.current_time, 'rolls': rolls,
        }, origin, moves))
        logger.info("%s short %s %s at %s with %s %s collateral",
                    self.address, size, self.hedge_symbol, price, collateral, self.base_symbol)
        return True

    def get_state(self) -> Dict[str, Any]:
        return self.ledger.get_unit_state(self.record_symbol)

    def __repr__(self) -> str:
        return f"ShortStrategy({self.address}, ratio={self.hedge_ratio})"
