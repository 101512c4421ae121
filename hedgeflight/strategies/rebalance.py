"""
rebalance.py - Rebalance strategy

Brings the vault back to target portfolio weights on Descent -> Landing.
Current weights are computed from fresh prices; every non-base asset whose
weight drifts beyond the tolerance is traded against the market wallet, paid
for in the base asset.

Weight arithmetic runs in numpy floats; quantities go back to Decimal and are
rounded to each unit's precision before they touch the ledger. Price freshness
follows the flight's price_max_age unless max_age is given.
"""

from __future__ import annotations
from datetime import timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional
import logging

import numpy as np

from ..core import (
    Move, TransactionOrigin, OriginType, UNIT_TYPE_STRATEGY,
    compute_state_update, control_unit,
)
from ..ledger import Ledger
from ..pricing_source import PricingSource, fresh_price
from ..vault import Vault

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = Decimal("0.000001")


def compute_drift(values: np.ndarray, targets: np.ndarray) -> np.ndarray:
    """Target minus current weight for each asset. All-zero values give the targets."""
    total = values.sum()
    if total <= 0:
        return targets.copy()
    return targets - values / total


class RebalanceStrategy:

    def __init__(
        self,
        ledger: Ledger,
        vault: Vault,
        pricing_source: PricingSource,
        address: str,
        market_wallet: str,
        base_symbol: str,
        target_weights: Dict[str, Decimal],
        drift_tolerance: Decimal = Decimal("0.01"),
        max_age: Optional[timedelta] = None,
    ):
        weights = {k: Decimal(str(v)) for k, v in target_weights.items()}
        if base_symbol not in weights:
            raise ValueError(f"Target weights must include the base asset {base_symbol}")
        if any(w < 0 for w in weights.values()):
            raise ValueError("Target weights cannot be negative")
        if abs(sum(weights.values()) - Decimal("1")) > WEIGHT_TOLERANCE:
            raise ValueError(f"Target weights must sum to 1, got {sum(weights.values())}")
        self.ledger = ledger
        self.vault = vault
        self.pricing_source = pricing_source
        self.address = address
        self.market_wallet = market_wallet
        self.base_symbol = base_symbol
        self.target_weights = weights
        self.drift_tolerance = Decimal(str(drift_tolerance))
        self.max_age = max_age
        self.record_symbol = f"{address}_STATE"
        # Base asset last so trades settle against it
        self.symbols: List[str] = sorted(s for s in weights if s != base_symbol) + [base_symbol]

        ledger.ensure_wallet(address)
        ledger.ensure_wallet(market_wallet)
        ledger.register_unit(control_unit(
            self.record_symbol, f"{address} rebalance record", UNIT_TYPE_STRATEGY,
            {'rebalances': 0, 'last_rebalanced': None, 'last_weights': {}},
        ))

    def _prices(self) -> List[Decimal]:
        now = self.ledger.current_time
        return [
            Decimal("1") if s == self.base_symbol else fresh_price(self.pricing_source, s, now, self.max_age)
            for s in self.symbols
        ]

    def current_weights(self) -> Dict[str, Decimal]:
        """
        Raises:
            StaleDataError: If any target asset lacks a fresh price
        """
        prices = self._prices()
        values = np.array([
            float(self.ledger.get_balance(self.vault.address, s) * p)
            for s, p in zip(self.symbols, prices)
        ])
        total = values.sum()
        weights = values / total if total > 0 else np.zeros(len(values))
        return {s: Decimal(str(round(float(w), 12))) for s, w in zip(self.symbols, weights)}

    def validate(self) -> bool:
        return all(s in self.ledger.units for s in self.symbols) and bool(self.vault.holdings())

    def execute(self) -> bool:
        """
        Trade the vault to its target weights.

        Raises:
            StaleDataError: If any target asset lacks a fresh price
        """
        prices = self._prices()
        quantities = [self.ledger.get_balance(self.vault.address, s) for s in self.symbols]
        values = np.array([float(q * p) for q, p in zip(quantities, prices)])
        total = float(values.sum())
        if total <= 0:
            logger.warning("%s: vault holds nothing to rebalance", self.address)
            return False

        targets = np.array([float(self.target_weights[s]) for s in self.symbols])
        drift = compute_drift(values, targets)

        state = self.ledger.get_unit_state(self.record_symbol)
        count = state['rebalances'] + 1
        base_unit = self.ledger.get_unit(self.base_symbol)
        moves = []
        for symbol, price, d in zip(self.symbols[:-1], prices[:-1], drift[:-1]):
            if abs(Decimal(str(float(d)))) <= self.drift_tolerance:
                continue
            unit = self.ledger.get_unit(symbol)
            trade_value = Decimal(str(abs(float(d)) * total))
            qty = unit.round(trade_value / price, ROUND_DOWN)
            if qty <= 0:
                continue
            cash = base_unit.round(qty * price)
            if cash <= 0:
                continue
            tag = f"{self.address}:{count}:{symbol}"
            if d > 0:
                moves.append(Move(cash, self.base_symbol, self.vault.address, self.market_wallet, f"{tag}:pay"))
                moves.append(Move(qty, symbol, self.market_wallet, self.vault.address, f"{tag}:buy"))
            else:
                moves.append(Move(qty, symbol, self.vault.address, self.market_wallet, f"{tag}:sell"))
                moves.append(Move(cash, self.base_symbol, self.market_wallet, self.vault.address, f"{tag}:receive"))

        origin = TransactionOrigin(OriginType.STRATEGY, self.address, self.base_symbol, "REBALANCE")
        self.ledger.apply(compute_state_update(self.ledger, self.record_symbol, {
            'rebalances': count,
            'last_rebalanced': self.ledger.current_time,
            'last_weights': {s: str(w) for s, w in zip(self.symbols, targets - drift)},
        }, origin, moves))
        logger.info("%s rebalanced with %d trades", self.address, len(moves) // 2)
        return True

    def get_state(self) -> Dict[str, Any]:
        state = self.ledger.get_unit_state(self.record_symbol)
        state['target_weights'] = dict(self.target_weights)
        return state

    def __repr__(self) -> str:
        return f"RebalanceStrategy({self.address}, targets={self.target_weights})"
