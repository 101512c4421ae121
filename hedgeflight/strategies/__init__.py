"""
strategies - Fund deployment strategies driven by the flight controller

The controller knows strategies only through StrategyCapability. The three
reference strategies move balances between wallets on the host ledger:

- LiquidityStrategy (accumulation): deploys vault funds into a pool wallet
- ShortStrategy (hedge): posts collateral for a short position
- RebalanceStrategy: trades the vault back to target weights
"""

from .capability import StrategyKind, StrategyCapability
from .liquidity import LiquidityStrategy
from .short import ShortStrategy
from .rebalance import RebalanceStrategy

__all__ = [
    'StrategyKind',
    'StrategyCapability',
    'LiquidityStrategy',
    'ShortStrategy',
    'RebalanceStrategy',
]
