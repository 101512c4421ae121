"""
capability.py - The surface a flight controller sees of a strategy
"""

from enum import Enum
from typing import Any, Dict, Protocol, runtime_checkable


class StrategyKind(Enum):
    ACCUMULATION = "accumulation"
    HEDGE = "hedge"
    REBALANCE = "rebalance"


@runtime_checkable
class StrategyCapability(Protocol):
    """
    What the controller may ask of a strategy.

    execute() reports failure by returning False or raising; either aborts
    the enclosing transition and reverses every ledger change it made.
    """
    address: str

    def validate(self) -> bool:
        """Read-only check that execute() can run now."""
        ...

    def execute(self) -> bool:
        ...

    def get_state(self) -> Dict[str, Any]:
        ...
