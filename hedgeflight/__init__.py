"""
hedgeflight - Phased pooled-treasury flights on a double-entry host ledger

A flight cycles a shared treasury through fixed phases (boarding, take-off,
ascent, peak altitude, descent, landing, terminal). Each phase authorizes a
different kind of fund deployment, and moving on is gated by automation or by
a staking quorum of share holders.

Usage:
    from decimal import Decimal
    from hedgeflight import summon, StrategyKind, LiquidityStrategy

    flight = summon("alpha", admin="admin", automation="keeper",
                    participants=["alice", "bob"], test_mode=True)
    lp = LiquidityStrategy(flight.ledger, flight.vault, flight.controller,
                           "lp", "lp_pool", "USDC", automation="keeper")
    flight.controller.set_strategy("admin", StrategyKind.ACCUMULATION, lp)

    flight.controller.start_boarding("admin", Decimal("1000"))
    flight.boarding.contribute("alice", Decimal("600"))
    flight.boarding.contribute("bob", Decimal("400"))   # launches
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    compute_state_update,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    Phase,
    is_legal_transition,
    LedgerError,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    TransactionRejected,
    FlightError,
    AuthorizationError,
    OrderingError,
    PreconditionError,
    DelegationFailure,
    StaleDataError,
    non_transferable_rule,
    token,
    control_unit,
    SYSTEM_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_SHARES,
    UNIT_TYPE_REWARD,
    UNIT_TYPE_FLIGHT,
    UNIT_TYPE_VAULT,
    UNIT_TYPE_STRATEGY,
)

# Ledger
from .ledger import Ledger

# Configuration
from .config import FlightConfig, DEFAULT_STAKING_PHASES

# Membership
from .membership import Membership, compute_mint, compute_burn

# Custody
from .vault import Vault, VaultCall, Operation

# Events
from .events import EventKind, FlightEvent, EventLog

# Pricing and valuation
from .pricing_source import (
    PricingSource,
    StaticPricingSource,
    TimeSeriesPricingSource,
    fresh_price,
)
from .nav import NAVCalculator

# Flight components
from .staking import StakeTracker
from .boarding import BoardingLedger
from .flight import FlightController
from .rewards import RewardsDistributor
from .summoner import Flight, summon

# Strategies
from .strategies import (
    StrategyKind,
    StrategyCapability,
    LiquidityStrategy,
    ShortStrategy,
    RebalanceStrategy,
)


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType',
    'build_transaction', 'compute_state_update', 'empty_pending_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult',
    'Phase', 'is_legal_transition',
    'non_transferable_rule', 'token', 'control_unit',
    'SYSTEM_WALLET',
    'UNIT_TYPE_CASH', 'UNIT_TYPE_SHARES', 'UNIT_TYPE_REWARD',
    'UNIT_TYPE_FLIGHT', 'UNIT_TYPE_VAULT', 'UNIT_TYPE_STRATEGY',

    # Exceptions
    'LedgerError',
    'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'TransactionRejected',
    'FlightError', 'AuthorizationError', 'OrderingError',
    'PreconditionError', 'DelegationFailure', 'StaleDataError',

    # Ledger
    'Ledger',

    # Configuration
    'FlightConfig', 'DEFAULT_STAKING_PHASES',

    # Membership and custody
    'Membership', 'compute_mint', 'compute_burn',
    'Vault', 'VaultCall', 'Operation',

    # Events
    'EventKind', 'FlightEvent', 'EventLog',

    # Pricing
    'PricingSource', 'StaticPricingSource', 'TimeSeriesPricingSource',
    'fresh_price', 'NAVCalculator',

    # Flight
    'StakeTracker', 'BoardingLedger', 'FlightController',
    'RewardsDistributor', 'Flight', 'summon',

    # Strategies
    'StrategyKind', 'StrategyCapability',
    'LiquidityStrategy', 'ShortStrategy', 'RebalanceStrategy',
]

__version__ = '1.0.0'
