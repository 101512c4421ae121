"""
Core types and pure functions for the hedgeflight host ledger.

This module provides the foundational data structures shared by every
component of a flight:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError and the flight error taxonomy
4. Type aliases: Positions, BalanceMap, UnitState
5. Transfer rules: pure validation functions for moves
6. Unit factories: token(), control_unit()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Quorum percentages, pro-rata claims and reward splits all need deterministic
# Decimal arithmetic. The global context is configured once at import.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_HOST_DECIMAL_CONTEXT = getcontext()
_HOST_DECIMAL_CONTEXT.prec = 50
_HOST_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and burning.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Unit type constants (strings, not enum).
UNIT_TYPE_CASH = "CASH"
UNIT_TYPE_SHARES = "SHARES"
UNIT_TYPE_REWARD = "REWARD"
UNIT_TYPE_FLIGHT = "FLIGHT"
UNIT_TYPE_VAULT = "VAULT"
UNIT_TYPE_STRATEGY = "STRATEGY"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

DECIMAL_ROUNDING = {
    UNIT_TYPE_CASH: ROUND_HALF_EVEN,
    UNIT_TYPE_SHARES: ROUND_DOWN,
    UNIT_TYPE_REWARD: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Internal state for a unit (flight record, vault flags, strategy position...).
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Components that only need to observe balances (NAV calculation, quorum
    math, strategy validation) accept a LedgerView. The Ledger class
    implements this protocol but also provides mutation methods; for testing,
    FakeView provides a truly immutable implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet (Decimal("0") if none)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def list_units(self) -> List[str]:
        """Return the sorted symbols of all registered units."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    ALREADY_APPLIED: Transaction intent was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated, for the audit trail."""
    USER_ACTION = "user_action"           # Contribution, stake, refund, ragequit
    CONTROLLER = "controller"             # Flight state machine transition
    MODULE = "module"                     # Delegated execution through the vault
    STRATEGY = "strategy"                 # Strategy fund movement
    SYSTEM = "system"                     # Issuance, initial setup


class Phase(Enum):
    """
    Operating phase of a flight, in strict linear order.

    The only non-linear edge is TERMINAL -> TAKEOFF, which starts a new cycle.
    """
    BOARDING = "boarding"
    TAKEOFF = "takeoff"
    ASCENT = "ascent"
    PEAK_ALTITUDE = "peak_altitude"
    DESCENT = "descent"
    LANDING = "landing"
    TERMINAL = "terminal"

    @property
    def ordinal(self) -> int:
        return _PHASE_ORDER.index(self)

    def successor(self) -> Optional['Phase']:
        """The next phase in linear order, or None for TERMINAL."""
        idx = self.ordinal + 1
        return _PHASE_ORDER[idx] if idx < len(_PHASE_ORDER) else None


_PHASE_ORDER: Tuple[Phase, ...] = tuple(Phase)


def is_legal_transition(current: Phase, target: Phase) -> bool:
    """A transition is legal iff it advances one step or takes the loop edge."""
    if current.successor() is target:
        return True
    return current is Phase.TERMINAL and target is Phase.TAKEOFF


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


class TransactionRejected(LedgerError):
    """Raised by Ledger.apply() when a pending transaction fails validation."""
    pass


class FlightError(LedgerError):
    """Base exception for flight gating and authorization failures."""
    pass


class AuthorizationError(FlightError):
    """Wrong caller class for the attempted operation."""
    pass


class OrderingError(FlightError):
    """Requested transition does not satisfy the phase legality rule."""
    pass


class PreconditionError(FlightError):
    """A phase-specific gate is not met (quorum, window, raise, cooldown...)."""
    pass


class DelegationFailure(FlightError):
    """A downstream custody or strategy call returned failure."""
    pass


class StaleDataError(FlightError):
    """An oracle reading is missing, stale, or non-positive."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Address of the component or account that authored it
        unit_symbol: Symbol of the unit that triggered this (if applicable)
        event_type: Specific event within the source (e.g., "STAKE", "TAKEOFF")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change with complete before/after snapshots.

    The old_state is what makes a change reversible: Ledger.atomic() and
    Ledger.clone_at() restore it when unwinding.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old_value, new_value)} for fields that differ."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        return {
            key: (old.get(key), new.get(key))
            for key in set(old) | set(new)
            if old.get(key) != new.get(key)
        }


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be finite and non-zero).
        unit_symbol: The symbol of the unit being transferred (e.g., "USDC", "HFLT").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
        metadata: Optional additional information about the move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical string for a Decimal: Decimal("1.0") and Decimal("1.00") both give "1"."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Deterministic regardless of dict insertion order or Decimal representation.
    Enum members serialize by their value.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "<" + ",".join(_canonicalize(item) for item in sorted(value, key=str)) + ">"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = ()
) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    Based solely on semantic content (moves, state changes, origin, units to
    create), never on timestamps. Used for idempotency: the same business
    intent is applied at most once. Callers that legitimately repeat an
    identical movement (two equal stakes) must make the contract_id unique.
    """
    sorted_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    )

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        content_parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        content_parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}")

    for m in sorted_moves:
        content_parts.append(
            f"move:{_normalize_decimal(m.quantity)}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}"
        )

    for sc in sorted(state_changes, key=lambda s: s.unit):
        content_parts.append(
            f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}"
        )

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Created by components and submitted to the ledger. intent_id is
    auto-computed from content when not supplied.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.units_to_create
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves, no state deltas, and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state deltas.

    This is the standard way to create transactions. State snapshots are deep
    copied so later mutation by the caller cannot leak into the log.

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USDC", "alice", "boarding", "contribution:1")
        ])
        ledger.apply(tx)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.USER_ACTION,
            source_id="user",
        )

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def compute_state_update(
    view: LedgerView,
    unit_symbol: str,
    updates: UnitState,
    origin: TransactionOrigin,
    moves: Optional[List[Move]] = None,
) -> PendingTransaction:
    """
    Merge updates into a unit's state as an audited transaction.

    Returns an empty pending transaction when nothing would change.
    """
    old_state = view.get_unit_state(unit_symbol)
    new_state = {**old_state, **updates}
    if new_state == old_state and not moves:
        return empty_pending_transaction(view)
    changes = [UnitStateChange(unit_symbol, old_state, new_state)] if new_state != old_state else []
    return build_transaction(view, moves or [], changes, origin=origin)


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """Create an empty PendingTransaction (no moves, no state changes)."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def describe(self) -> str:
        """Multi-line human-readable summary used by the verbose ledger trace."""
        lines = [
            f"Transaction {self.exec_id} [{self.origin}]",
            f"  intent_id : {self.intent_id}",
            f"  executed  : {self.execution_time}",
        ]
        for i, move in enumerate(self.moves):
            lines.append(f"  [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}")
        for sc in self.state_changes:
            for field_name, (old_val, new_val) in sorted(sc.changed_fields().items()):
                lines.append(f"  {sc.unit}.{field_name}: {old_val!r} → {new_val!r}")
        return "\n".join(lines)


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a mutable state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a mutable dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit (asset or control record) in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "USDC", "HFLT", "FLIGHT").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (CASH, SHARES, FLIGHT, VAULT, ...).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
        transfer_rule: Optional function to validate moves involving this unit.
        _frozen_state: Internal frozen state representation (tuple of key-value pairs).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """The unit's state as a new mutable dictionary."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal, rounding: Optional[str] = None) -> Decimal:
        """
        Round a value to this unit's decimal precision.

        The rounding mode defaults to the unit type's (shares and rewards
        round down so that pro-rata payouts never exceed what is held).
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        mode = rounding or DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=mode)


# ============================================================================
# TRANSFER RULES
# ============================================================================

def non_transferable_rule(view: LedgerView, move: Move) -> None:
    """
    Reject every balance movement of a control unit.

    Control units (the flight record, the vault record, strategy positions)
    carry state only; holding them in a wallet has no meaning.
    """
    raise TransferRuleViolation(f"{move.unit_symbol} is a control unit and cannot be moved")


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimal_places: int = 6, unit_type: str = UNIT_TYPE_CASH) -> Unit:
    """
    Create a fungible token with a zero minimum balance.

    Args:
        symbol: Token symbol (e.g., "USDC", "HFLT")
        name: Full name of the token
        decimal_places: Number of decimal places (default: 6)
        unit_type: UNIT_TYPE_CASH for treasury assets, UNIT_TYPE_SHARES for
                   participation rights, UNIT_TYPE_REWARD for reward tokens

    Returns:
        A Unit that can only be overdrawn by SYSTEM_WALLET (issuance).
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
    )


def control_unit(symbol: str, name: str, unit_type: str, state: UnitState) -> Unit:
    """Create a non-transferable unit that carries component state."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        decimal_places=0,
        transfer_rule=non_transferable_rule,
        _frozen_state=_freeze_state(state),
    )
