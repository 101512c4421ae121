"""
ledger.py - Stateful Double-Entry Host Ledger

The Ledger class is the central state store for a flight. Every balance and
every piece of durable component state (flight record, vault flags, strategy
positions) lives here, and it is the only object that mutates them.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Provides atomic() scopes so a multi-transaction operation (a phase
      transition with its delegated side effects) commits or unwinds as one
    - Defers commit hooks (event publication) until the outermost scope commits
    - Tracks logical time and reconstructs history (clone_at)
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, TransferRuleViolation, TransactionRejected,
    UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state,
)


class Ledger:
    """
    Double-entry host ledger with full validation, audit trail and rollback.

    Design Principles:
        - Always validates: every transaction is checked against balance
          constraints, transfer rules, and timestamp requirements.
        - Always logs: every applied transaction is recorded in the audit
          trail, which is what atomic() unwinds and clone_at() rewinds.

    Thread Safety:
        Not thread-safe. Calls are serialized, one operation at a time.

    Example:
        ledger = Ledger("flight")
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        ledger.register_wallet("vault")

        with ledger.atomic():
            ledger.apply(build_transaction(ledger, [
                Move(Decimal("100"), "USDC", "alice", "vault", "deposit:1")
            ]))
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = False,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print a trace of executed and rejected transactions
            test_mode: Enable test mode to allow set_balance() calls
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index unit -> {wallet -> quantity} for O(1) position lookups
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        # Open atomic() scopes and the hooks waiting for the outermost commit
        self._atomic_depth: int = 0
        self._commit_hooks: List[Callable[[], None]] = []

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        state = self.units[unit_symbol].state
        return copy.deepcopy(state) if state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all non-zero balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return {u: q for u, q in self.balances[wallet_id].items() if abs(q) > self.POSITION_EPSILON}

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of a unit across all wallets, SYSTEM_WALLET included.

        Issuance debits SYSTEM_WALLET, so for an issued token this is always
        zero; the outstanding amount is -get_balance(SYSTEM_WALLET, symbol).
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("1e-9")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        Returns:
            Dict with keys 'valid', 'supplies' and 'discrepancies'.
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    @property
    def sequence(self) -> int:
        """
        Sequence number the next applied transaction will receive.

        Components fold it into contract ids so that two identical movements
        (two equal stakes by one account) hash to different intents.
        """
        return self._next_sequence

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def ensure_wallet(self, wallet_id: str) -> str:
        """Register a wallet unless it already exists."""
        if wallet_id not in self.registered_wallets:
            self.register_wallet(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset or control record) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a wallet's balance directly. Only available in test mode.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and apply() to modify balances."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves and state changes succeed together or not at all.
        Execution is idempotent: a pending transaction with the same intent_id
        will not be applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        result, _ = self._execute(pending)
        return result

    def apply(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Execute a PendingTransaction and raise if it was not applied.

        Components use this inside atomic() scopes so a rejected movement
        aborts the whole operation instead of returning a status.

        Returns:
            The logged Transaction, or None for an empty pending transaction.

        Raises:
            TransactionRejected: If validation failed or the intent was
                already applied.
        """
        result, reason = self._execute(pending)
        if result == ExecuteResult.REJECTED:
            raise TransactionRejected(reason)
        if result == ExecuteResult.ALREADY_APPLIED:
            raise TransactionRejected(f"intent {pending.intent_id} already applied")
        if pending.is_empty():
            return None
        return self.transaction_log[-1]

    def _execute(self, pending: PendingTransaction) -> Tuple[ExecuteResult, str]:
        if pending.is_empty():
            return ExecuteResult.APPLIED, ""

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED, "already applied"

        # Units are registered for validation and removed again on rejection.
        newly_registered_units: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol not in self.units:
                self.units[unit.symbol] = unit
                newly_registered_units.append(unit.symbol)

        valid, reason = self._validate_pending(pending)
        if not valid:
            for sym in newly_registered_units:
                del self.units[sym]
            if self.verbose:
                print(f"REJECTED: {reason}")
            return ExecuteResult.REJECTED, reason

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)

        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(tx.describe())
        return ExecuteResult.APPLIED, ""

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Transfer rule enforcement
        4. Balance constraint validation (min/max balance limits)
        5. State changes target registered units
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return False, str(e)

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"state change for unregistered unit: {sc.unit}"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt: it is the issuance counterparty.
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue

            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> {wallet -> quantity} index in sync; dust is dropped."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # ATOMIC SCOPES
    # ========================================================================

    @contextmanager
    def atomic(self) -> Iterator['Ledger']:
        """
        Group several transactions into one all-or-nothing operation.

        Any exception raised inside the block reverses every transaction the
        block applied (moves, state changes, created units, intent ids) and
        discards the commit hooks it registered, then re-raises. Scopes nest;
        hooks only run once the outermost scope exits cleanly.

        Example:
            with ledger.atomic():
                ledger.apply(disable_redemption)
                if not strategy.execute():
                    raise DelegationFailure("strategy failed")
        """
        log_mark = len(self.transaction_log)
        hook_mark = len(self._commit_hooks)
        self._atomic_depth += 1
        try:
            yield self
        except BaseException:
            self._atomic_depth -= 1
            self._unwind_to(log_mark)
            del self._commit_hooks[hook_mark:]
            raise
        self._atomic_depth -= 1
        if self._atomic_depth == 0:
            hooks, self._commit_hooks = self._commit_hooks, []
            failure = None
            for hook in hooks:
                try:
                    hook()
                except Exception as e:
                    # Every hook of a committed scope runs; the first failure is re-raised
                    if failure is None:
                        failure = e
            if failure is not None:
                raise failure

    def on_commit(self, hook: Callable[[], None]) -> None:
        """Run hook after the outermost atomic() scope commits, or now if none is open."""
        if self._atomic_depth == 0:
            hook()
        else:
            self._commit_hooks.append(hook)

    @property
    def in_atomic(self) -> bool:
        return self._atomic_depth > 0

    def _unwind_to(self, log_mark: int) -> None:
        """Reverse and forget every transaction logged after position log_mark."""
        while len(self.transaction_log) > log_mark:
            tx = self.transaction_log.pop()
            self._reverse_transaction(tx)
            self.seen_intent_ids.discard(tx.intent_id)
        self._next_sequence = len(self.transaction_log)

    def _reverse_transaction(self, tx: Transaction) -> None:
        """Undo one transaction's moves, state changes and unit creation in place."""
        for move in tx.moves:
            unit = self.units.get(move.unit_symbol)
            if unit is None:
                raise LedgerError(f"Cannot unwind: unit {move.unit_symbol} not found")
            new_src = unit.round(self.balances[move.source][move.unit_symbol] + move.quantity)
            new_dst = unit.round(self.balances[move.dest][move.unit_symbol] - move.quantity)
            self.balances[move.source][move.unit_symbol] = new_src
            self.balances[move.dest][move.unit_symbol] = new_dst
            self._update_position_index(move.source, move.unit_symbol, new_src)
            self._update_position_index(move.dest, move.unit_symbol, new_dst)

        for sc in reversed(tx.state_changes):
            if sc.unit in self.units:
                restored = copy.deepcopy(sc.old_state if isinstance(sc.old_state, dict) else {})
                self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(restored))

        for unit in tx.units_to_create:
            self.units.pop(unit.symbol, None)
            for wallet in self.registered_wallets:
                self.balances[wallet].pop(unit.symbol, None)
            self._positions_by_unit.pop(unit.symbol, None)

    # ========================================================================
    # HISTORY
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a fully independent deep copy of this ledger.

        Open atomic scopes and pending commit hooks are not copied.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned._atomic_depth = 0
        cloned._commit_hooks = []

        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }

        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned

    def clone_at(self, target_time: datetime) -> Ledger:
        """
        Reconstruct the ledger as it existed at a past time.

        Clones the current state and reverses, newest first, every transaction
        executed after target_time. This is how an indexer recovers the flight
        record (phase, cycle, timestamps) at any historical instant.

        Raises:
            ValueError: If target_time is in the future
        """
        if target_time > self._current_time:
            raise ValueError(f"Target time {target_time} is in the future")

        cloned = self.clone()
        cloned._current_time = target_time

        keep = 0
        for idx, tx in enumerate(self.transaction_log):
            if tx.execution_time <= target_time:
                keep = idx + 1
        cloned._unwind_to(keep)
        return cloned
