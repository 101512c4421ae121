"""
flight.py - Flight State Machine

The FlightController is the only component that changes the phase of a
flight. Boarding and staking raise conditions; the controller checks who is
calling, that the transition is legal, and that its preconditions hold, then
performs the transition and its delegated side effects (custody calls and
strategy execution) inside one Ledger.atomic() scope.

Phase order:

    BOARDING -> TAKEOFF -> ASCENT -> PEAK_ALTITUDE -> DESCENT -> LANDING -> TERMINAL
                   ^                                                          |
                   +------------------------- new cycle ----------------------+

Who may trigger what:

    check_boarding        anyone           BOARDING -> TAKEOFF
    confirm_ascent        automation       TAKEOFF -> ASCENT
    advance_on_quorum     stake tracker    ASCENT -> PEAK_ALTITUDE,
                                           DESCENT -> LANDING,
                                           TERMINAL -> TAKEOFF
    on_unwind_complete    accumulation     PEAK_ALTITUDE -> DESCENT
    confirm_descent       automation       (records a timestamp)
    enter_terminal        share holder     LANDING -> TERMINAL
    start_boarding        admin
    set_strategy          admin

Every check runs in the order authorization, ordering, preconditions,
delegation. The durable flight record is the state of the FLIGHT control unit.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Dict, List, Optional
import logging

from .core import (
    Phase, TransactionOrigin, OriginType, UNIT_TYPE_FLIGHT,
    LedgerError, FlightError, AuthorizationError, OrderingError,
    PreconditionError, DelegationFailure,
    is_legal_transition, compute_state_update, control_unit,
)
from .config import FlightConfig
from .events import EventKind, EventLog, FlightEvent, Listener
from .ledger import Ledger
from .membership import Membership
from .staking import StakeTracker
from .boarding import BoardingLedger
from .strategies.capability import StrategyKind, StrategyCapability
from .vault import Vault, VaultCall, Operation

logger = logging.getLogger(__name__)

# Phases whose stake record gates leaving them
STAKE_GATED_EXITS = (Phase.ASCENT, Phase.DESCENT, Phase.LANDING, Phase.TERMINAL)


def _rejections_logged(op: Callable) -> Callable:
    @wraps(op)
    def wrapper(self, caller, *args, **kwargs):
        try:
            return op(self, caller, *args, **kwargs)
        except FlightError as e:
            logger.warning("%s by %s rejected: %s: %s", op.__name__, caller, type(e).__name__, e)
            raise
    return wrapper


class FlightController:
    """
    The flight state machine.

    Owns the phase, the cycle, the boarding window and the terminal window,
    and composes the StakeTracker and BoardingLedger that feed it.

    Example:
        controller = FlightController(ledger, "alpha", vault, membership,
                                      base_symbol="USDC", admin="admin",
                                      automation="keeper")
        controller.set_strategy("admin", StrategyKind.ACCUMULATION, lp)
        controller.start_boarding("admin", Decimal("1000"))
        controller.boarding.contribute("alice", Decimal("1000"))  # launches
        controller.phase  # Phase.TAKEOFF
    """

    def __init__(
        self,
        ledger: Ledger,
        name: str,
        vault: Vault,
        membership: Membership,
        base_symbol: str,
        admin: str,
        automation: str,
        config: Optional[FlightConfig] = None,
        address: str = "controller",
        record_symbol: str = "FLIGHT",
        tracker_address: str = "stake_tracker",
        boarding_address: str = "boarding",
    ):
        self.ledger = ledger
        self.name = name
        self.vault = vault
        self.membership = membership
        self.base_symbol = base_symbol
        self.admin = admin
        self.automation = automation
        self.config = config or FlightConfig()
        self.address = address
        self.record_symbol = record_symbol
        self._strategies: Dict[StrategyKind, StrategyCapability] = {}
        self._events = EventLog()

        ledger.ensure_wallet(address)
        now = ledger.current_time
        ledger.register_unit(control_unit(record_symbol, f"{name} flight record", UNIT_TYPE_FLIGHT, {
            'phase': Phase.BOARDING,
            'cycle': 1,
            'cycle_started': {'1': now},
            'phase_entered': now,
            'boarding': None,
            'terminal_entered': None,
            'descent_confirmed': None,
            'strategies': {},
        }))

        self.stakes = StakeTracker(self, tracker_address, f"{record_symbol}_STAKES")
        self.boarding = BoardingLedger(self, boarding_address, f"{record_symbol}_BOARDING")

    # ========================================================================
    # FLIGHT RECORD
    # ========================================================================

    def record(self) -> Dict[str, Any]:
        return self.ledger.get_unit_state(self.record_symbol)

    @property
    def phase(self) -> Phase:
        return self.record()['phase']

    @property
    def cycle(self) -> int:
        return self.record()['cycle']

    @property
    def boarding_window(self) -> Optional[Dict[str, Any]]:
        return self.record()['boarding']

    @property
    def terminal_entered(self) -> Optional[datetime]:
        return self.record()['terminal_entered']

    @property
    def descent_confirmed(self) -> Optional[datetime]:
        return self.record()['descent_confirmed']

    def cycle_started(self, cycle: Optional[int] = None) -> datetime:
        cycle = self.cycle if cycle is None else cycle
        return self.record()['cycle_started'][str(cycle)]

    def forced_launch_floor(self) -> Decimal:
        window = self.boarding_window
        if not window:
            return Decimal("0")
        return window['target'] * self.config.forced_launch_pct / Decimal("100")

    def strategy(self, kind: StrategyKind) -> Optional[StrategyCapability]:
        return self._strategies.get(kind)

    def _write(self, updates: Dict[str, Any], caller: str, event_type: str) -> None:
        origin = TransactionOrigin(OriginType.CONTROLLER, caller, self.record_symbol, event_type)
        self.ledger.apply(compute_state_update(self.ledger, self.record_symbol, updates, origin))

    # ========================================================================
    # EVENTS
    # ========================================================================

    @property
    def events(self) -> List[FlightEvent]:
        return self._events.events

    def subscribe(self, listener: Listener) -> None:
        self._events.subscribe(listener)

    def _emit(self, kind: EventKind, **details) -> None:
        """Queue an event stamped with the current record; published on commit."""
        event = FlightEvent(kind, self.phase, self.cycle, self.ledger.current_time, details)
        self.ledger.on_commit(lambda: self._events.publish(event))

    # ========================================================================
    # CHECKS
    # ========================================================================

    def _require_transition(self, target: Phase) -> Phase:
        current = self.phase
        if not is_legal_transition(current, target):
            raise OrderingError(f"Cannot move from {current.value} to {target.value}")
        return current

    def _require_strategy(self, kind: StrategyKind) -> StrategyCapability:
        strategy = self._strategies.get(kind)
        if strategy is None:
            raise PreconditionError(f"No {kind.value} strategy configured")
        if not strategy.validate():
            raise PreconditionError(f"{kind.value} strategy {strategy.address} failed validation")
        return strategy

    def _require_quorum(self, phase: Phase) -> Decimal:
        quorum = self.stakes.quorum_percent(phase)
        threshold = self.config.quorum_threshold(phase)
        if quorum < threshold:
            raise PreconditionError(f"{phase.value} quorum {quorum:.2f}% is below {threshold}%")
        return quorum

    # ========================================================================
    # DELEGATION
    # ========================================================================

    def _run_strategy(self, kind: StrategyKind, strategy: StrategyCapability) -> None:
        try:
            ok = strategy.execute()
        except FlightError:
            raise
        except LedgerError as e:
            raise DelegationFailure(f"{kind.value} strategy {strategy.address} was rejected: {e}") from e
        if not ok:
            raise DelegationFailure(f"{kind.value} strategy {strategy.address} failed")

    def _set_redemption(self, enabled: bool) -> None:
        payload = VaultCall.ENABLE_REDEMPTION if enabled else VaultCall.DISABLE_REDEMPTION
        try:
            ok = self.vault.execute(self.address, self.vault.address, Decimal("0"), payload, Operation.CALL)
        except LedgerError as e:
            raise DelegationFailure(f"vault refused {payload.value}: {e}") from e
        if not ok:
            raise DelegationFailure(f"vault refused {payload.value}")

    def _enter(self, current: Phase, target: Phase, updates: Dict[str, Any], caller: str) -> None:
        """Write the phase change, clearing the stake record of the phase left behind."""
        if current in STAKE_GATED_EXITS:
            self.stakes.clear(current, self.address)
        changes = {'phase': target, 'phase_entered': self.ledger.current_time}
        changes.update(updates)
        self._write(changes, caller, target.name)
        self._emit(EventKind.PHASE_CHANGED, previous=current.value, caller=caller)
        cycle = self.cycle
        self.ledger.on_commit(lambda: logger.info(
            "%s: %s -> %s (cycle %d, by %s)", self.name, current.value, target.value, cycle, caller,
        ))

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    @_rejections_logged
    def start_boarding(self, caller: str, target: Decimal) -> None:
        """
        Open the boarding window. It can be opened only once.

        Raises:
            AuthorizationError: If caller is not the administrator
            OrderingError: If the flight has left BOARDING
            PreconditionError: If the window was already opened
            ValueError: If target is not positive
        """
        if caller != self.admin:
            raise AuthorizationError(f"{caller} cannot start boarding")
        if self.phase is not Phase.BOARDING:
            raise OrderingError(f"Boarding cannot start during {self.phase.value}")
        if self.boarding_window is not None:
            raise PreconditionError("Boarding window was already opened")
        target = Decimal(str(target))
        if target <= 0:
            raise ValueError(f"Boarding target must be positive, got {target}")

        now = self.ledger.current_time
        with self.ledger.atomic():
            self._write({'boarding': {
                'start': now,
                'deadline': now + self.config.boarding_duration,
                'target': target,
                'success': False,
                'launch': None,
            }}, caller, "START_BOARDING")
            self._emit(EventKind.BOARDING_STARTED, target=target)
        logger.info("%s: boarding open until %s, target %s", self.name, now + self.config.boarding_duration, target)

    @_rejections_logged
    def set_strategy(self, caller: str, kind: StrategyKind, strategy: StrategyCapability) -> None:
        """
        A strategy that reads prices and was built without its own max_age
        takes the flight's price_max_age.

        Raises:
            AuthorizationError: If caller is not the administrator
            ValueError: If kind is unknown or strategy is None or incomplete
        """
        if caller != self.admin:
            raise AuthorizationError(f"{caller} cannot set strategies")
        if not isinstance(kind, StrategyKind):
            raise ValueError(f"Unknown strategy kind: {kind!r}")
        if strategy is None:
            raise ValueError("Strategy cannot be None")
        if not isinstance(strategy, StrategyCapability):
            raise ValueError(f"{strategy!r} does not provide validate/execute/get_state")

        strategies = dict(self.record()['strategies'])
        strategies[kind.value] = strategy.address
        with self.ledger.atomic():
            self._write({'strategies': strategies}, caller, "SET_STRATEGY")
            self._emit(EventKind.STRATEGY_SET, strategy_kind=kind.value, address=strategy.address)
        if hasattr(strategy, 'max_age') and strategy.max_age is None:
            strategy.max_age = self.config.price_max_age
        self._strategies[kind] = strategy
        logger.info("%s: %s strategy set to %s", self.name, kind.value, strategy.address)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    @_rejections_logged
    def check_boarding(self, caller: str) -> bool:
        """
        Launch if the boarding target is met, or force-launch after expiry.

        Returns:
            True if the flight launched, False if neither condition holds yet.
        """
        current = self._require_transition(Phase.TAKEOFF)
        window = self.boarding_window
        if window is None:
            raise PreconditionError("Boarding has not started")
        if self.boarding.is_failed():
            return False

        raised = self.boarding.total_raised()
        expired = self.ledger.current_time >= window['deadline']
        if raised >= window['target']:
            launch = EventKind.BOARDING_SUCCEEDED
        elif expired and raised >= self.forced_launch_floor():
            launch = EventKind.FORCED_LAUNCH
        else:
            return False

        accumulation = self._require_strategy(StrategyKind.ACCUMULATION)

        with self.ledger.atomic():
            self.boarding.finalize(self.address)
            self._set_redemption(False)
            self._enter(current, Phase.TAKEOFF, {
                'boarding': dict(window, success=True, launch=launch.value),
            }, caller)
            self._emit(launch, raised=raised, target=window['target'])
            self._run_strategy(StrategyKind.ACCUMULATION, accumulation)
        return True

    @_rejections_logged
    def confirm_ascent(self, caller: str) -> None:
        if caller != self.automation:
            raise AuthorizationError(f"{caller} cannot confirm ascent")
        current = self._require_transition(Phase.ASCENT)
        with self.ledger.atomic():
            self._enter(current, Phase.ASCENT, {}, caller)

    @_rejections_logged
    def advance_on_quorum(self, caller: str, phase: Phase) -> bool:
        """
        Advance past a quorum-gated phase. Only the stake tracker may call.

        ASCENT -> PEAK_ALTITUDE runs the accumulation strategy (begin unwind),
        DESCENT -> LANDING runs the rebalance strategy, and TERMINAL -> TAKEOFF
        starts a new cycle after the cooldown and redeploys.

        Raises:
            AuthorizationError: If caller is not the stake tracker
            ValueError: If phase does not advance on quorum
            OrderingError: If phase is not the current phase
            PreconditionError: If quorum, cooldown, or strategy checks fail
            DelegationFailure: If the vault or a strategy fails
        """
        if caller != self.stakes.address:
            raise AuthorizationError(f"{caller} is not the stake tracker")
        targets = {
            Phase.ASCENT: (Phase.PEAK_ALTITUDE, StrategyKind.ACCUMULATION),
            Phase.DESCENT: (Phase.LANDING, StrategyKind.REBALANCE),
            Phase.TERMINAL: (Phase.TAKEOFF, StrategyKind.ACCUMULATION),
        }
        if phase not in targets:
            raise ValueError(f"{phase} does not advance on quorum")
        if phase is not self.phase:
            raise OrderingError(f"Quorum signal for {phase.value} during {self.phase.value}")
        target, kind = targets[phase]
        current = self._require_transition(target)

        self._require_quorum(phase)
        if phase is Phase.TERMINAL:
            ready_at = self.terminal_entered + self.config.terminal_cooldown
            if self.ledger.current_time < ready_at:
                raise PreconditionError(f"Terminal cooldown runs until {ready_at}")
        strategy = self._require_strategy(kind)

        with self.ledger.atomic():
            if phase is Phase.TERMINAL:
                self._set_redemption(False)
                cycle = self.cycle + 1
                started = dict(self.record()['cycle_started'])
                started[str(cycle)] = self.ledger.current_time
                self._enter(current, target, {
                    'cycle': cycle,
                    'cycle_started': started,
                    'terminal_entered': None,
                    'descent_confirmed': None,
                }, caller)
                self._emit(EventKind.NEW_CYCLE, previous_cycle=cycle - 1)
            else:
                self._enter(current, target, {}, caller)
            self._run_strategy(kind, strategy)
        return True

    @_rejections_logged
    def on_unwind_complete(self, caller: str) -> None:
        """PEAK_ALTITUDE -> DESCENT; only the accumulation strategy may call."""
        accumulation = self._strategies.get(StrategyKind.ACCUMULATION)
        if accumulation is None or caller != accumulation.address:
            raise AuthorizationError(f"{caller} is not the accumulation strategy")
        current = self._require_transition(Phase.DESCENT)
        hedge = self._require_strategy(StrategyKind.HEDGE)

        with self.ledger.atomic():
            self._enter(current, Phase.DESCENT, {}, caller)
            self._run_strategy(StrategyKind.HEDGE, hedge)

    @_rejections_logged
    def confirm_descent(self, caller: str) -> None:
        """Record automation's confirmation of the descent. The phase does not change."""
        if caller != self.automation:
            raise AuthorizationError(f"{caller} cannot confirm descent")
        if self.phase is not Phase.DESCENT:
            raise OrderingError(f"Descent cannot be confirmed during {self.phase.value}")
        if self.descent_confirmed is not None:
            raise PreconditionError("Descent already confirmed")
        with self.ledger.atomic():
            self._write({'descent_confirmed': self.ledger.current_time}, caller, "CONFIRM_DESCENT")
            self._emit(EventKind.DESCENT_CONFIRMED, caller=caller)

    @_rejections_logged
    def enter_terminal(self, caller: str) -> None:
        """
        LANDING -> TERMINAL; any share holder may call once the landing
        quorum is met. Opens redemption.
        """
        held = self.membership.balance_of(caller) + self.stakes.stake_of(caller, self.phase)
        if held <= 0:
            raise AuthorizationError(f"{caller} holds no shares")
        current = self._require_transition(Phase.TERMINAL)
        self._require_quorum(Phase.LANDING)

        with self.ledger.atomic():
            self._enter(current, Phase.TERMINAL, {'terminal_entered': self.ledger.current_time}, caller)
            self._set_redemption(True)
            self._emit(EventKind.TERMINAL_ENTERED, caller=caller)

    # ========================================================================
    # OBSERVABILITY
    # ========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict view of the flight for dashboards and logs."""
        record = self.record()
        return {
            'name': self.name,
            'phase': record['phase'].value,
            'cycle': record['cycle'],
            'cycle_started': record['cycle_started'],
            'phase_entered': record['phase_entered'],
            'boarding': record['boarding'],
            'raised': self.boarding.total_raised(),
            'terminal_entered': record['terminal_entered'],
            'descent_confirmed': record['descent_confirmed'],
            'quorum': {
                p.value: self.stakes.quorum_percent(p)
                for p in sorted(self.config.staking_phases, key=lambda p: p.ordinal)
            },
            'redemption_enabled': self.vault.redemption_enabled,
            'total_supply': self.membership.total_supply(),
            'strategies': {
                kind.value: {'address': s.address, 'state': s.get_state()}
                for kind, s in self._strategies.items()
            },
        }

    def __repr__(self) -> str:
        return f"FlightController({self.name}, {self.phase.value}, cycle={self.cycle})"
