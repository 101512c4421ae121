"""
events.py - Flight event records and the in-process event log

Events are published only after the ledger scope that produced them commits,
so a rolled-back transition never appears in the log.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from .core import Phase

logger = logging.getLogger(__name__)


class EventKind(Enum):
    PHASE_CHANGED = "phase_changed"
    NEW_CYCLE = "new_cycle"
    BOARDING_STARTED = "boarding_started"
    BOARDING_SUCCEEDED = "boarding_succeeded"
    FORCED_LAUNCH = "forced_launch"
    TERMINAL_ENTERED = "terminal_entered"
    DESCENT_CONFIRMED = "descent_confirmed"
    STRATEGY_SET = "strategy_set"


@dataclass(frozen=True, slots=True)
class FlightEvent:
    """
    A committed flight event.

    Every event carries the phase and cycle the flight was in once the
    operation finished, and the ledger time at which it happened.
    """
    kind: EventKind
    phase: Phase
    cycle: int
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"FlightEvent({self.kind.value}, {self.phase.value}, cycle={self.cycle}, {self.timestamp})"


Listener = Callable[[FlightEvent], None]


class EventLog:
    """
    Append-only history of committed events with synchronous listeners.

    A listener that raises is logged and skipped; the event stays recorded
    and the remaining listeners still see it.
    """

    def __init__(self):
        self._events: List[FlightEvent] = []
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def publish(self, event: FlightEvent) -> None:
        self._events.append(event)
        logger.info("event %s phase=%s cycle=%d", event.kind.value, event.phase.value, event.cycle)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # The operation has already committed; a listener cannot undo it
                logger.exception("listener %r failed on %s", listener, event.kind.value)

    @property
    def events(self) -> List[FlightEvent]:
        return list(self._events)

    def of_kind(self, kind: EventKind, cycle: Optional[int] = None) -> List[FlightEvent]:
        return [
            e for e in self._events
            if e.kind is kind and (cycle is None or e.cycle == cycle)
        ]

    def __len__(self) -> int:
        return len(self._events)
