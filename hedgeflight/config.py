"""
config.py - Immutable flight configuration

All timing windows and quorum thresholds are fixed when a flight is summoned.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import FrozenSet

from .core import Phase


DEFAULT_STAKING_PHASES: FrozenSet[Phase] = frozenset({
    Phase.ASCENT, Phase.DESCENT, Phase.LANDING, Phase.TERMINAL,
})


@dataclass(frozen=True, slots=True)
class FlightConfig:
    """
    Timing and quorum parameters for a flight.

    Attributes:
        boarding_duration: How long the boarding window stays open
        forced_launch_pct: Percent of target that launches anyway after expiry
        ascent_quorum_pct: Stake quorum for ASCENT -> PEAK_ALTITUDE
        descent_quorum_pct: Stake quorum for DESCENT -> LANDING
        terminal_quorum_pct: Stake quorum (LANDING record) for entering TERMINAL
        restart_quorum_pct: Stake quorum for TERMINAL -> TAKEOFF
        terminal_cooldown: Minimum time spent in TERMINAL before a restart
        staking_phases: Phases in which shares may be staked
        price_max_age: Oldest oracle observation accepted as fresh
        shares_per_contribution: Shares minted per unit of base asset at launch
    """
    boarding_duration: timedelta = timedelta(days=3)
    forced_launch_pct: Decimal = Decimal("75")
    ascent_quorum_pct: Decimal = Decimal("51")
    descent_quorum_pct: Decimal = Decimal("51")
    terminal_quorum_pct: Decimal = Decimal("60")
    restart_quorum_pct: Decimal = Decimal("60")
    terminal_cooldown: timedelta = timedelta(days=5)
    staking_phases: FrozenSet[Phase] = DEFAULT_STAKING_PHASES
    price_max_age: timedelta = timedelta(hours=1)
    shares_per_contribution: Decimal = Decimal("1")

    def __post_init__(self):
        for name in ('forced_launch_pct', 'ascent_quorum_pct', 'descent_quorum_pct',
                     'terminal_quorum_pct', 'restart_quorum_pct'):
            value = Decimal(str(getattr(self, name)))
            if not Decimal("0") < value <= Decimal("100"):
                raise ValueError(f"{name} must be in (0, 100], got {value}")
            object.__setattr__(self, name, value)

        for name in ('boarding_duration', 'terminal_cooldown', 'price_max_age'):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")

        ratio = Decimal(str(self.shares_per_contribution))
        if ratio <= 0:
            raise ValueError(f"shares_per_contribution must be positive, got {ratio}")
        object.__setattr__(self, 'shares_per_contribution', ratio)

        phases = frozenset(self.staking_phases)
        if Phase.BOARDING in phases:
            raise ValueError("Staking is not possible during BOARDING")
        object.__setattr__(self, 'staking_phases', phases)

    def quorum_threshold(self, phase: Phase) -> Decimal:
        """Threshold the stake record of a phase must reach to advance past it."""
        thresholds = {
            Phase.ASCENT: self.ascent_quorum_pct,
            Phase.DESCENT: self.descent_quorum_pct,
            Phase.LANDING: self.terminal_quorum_pct,
            Phase.TERMINAL: self.restart_quorum_pct,
        }
        if phase not in thresholds:
            raise ValueError(f"{phase.value} is not gated on stake quorum")
        return thresholds[phase]
