"""
Temporal Conformance Tests

INVARIANT: Time only moves forward, and every window is enforced against it.

    ∀ transactions t1 logged before t2:
        execution_time(t1) ≤ execution_time(t2)

    Boarding accepts contributions in [start, deadline).
    TERMINAL -> TAKEOFF is refused before terminal_entered + cooldown.
    clone_at(t) reproduces the flight record exactly as it stood at t.
"""

import pytest
from hypothesis import given, settings, HealthCheck
from hypothesis import strategies as st
from datetime import timedelta
from decimal import Decimal

from hedgeflight import Phase, PreconditionError

from tests.flight_driver import ADMIN, new_flight, wire_stubs, advance_to, stake_and_signal

SLOW = dict(deadline=None, suppress_health_check=[HealthCheck.too_slow])


class TestClock:

    def test_time_cannot_go_backwards(self, flight):
        now = flight.ledger.current_time
        with pytest.raises(ValueError):
            flight.ledger.advance_time(now - timedelta(seconds=1))

    @given(st.lists(st.integers(min_value=0, max_value=86400), min_size=1, max_size=15))
    @settings(max_examples=30, **SLOW)
    def test_log_is_time_ordered(self, gaps):
        flight = new_flight()
        stubs = wire_stubs(flight)
        targets = [Phase.TAKEOFF, Phase.ASCENT, Phase.PEAK_ALTITUDE, Phase.DESCENT,
                   Phase.LANDING, Phase.TERMINAL]
        for gap, target in zip(gaps, targets):
            flight.ledger.advance_time(flight.ledger.current_time + timedelta(seconds=gap))
            advance_to(flight, target, stubs)
        times = [tx.execution_time for tx in flight.ledger.transaction_log]
        assert times == sorted(times)
        seqs = [tx.sequence_number for tx in flight.ledger.transaction_log]
        assert seqs == list(range(len(seqs)))


class TestBoardingWindow:

    @given(st.integers(min_value=0, max_value=3 * 86400 - 1))
    @settings(max_examples=30, **SLOW)
    def test_open_until_deadline(self, offset):
        flight = new_flight()
        wire_stubs(flight)
        flight.controller.start_boarding(ADMIN, Decimal("1000"))
        start = flight.controller.boarding_window['start']
        flight.ledger.advance_time(start + timedelta(seconds=offset))
        flight.boarding.contribute("alice", Decimal("10"))
        assert flight.boarding.total_raised() == Decimal("10")

    def test_closed_at_deadline(self, flight, stubs):
        flight.controller.start_boarding(ADMIN, Decimal("1000"))
        flight.ledger.advance_time(flight.controller.boarding_window['deadline'])
        assert not flight.boarding.is_open()
        with pytest.raises(PreconditionError):
            flight.boarding.contribute("alice", Decimal("10"))

    def test_forced_launch_needs_expiry(self, flight, stubs):
        flight.controller.start_boarding(ADMIN, Decimal("1000"))
        flight.boarding.contribute("alice", Decimal("800"))
        deadline = flight.controller.boarding_window['deadline']
        flight.ledger.advance_time(deadline - timedelta(seconds=1))
        assert flight.controller.check_boarding("bob") is False
        flight.ledger.advance_time(deadline)
        assert flight.controller.check_boarding("bob") is True


class TestTerminalCooldown:

    def _ready(self, launched, stubs, wait):
        advance_to(launched, Phase.TERMINAL, stubs)
        entered = launched.controller.terminal_entered
        launched.ledger.advance_time(entered + wait)
        return entered

    def test_restart_refused_during_cooldown(self, launched, stubs):
        self._ready(launched, stubs, timedelta(days=5) - timedelta(seconds=1))
        with pytest.raises(PreconditionError):
            stake_and_signal(launched, "alice", Decimal("600"))
        assert launched.controller.phase is Phase.TERMINAL

    def test_restart_allowed_at_cooldown_end(self, launched, stubs):
        self._ready(launched, stubs, timedelta(days=5))
        stake_and_signal(launched, "alice", Decimal("600"))
        assert launched.controller.phase is Phase.TAKEOFF
        assert launched.controller.cycle == 2


class TestHistory:

    def test_clone_at_replays_every_phase(self, launched, stubs):
        stamps = {}
        for target in (Phase.ASCENT, Phase.PEAK_ALTITUDE, Phase.DESCENT, Phase.LANDING, Phase.TERMINAL):
            launched.ledger.advance_time(launched.ledger.current_time + timedelta(hours=6))
            advance_to(launched, target, stubs)
            stamps[target] = launched.ledger.current_time

        for phase, at in stamps.items():
            past = launched.ledger.clone_at(at)
            assert past.get_unit_state("FLIGHT")['phase'] is phase
        assert launched.controller.phase is Phase.TERMINAL

    def test_clone_at_restores_balances(self, launched, stubs):
        t_launch = launched.ledger.current_time
        advance_to(launched, Phase.ASCENT, stubs)
        launched.ledger.advance_time(t_launch + timedelta(hours=1))
        launched.stakes.stake("alice", Decimal("600"))
        past = launched.ledger.clone_at(t_launch)
        assert past.get_balance("alice", "HFLT") == Decimal("600")
        assert past.get_balance("stake_tracker", "HFLT") == Decimal("0")
        assert launched.ledger.get_balance("stake_tracker", "HFLT") == Decimal("600")

    def test_clone_at_future_rejected(self, flight):
        with pytest.raises(ValueError):
            flight.ledger.clone_at(flight.ledger.current_time + timedelta(seconds=1))
