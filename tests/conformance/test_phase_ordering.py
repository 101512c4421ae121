"""
Phase Ordering Conformance Tests

INVARIANT: The flight only moves along legal edges.

    ∀ operation op, phase p before op, phase p' after op:
        p' = p  ∨  p' = successor(p)  ∨  (p = TERMINAL ∧ p' = TAKEOFF)

No sequence of calls, by any caller, in any order, can skip a phase or move
backwards. The cycle counter only grows, and only on TERMINAL -> TAKEOFF.
"""

from datetime import timedelta
from decimal import Decimal

from hypothesis import given, settings, HealthCheck
from hypothesis import strategies as st

from hedgeflight import (
    Phase, StrategyKind, EventKind, LedgerError, is_legal_transition,
)

from tests.flight_driver import ADMIN, AUTOMATION, new_flight, wire_stubs


def _stake_all(flight, account):
    flight.stakes.reclaim(account)
    flight.stakes.stake(account, flight.membership.balance_of(account))


ACTIONS = {
    'start_boarding': lambda f, s: f.controller.start_boarding(ADMIN, Decimal("1000")),
    'contribute_alice': lambda f, s: f.boarding.contribute("alice", Decimal("400")),
    'contribute_bob': lambda f, s: f.boarding.contribute("bob", Decimal("400")),
    'check_boarding': lambda f, s: f.controller.check_boarding("carol"),
    'refund_alice': lambda f, s: f.boarding.refund("alice"),
    'confirm_ascent': lambda f, s: f.controller.confirm_ascent(AUTOMATION),
    'rogue_ascent': lambda f, s: f.controller.confirm_ascent("alice"),
    'stake_alice': lambda f, s: _stake_all(f, "alice"),
    'stake_bob': lambda f, s: _stake_all(f, "bob"),
    'unstake_alice': lambda f, s: f.stakes.unstake("alice", Decimal("100")),
    'signal': lambda f, s: f.stakes.signal_quorum("bob", f.controller.phase),
    'rogue_quorum': lambda f, s: f.controller.advance_on_quorum("alice", f.controller.phase),
    'unwind': lambda f, s: f.controller.on_unwind_complete(s[StrategyKind.ACCUMULATION].address),
    'rogue_unwind': lambda f, s: f.controller.on_unwind_complete(s[StrategyKind.HEDGE].address),
    'confirm_descent': lambda f, s: f.controller.confirm_descent(AUTOMATION),
    'enter_terminal': lambda f, s: f.controller.enter_terminal("bob"),
    'ragequit_bob': lambda f, s: f.vault.ragequit("bob", Decimal("50")),
    'wait_day': lambda f, s: f.ledger.advance_time(f.ledger.current_time + timedelta(days=1)),
    'wait_week': lambda f, s: f.ledger.advance_time(f.ledger.current_time + timedelta(days=7)),
}

# Biased toward the happy path so that long runs reach later phases
HAPPY_PATH = [
    'start_boarding', 'contribute_alice', 'contribute_bob', 'contribute_alice',
    'confirm_ascent', 'stake_alice', 'stake_bob', 'signal', 'unwind',
    'stake_alice', 'stake_bob', 'signal', 'stake_alice', 'stake_bob',
    'enter_terminal', 'wait_week', 'stake_alice', 'stake_bob', 'signal',
]

action_names = st.sampled_from(sorted(ACTIONS))


def _run(flight, stubs, names):
    """Apply each action, checking every observed phase change."""
    controller = flight.controller
    for name in names:
        before, cycle_before = controller.phase, controller.cycle
        try:
            ACTIONS[name](flight, stubs)
        except (LedgerError, ValueError):
            pass
        after, cycle_after = controller.phase, controller.cycle

        assert after is before or is_legal_transition(before, after), (name, before, after)
        if before is Phase.TERMINAL and after is Phase.TAKEOFF:
            assert cycle_after == cycle_before + 1
        else:
            assert cycle_after == cycle_before


class TestOrderingProperties:

    @given(st.lists(action_names, min_size=1, max_size=60))
    @settings(max_examples=150, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_random_calls_only_take_legal_edges(self, names):
        flight = new_flight()
        stubs = wire_stubs(flight)
        _run(flight, stubs, names)

    @given(st.lists(st.tuples(st.integers(0, len(HAPPY_PATH) - 1), action_names), max_size=20))
    @settings(max_examples=100, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_happy_path_with_interference(self, insertions):
        """The default path with random calls spliced in still only takes legal edges."""
        names = list(HAPPY_PATH)
        for position, name in sorted(insertions, reverse=True):
            names.insert(position, name)
        flight = new_flight()
        stubs = wire_stubs(flight)
        _run(flight, stubs, names)

    @given(st.lists(action_names, min_size=1, max_size=60))
    @settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_phase_events_form_a_legal_chain(self, names):
        flight = new_flight()
        stubs = wire_stubs(flight)
        _run(flight, stubs, HAPPY_PATH + names)

        changes = [e for e in flight.controller.events if e.kind is EventKind.PHASE_CHANGED]
        current = Phase.BOARDING
        for event in changes:
            assert Phase(event.details['previous']) is current
            assert is_legal_transition(current, event.phase)
            current = event.phase
        assert current is flight.controller.phase


class TestOrderingExamples:

    def test_happy_path_completes_a_cycle(self):
        flight = new_flight()
        stubs = wire_stubs(flight)
        _run(flight, stubs, HAPPY_PATH)
        assert flight.controller.phase is Phase.TAKEOFF
        assert flight.controller.cycle == 2

    def test_every_phase_visited_in_order(self):
        flight = new_flight()
        stubs = wire_stubs(flight)
        seen = [flight.controller.phase]
        for name in HAPPY_PATH:
            try:
                ACTIONS[name](flight, stubs)
            except (LedgerError, ValueError):
                pass
            if flight.controller.phase is not seen[-1]:
                seen.append(flight.controller.phase)
        assert seen == [
            Phase.BOARDING, Phase.TAKEOFF, Phase.ASCENT, Phase.PEAK_ALTITUDE,
            Phase.DESCENT, Phase.LANDING, Phase.TERMINAL, Phase.TAKEOFF,
        ]
