"""
test_boarding.py - Unit tests for BoardingLedger and launch thresholds

Tests:
- Contribution window
- Launch on target, forced launch at 75%, failure below
- Refunds
- Finalize authorization
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from hedgeflight import (
    Phase, EventKind, AuthorizationError, PreconditionError, OrderingError,
)

from tests.flight_driver import ADMIN


@pytest.fixture
def boarding(flight, stubs):
    flight.controller.start_boarding(ADMIN, Decimal("1000"))
    return flight


def _expire(flight):
    window = flight.controller.boarding_window
    flight.ledger.advance_time(window['deadline'])


class TestContribute:

    def test_contribution_escrowed(self, boarding):
        launched = boarding.boarding.contribute("alice", Decimal("250"))
        assert launched is False
        assert boarding.boarding.total_raised() == Decimal("250")
        assert boarding.boarding.contribution_of("alice") == Decimal("250")
        assert boarding.ledger.get_balance("boarding", "USDC") == Decimal("250")
        assert boarding.membership.total_supply() == Decimal("0")

    def test_window_must_be_open(self, flight, stubs):
        with pytest.raises(PreconditionError):
            flight.boarding.contribute("alice", Decimal("10"))

    def test_window_closes_at_deadline(self, boarding):
        _expire(boarding)
        with pytest.raises(PreconditionError):
            boarding.boarding.contribute("alice", Decimal("10"))

    def test_non_positive(self, boarding):
        with pytest.raises(ValueError):
            boarding.boarding.contribute("alice", Decimal("-1"))

    def test_exact_target_launches_in_same_call(self, boarding):
        assert boarding.boarding.contribute("alice", Decimal("1000")) is True
        assert boarding.controller.phase is Phase.TAKEOFF
        assert boarding.ledger.get_balance("boarding", "USDC") == Decimal("0")
        assert boarding.ledger.get_balance("vault", "USDC") == Decimal("1000")
        assert boarding.membership.balance_of("alice") == Decimal("1000")

    def test_no_contributions_after_launch(self, boarding):
        boarding.boarding.contribute("alice", Decimal("1000"))
        with pytest.raises(PreconditionError):
            boarding.boarding.contribute("bob", Decimal("1"))


class TestThresholds:

    def test_forced_launch_at_75_percent(self, boarding):
        boarding.boarding.contribute("alice", Decimal("750"))
        _expire(boarding)
        assert boarding.controller.check_boarding("keeper") is True
        assert boarding.controller.phase is Phase.TAKEOFF
        assert boarding.controller.boarding_window['launch'] == EventKind.FORCED_LAUNCH.value
        assert boarding.controller.events[-1].kind is EventKind.FORCED_LAUNCH

    def test_no_forced_launch_before_deadline(self, boarding):
        boarding.boarding.contribute("alice", Decimal("999"))
        assert boarding.controller.check_boarding("anyone") is False
        assert boarding.controller.phase is Phase.BOARDING

    def test_74_percent_fails_and_refunds(self, boarding):
        boarding.boarding.contribute("alice", Decimal("500"))
        boarding.boarding.contribute("bob", Decimal("240"))
        _expire(boarding)
        assert boarding.controller.check_boarding("anyone") is False
        assert boarding.boarding.is_failed()
        assert boarding.controller.phase is Phase.BOARDING

        assert boarding.boarding.refund("alice") == Decimal("500")
        assert boarding.boarding.refund("bob") == Decimal("240")
        assert boarding.ledger.get_balance("alice", "USDC") == Decimal("10000")
        assert boarding.ledger.get_balance("bob", "USDC") == Decimal("10000")
        assert boarding.boarding.total_raised() == Decimal("0")
        assert boarding.boarding.is_failed()
        with pytest.raises(PreconditionError):
            boarding.boarding.refund("alice")

    def test_refund_before_failure(self, boarding):
        boarding.boarding.contribute("alice", Decimal("100"))
        with pytest.raises(PreconditionError):
            boarding.boarding.refund("alice")

    def test_refund_after_success(self, boarding):
        boarding.boarding.contribute("alice", Decimal("1000"))
        boarding.ledger.advance_time(boarding.ledger.current_time + timedelta(days=4))
        with pytest.raises(PreconditionError):
            boarding.boarding.refund("alice")

    def test_failed_boarding_cannot_restart(self, boarding):
        _expire(boarding)
        with pytest.raises(PreconditionError):
            boarding.controller.start_boarding(ADMIN, Decimal("10"))


class TestFinalize:

    def test_finalize_controller_only(self, boarding):
        with pytest.raises(AuthorizationError):
            boarding.boarding.finalize("alice")

    def test_check_boarding_after_launch(self, boarding):
        boarding.boarding.contribute("alice", Decimal("1000"))
        with pytest.raises(OrderingError):
            boarding.controller.check_boarding("anyone")
