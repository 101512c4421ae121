"""
conftest.py - Shared pytest fixtures for hedgeflight tests

Provides common fixtures used across unit, conformance and functional tests:
- Basic ledgers (empty, funded)
- Summoned flights (bare, with stub strategies, launched)
"""

import pytest
from decimal import Decimal

from hedgeflight import Ledger, Phase, token

from tests.flight_driver import T0, new_flight, wire_stubs, launch


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False, test_mode=True)


@pytest.fixture
def basic_ledger():
    """Ledger with USDC and two wallets."""
    ledger = Ledger("test", T0, verbose=False, test_mode=True)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


@pytest.fixture
def funded_ledger(basic_ledger):
    """Basic ledger with alice holding 10,000 USDC."""
    basic_ledger.set_balance("alice", "USDC", Decimal("10000"))
    return basic_ledger


# =============================================================================
# FLIGHT FIXTURES
# =============================================================================

@pytest.fixture
def flight():
    """Summoned flight, no strategies, participants funded with 10,000 USDC each."""
    return new_flight()


@pytest.fixture
def stubs(flight):
    """Stub strategies installed for every kind."""
    return wire_stubs(flight)


@pytest.fixture
def launched(flight, stubs):
    """Flight in TAKEOFF with alice 600 and bob 400 shares and 1,000 USDC in the vault."""
    launch(flight)
    assert flight.controller.phase is Phase.TAKEOFF
    return flight
