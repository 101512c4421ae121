"""
test_flight_cycle.py - Two full cycles with the real strategies

Drives a flight from boarding through TERMINAL and back into a second cycle:
liquidity deployed on take-off and unwound at peak altitude, a short sized
against the unwound notional on descent, a rebalance on landing, a partial
exit in TERMINAL, rewards for the ascent stakers, then a restart that
redeploys what is left.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from hedgeflight import (
    Phase, StrategyKind, EventKind, StaticPricingSource, NAVCalculator,
    LiquidityStrategy, ShortStrategy, RebalanceStrategy, token,
)

from tests.flight_driver import ADMIN, AUTOMATION, new_flight


@pytest.fixture
def desk():
    flight = new_flight()
    ledger = flight.ledger
    ledger.register_unit(token("WETH", "Wrapped Ether", 8))
    pricer = StaticPricingSource({'WETH': Decimal("2000")}, base_currency="USDC")

    lp = LiquidityStrategy(ledger, flight.vault, flight.controller, "lp", "lp_pool", "USDC", AUTOMATION)
    short = ShortStrategy(ledger, flight.vault, lp, pricer, "short", "venue", "USDC", "WETH",
                          hedge_ratio=Decimal("0.5"))
    rebalance = RebalanceStrategy(ledger, flight.vault, pricer, "rebal", "market", "USDC",
                                  {'USDC': Decimal("0.5"), 'WETH': Decimal("0.5")})
    ledger.set_balance("market", "WETH", Decimal("10"))
    ledger.set_balance("market", "USDC", Decimal("100000"))

    flight.controller.set_strategy(ADMIN, StrategyKind.ACCUMULATION, lp)
    flight.controller.set_strategy(ADMIN, StrategyKind.HEDGE, short)
    flight.controller.set_strategy(ADMIN, StrategyKind.REBALANCE, rebalance)
    flight.lp, flight.short, flight.rebalance, flight.pricer = lp, short, rebalance, pricer
    return flight


def _hours(flight, n):
    flight.ledger.advance_time(flight.ledger.current_time + timedelta(hours=n))


def test_two_cycles(desk):
    ledger, controller, stakes = desk.ledger, desk.controller, desk.stakes
    seen = []
    controller.subscribe(seen.append)
    usdc_total = ledger.total_supply("USDC")
    weth_total = ledger.total_supply("WETH")

    # ---- Cycle 1: boarding -------------------------------------------------
    controller.start_boarding(ADMIN, Decimal("1000"))
    desk.boarding.contribute("alice", Decimal("600"))
    _hours(desk, 5)
    assert desk.boarding.contribute("bob", Decimal("400")) is True
    assert controller.phase is Phase.TAKEOFF
    assert desk.lp.status == "deployed"
    assert ledger.get_balance("lp_pool", "USDC") == Decimal("1000")
    assert desk.membership.total_supply() == Decimal("1000")

    # ---- Ascent and peak ---------------------------------------------------
    _hours(desk, 1)
    controller.confirm_ascent(AUTOMATION)
    stakes.stake("alice", Decimal("600"))
    stakes.signal_quorum("carol", Phase.ASCENT)
    assert controller.phase is Phase.PEAK_ALTITUDE
    assert desk.lp.status == "unwinding"

    # ---- Descent: unwind returns funds, short opens -----------------------
    _hours(desk, 1)
    assert desk.lp.complete_unwind(AUTOMATION) == Decimal("1000")
    assert controller.phase is Phase.DESCENT
    assert desk.short.get_state()['collateral'] == Decimal("500")
    assert ledger.get_balance("venue", "USDC") == Decimal("500")
    controller.confirm_descent(AUTOMATION)

    # ---- Landing: rebalance to 50/50 ---------------------------------------
    _hours(desk, 1)
    assert stakes.reclaim("alice") == Decimal("600")
    stakes.stake("alice", Decimal("600"))
    stakes.signal_quorum("alice", Phase.DESCENT)
    assert controller.phase is Phase.LANDING
    assert ledger.get_balance("vault", "WETH") == Decimal("0.125")
    assert ledger.get_balance("vault", "USDC") == Decimal("250")

    nav = NAVCalculator(ledger, desk.pricer, ["vault", "lp_pool", "venue"], "USDC",
                        membership=desk.membership)
    assert nav.nav() == Decimal("1000")
    assert nav.nav_per_share() == Decimal("1")

    # ---- Terminal: partial exit --------------------------------------------
    stakes.reclaim("alice")
    stakes.stake("alice", Decimal("600"))
    controller.enter_terminal("alice")
    assert controller.phase is Phase.TERMINAL
    assert desk.vault.redemption_enabled

    payouts = desk.vault.ragequit("bob", Decimal("400"))
    assert payouts == {'USDC': Decimal("100"), 'WETH': Decimal("0.05")}
    assert ledger.get_balance("bob", "USDC") == Decimal("9700")
    assert desk.membership.total_supply() == Decimal("600")

    # ---- Rewards for the ascent stakers ------------------------------------
    ledger.set_balance("rewards_pool", "RWD", Decimal("100"))
    assert desk.rewards.distribute(ADMIN, Phase.ASCENT, Decimal("100")) == {'alice': Decimal("100")}

    # ---- Restart into cycle 2 ----------------------------------------------
    terminal_at = controller.terminal_entered
    ledger.advance_time(terminal_at + timedelta(days=5))
    stakes.reclaim("alice")
    stakes.stake("alice", Decimal("600"))
    stakes.signal_quorum("alice", Phase.TERMINAL)
    assert controller.phase is Phase.TAKEOFF
    assert controller.cycle == 2
    assert controller.cycle_started(2) == ledger.current_time
    assert not desk.vault.redemption_enabled
    assert ledger.get_balance("lp_pool", "USDC") == Decimal("150")
    assert ledger.get_balance("vault", "USDC") == Decimal("0")

    # ---- Cycle 2 through descent: the short rolls --------------------------
    _hours(desk, 1)
    controller.confirm_ascent(AUTOMATION)
    stakes.reclaim("alice")
    stakes.stake("alice", Decimal("600"))
    stakes.signal_quorum("alice", Phase.ASCENT)
    desk.lp.complete_unwind(AUTOMATION)
    assert controller.phase is Phase.DESCENT
    short = desk.short.get_state()
    assert short['rolls'] == 2
    assert short['collateral'] == Decimal("75")
    assert ledger.get_balance("venue", "USDC") == Decimal("75")
    assert ledger.get_balance("vault", "USDC") == Decimal("575")

    # ---- Ledger-wide checks -------------------------------------------------
    assert ledger.total_supply("USDC") == usdc_total
    assert ledger.total_supply("WETH") == weth_total
    assert ledger.total_supply("HFLT") == Decimal("0")

    new_cycles = [e for e in seen if e.kind is EventKind.NEW_CYCLE]
    assert len(new_cycles) == 1 and new_cycles[0].cycle == 2
    assert controller.descent_confirmed is None

    history = ledger.clone_at(terminal_at)
    assert history.get_unit_state("FLIGHT")['phase'] is Phase.TERMINAL
    assert history.get_unit_state("FLIGHT")['cycle'] == 1


def test_snapshot_reports_real_strategies(desk):
    desk.controller.start_boarding(ADMIN, Decimal("1000"))
    desk.boarding.contribute("carol", Decimal("1000"))
    snap = desk.controller.snapshot()
    assert snap['strategies']['accumulation']['state']['pool_balance'] == Decimal("1000")
    assert snap['strategies']['hedge']['state']['open'] is False
    assert snap['strategies']['rebalance']['state']['target_weights'] == {
        'USDC': Decimal("0.5"), 'WETH': Decimal("0.5"),
    }
