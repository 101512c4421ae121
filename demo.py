#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: One Flight, Start to Finish

Walks a pooled treasury through a complete cycle with the bundled strategies.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-2:  Setup        - Summoning a flight, wiring strategies
  3-4:  Boarding     - Contributions in escrow, launch on target
  5-7:  The Cycle    - Quorum staking, unwind, hedge, rebalance
  8-9:  Terminal     - Redemption, rewards for stakers
  10:   Restart      - Cooldown, new cycle, time travel

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from hedgeflight import (
    summon, token, Phase, StrategyKind, EventKind,
    LiquidityStrategy, ShortStrategy, RebalanceStrategy,
    StaticPricingSource, PreconditionError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    starting_usdc: Decimal = Decimal("10000")
    boarding_target: Decimal = Decimal("1000")
    alice_contribution: Decimal = Decimal("600")
    bob_contribution: Decimal = Decimal("400")
    weth_price: Decimal = Decimal("2000")
    hedge_ratio: Decimal = Decimal("0.5")
    reward_pool: Decimal = Decimal("100")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv

ADMIN = "admin"
KEEPER = "keeper"


def wait_for_enter():
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def show_balances(flight, wallets, symbols=("USDC", "WETH", "HFLT")):
    for wallet in wallets:
        held = {s: flight.ledger.get_balance(wallet, s) for s in symbols}
        shown = ", ".join(f"{s}={q}" for s, q in held.items() if q != 0) or "-"
        print(f"  {wallet:<14} {shown}")


def hours(flight, n: int):
    flight.ledger.advance_time(flight.ledger.current_time + timedelta(hours=n))


# ============================================================================
# SETUP
# ============================================================================

def step_01_summon():
    step_header(1, "Summoning a Flight",
        "A flight is a ledger, a vault, a share token and a controller, wired together.")

    print(">>> flight = summon('alpha', admin='admin', automation='keeper', participants=[...])")
    flight = summon("alpha", ADMIN, KEEPER, participants=["alice", "bob", "carol"],
                    initial_time=CONFIG.start_time, test_mode=True)
    for who in ("alice", "bob", "carol"):
        flight.ledger.set_balance(who, "USDC", CONFIG.starting_usdc)

    section_header("Initial State")
    print(f"Phase:        {flight.phase.value}")
    print(f"Cycle:        {flight.controller.cycle}")
    print(f"Units:        {flight.ledger.list_units()}")
    print(f"Vault modules {flight.vault.modules}")
    print(f"Share supply: {flight.membership.total_supply()}")
    return flight


def step_02_strategies(flight):
    step_header(2, "Wiring Strategies",
        "Each phase delegates to one capability: accumulate, hedge, rebalance.")

    ledger = flight.ledger
    ledger.register_unit(token("WETH", "Wrapped Ether", 8))
    ledger.set_balance("market", "WETH", Decimal("10"))
    ledger.set_balance("market", "USDC", Decimal("100000"))
    pricer = StaticPricingSource({'WETH': CONFIG.weth_price}, base_currency="USDC")

    lp = LiquidityStrategy(ledger, flight.vault, flight.controller, "lp", "lp_pool", "USDC", KEEPER)
    short = ShortStrategy(ledger, flight.vault, lp, pricer, "short", "venue", "USDC", "WETH",
                          hedge_ratio=CONFIG.hedge_ratio)
    rebalance = RebalanceStrategy(ledger, flight.vault, pricer, "rebal", "market", "USDC",
                                  {'USDC': Decimal("0.5"), 'WETH': Decimal("0.5")})
    flight.controller.set_strategy(ADMIN, StrategyKind.ACCUMULATION, lp)
    flight.controller.set_strategy(ADMIN, StrategyKind.HEDGE, short)
    flight.controller.set_strategy(ADMIN, StrategyKind.REBALANCE, rebalance)

    for kind, entry in flight.controller.snapshot()['strategies'].items():
        print(f"  {kind:<13} -> {entry['address']}")
    return flight, lp, pricer


# ============================================================================
# BOARDING
# ============================================================================

def step_03_boarding(flight):
    step_header(3, "Boarding",
        "Contributions sit in escrow until the target is met or the window closes.")

    flight.controller.start_boarding(ADMIN, CONFIG.boarding_target)
    window = flight.controller.boarding_window
    print(f"Target {window['target']} USDC, deadline {window['deadline']}")

    flight.boarding.contribute("alice", CONFIG.alice_contribution)
    section_header("After alice contributes")
    print(f"Raised: {flight.boarding.total_raised()}   Phase: {flight.phase.value}")
    show_balances(flight, ["alice", "boarding", "vault"])


def step_04_launch(flight):
    step_header(4, "Launch",
        "The contribution that meets the target launches the flight in the same call.")

    hours(flight, 2)
    launched = flight.boarding.contribute("bob", CONFIG.bob_contribution)
    print(f"Launched: {launched}   Phase: {flight.phase.value}")
    section_header("Shares minted, funds deployed")
    show_balances(flight, ["alice", "bob", "vault", "lp_pool"])


# ============================================================================
# THE CYCLE
# ============================================================================

def step_05_ascent(flight, lp):
    step_header(5, "Ascent and Peak Altitude",
        "Holders stake shares; a 51% quorum moves the flight and begins the unwind.")

    hours(flight, 1)
    flight.controller.confirm_ascent(KEEPER)
    print(f"Phase: {flight.phase.value}")

    try:
        flight.stakes.signal_quorum("carol", Phase.ASCENT)
    except PreconditionError as e:
        print(f"Signal without stake refused: {e}")

    flight.stakes.stake("alice", Decimal("600"))
    print(f"Quorum: {flight.stakes.quorum_percent(Phase.ASCENT):.2f}%")
    flight.stakes.signal_quorum("carol", Phase.ASCENT)
    print(f"Phase: {flight.phase.value}   LP status: {lp.status}")


def step_06_descent(flight, lp):
    step_header(6, "Descent",
        "The unwind completes, funds return to the vault and the hedge opens.")

    hours(flight, 1)
    returned = lp.complete_unwind(KEEPER)
    flight.controller.confirm_descent(KEEPER)
    print(f"Unwound {returned} USDC   Phase: {flight.phase.value}")
    show_balances(flight, ["vault", "lp_pool", "venue"])


def step_07_landing(flight, pricer):
    step_header(7, "Landing",
        "A 60% quorum lands the flight and the vault is rebalanced to target weights.")

    hours(flight, 1)
    flight.stakes.reclaim("alice")
    flight.stakes.stake("alice", Decimal("600"))
    flight.stakes.signal_quorum("alice", Phase.DESCENT)
    print(f"Phase: {flight.phase.value}")
    show_balances(flight, ["vault", "venue"])

    nav = flight.nav_calculator(pricer, ["vault", "lp_pool", "venue"])
    print(f"\nNAV: {nav.nav()} USDC   per share: {nav.nav_per_share()}")


# ============================================================================
# TERMINAL
# ============================================================================

def step_08_terminal(flight):
    step_header(8, "Terminal and Ragequit",
        "Terminal opens redemption: holders burn shares for a pro-rata slice of the vault.")

    flight.stakes.reclaim("alice")
    flight.stakes.stake("alice", Decimal("600"))
    flight.controller.enter_terminal("alice")
    print(f"Phase: {flight.phase.value}   Redemption: {flight.vault.redemption_enabled}")

    payouts = flight.vault.ragequit("bob", Decimal("400"))
    print(f"bob redeemed 400 shares for {payouts}")
    print(f"Share supply now {flight.membership.total_supply()}")


def step_09_rewards(flight):
    step_header(9, "Rewards",
        "A reward pool is split pro rata over the stake that cleared a phase.")

    flight.ledger.set_balance("rewards_pool", "RWD", CONFIG.reward_pool)
    paid = flight.rewards.distribute(ADMIN, Phase.ASCENT, CONFIG.reward_pool)
    print(f"Ascent stakers paid: {paid}")


# ============================================================================
# RESTART
# ============================================================================

def step_10_restart(flight):
    step_header(10, "Restart and Time Travel",
        "After the cooldown a quorum starts cycle 2; clone_at() shows any past moment.")

    terminal_at = flight.controller.terminal_entered
    flight.ledger.advance_time(terminal_at + flight.controller.config.terminal_cooldown)
    flight.stakes.reclaim("alice")
    flight.stakes.stake("alice", Decimal("600"))
    flight.stakes.signal_quorum("alice", Phase.TERMINAL)
    print(f"Phase: {flight.phase.value}   Cycle: {flight.controller.cycle}")
    show_balances(flight, ["vault", "lp_pool", "venue"])

    section_header("Events")
    for event in flight.controller.events:
        if event.kind in (EventKind.PHASE_CHANGED, EventKind.NEW_CYCLE):
            print(f"  {event}")

    section_header("History")
    past = flight.ledger.clone_at(terminal_at)
    record = past.get_unit_state("FLIGHT")
    print(f"At {terminal_at}: phase={record['phase'].value}, cycle={record['cycle']}")


def main():
    print("=" * 70)
    print("       HEDGEFLIGHT - INTERACTIVE TUTORIAL")
    print("=" * 70)
    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    flight = step_01_summon()
    wait_for_enter()
    flight, lp, pricer = step_02_strategies(flight)
    wait_for_enter()
    step_03_boarding(flight)
    wait_for_enter()
    step_04_launch(flight)
    wait_for_enter()
    step_05_ascent(flight, lp)
    wait_for_enter()
    step_06_descent(flight, lp)
    wait_for_enter()
    step_07_landing(flight, pricer)
    wait_for_enter()
    step_08_terminal(flight)
    wait_for_enter()
    step_09_rewards(flight)
    wait_for_enter()
    step_10_restart(flight)

    print(f"\n{'='*70}")
    print("Tutorial complete. Run tests: pytest tests/")
    print(f"{'='*70}")


if __name__ == "__main__":
    main()
