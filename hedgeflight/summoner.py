"""
summoner.py - One-call wiring of a complete flight

summon() registers the assets and wallets a flight needs, builds the vault,
membership view, controller (with its stake tracker and boarding ledger) and
rewards distributor, and enables the controller as the only vault module.
Strategies are set afterwards by the administrator, because the accumulation
strategy needs the controller it reports back to.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional
import logging

from .core import UNIT_TYPE_CASH, UNIT_TYPE_SHARES, UNIT_TYPE_REWARD, token
from .config import FlightConfig
from .ledger import Ledger
from .membership import Membership
from .vault import Vault
from .flight import FlightController
from .staking import StakeTracker
from .boarding import BoardingLedger
from .rewards import RewardsDistributor
from .nav import NAVCalculator
from .pricing_source import PricingSource

logger = logging.getLogger(__name__)


@dataclass
class Flight:
    """Every component of a summoned flight."""
    ledger: Ledger
    membership: Membership
    vault: Vault
    controller: FlightController
    rewards: RewardsDistributor

    @property
    def stakes(self) -> StakeTracker:
        return self.controller.stakes

    @property
    def boarding(self) -> BoardingLedger:
        return self.controller.boarding

    @property
    def phase(self):
        return self.controller.phase

    def nav_calculator(self, source: PricingSource, wallets: Iterable[str]) -> NAVCalculator:
        """NAV over wallets, fresh-checked against the flight's price_max_age."""
        return NAVCalculator(
            self.ledger, source, wallets, self.controller.base_symbol,
            membership=self.membership, max_age=self.controller.config.price_max_age,
        )


def summon(
    name: str,
    admin: str,
    automation: str,
    participants: Iterable[str] = (),
    base_symbol: str = "USDC",
    share_symbol: str = "HFLT",
    reward_symbol: str = "RWD",
    config: Optional[FlightConfig] = None,
    ledger: Optional[Ledger] = None,
    initial_time: Optional[datetime] = None,
    vault_address: str = "vault",
    rewards_wallet: str = "rewards_pool",
    verbose: bool = False,
    test_mode: bool = False,
) -> Flight:
    """
    Create and wire a flight.

    Units already registered on a supplied ledger (a shared base asset, for
    instance) are reused.

    Example:
        flight = summon("alpha", admin="admin", automation="keeper",
                        participants=["alice", "bob"], test_mode=True)
        flight.controller.start_boarding("admin", Decimal("1000"))
    """
    if ledger is None:
        ledger = Ledger(name, initial_time, verbose=verbose, test_mode=test_mode)

    for unit in (
        token(base_symbol, f"{base_symbol} base asset", 6, UNIT_TYPE_CASH),
        token(share_symbol, f"{name} participation shares", 6, UNIT_TYPE_SHARES),
        token(reward_symbol, f"{name} rewards", 6, UNIT_TYPE_REWARD),
    ):
        if unit.symbol not in ledger.units:
            ledger.register_unit(unit)

    for wallet in (admin, automation, *participants):
        ledger.ensure_wallet(wallet)

    membership = Membership(ledger, share_symbol)
    vault = Vault(ledger, vault_address, admin, share_symbol, record_symbol=f"{vault_address.upper()}_RECORD")
    controller = FlightController(
        ledger, name, vault, membership, base_symbol, admin, automation, config,
    )
    rewards = RewardsDistributor(ledger, controller.stakes, reward_symbol, rewards_wallet, admin)

    vault.enable_module(admin, controller.address)

    logger.info("summoned flight %s (vault=%s, shares=%s, base=%s)", name, vault_address, share_symbol, base_symbol)
    return Flight(ledger, membership, vault, controller, rewards)
