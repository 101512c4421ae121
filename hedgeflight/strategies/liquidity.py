"""
liquidity.py - Accumulation strategy: liquidity provision

The strategy cycles idle -> deployed -> unwinding -> idle:

    execute() while idle       deploys a fraction of the vault's base asset
                               into the pool wallet (TakeOff)
    execute() while deployed   begins the unwind (Ascent -> PeakAltitude)
    complete_unwind(caller)    automation reports the pool is drained; funds
                               return to the vault and the controller moves
                               PeakAltitude -> Descent in the same scope

Position state lives on a non-transferable STRATEGY unit.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, TYPE_CHECKING
import logging

from ..core import (
    Move, TransactionOrigin, OriginType, UNIT_TYPE_STRATEGY,
    AuthorizationError, PreconditionError,
    compute_state_update, control_unit,
)
from ..ledger import Ledger
from ..vault import Vault

if TYPE_CHECKING:
    from ..flight import FlightController

logger = logging.getLogger(__name__)

IDLE = "idle"
DEPLOYED = "deployed"
UNWINDING = "unwinding"


class LiquidityStrategy:
    """
    Liquidity provision with an automation-confirmed unwind.

    Args:
        ledger: Host ledger
        vault: Custody account whose base asset is deployed
        controller: Flight controller notified when the unwind completes
        address: Strategy identity (also its record prefix)
        pool_wallet: Wallet standing in for the liquidity pool
        base_symbol: Asset deployed
        automation: Only caller allowed to report unwind completion
        deploy_fraction: Share of the vault's base asset to deploy, in (0, 1]
    """

    def __init__(
        self,
        ledger: Ledger,
        vault: Vault,
        controller: 'FlightController',
        address: str,
        pool_wallet: str,
        base_symbol: str,
        automation: str,
        deploy_fraction: Decimal = Decimal("1"),
    ):
        deploy_fraction = Decimal(str(deploy_fraction))
        if not Decimal("0") < deploy_fraction <= Decimal("1"):
            raise ValueError(f"deploy_fraction must be in (0, 1], got {deploy_fraction}")
        self.ledger = ledger
        self.vault = vault
        self.controller = controller
        self.address = address
        self.pool_wallet = pool_wallet
        self.base_symbol = base_symbol
        self.automation = automation
        self.deploy_fraction = deploy_fraction
        self.record_symbol = f"{address}_STATE"

        ledger.ensure_wallet(address)
        ledger.ensure_wallet(pool_wallet)
        ledger.register_unit(control_unit(
            self.record_symbol, f"{address} liquidity position", UNIT_TYPE_STRATEGY,
            {'status': IDLE, 'deployed': Decimal("0"), 'last_deployed': Decimal("0"),
             'deployed_at': None, 'rounds': 0},
        ))

    def _origin(self, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.STRATEGY, self.address, self.base_symbol, event)

    @property
    def status(self) -> str:
        return self.ledger.get_unit_state(self.record_symbol)['status']

    def deployed_value(self) -> Decimal:
        """Base-asset notional of the current or most recent deployment."""
        return self.ledger.get_unit_state(self.record_symbol)['last_deployed']

    def _deploy_amount(self) -> Decimal:
        available = self.ledger.get_balance(self.vault.address, self.base_symbol)
        unit = self.ledger.get_unit(self.base_symbol)
        return unit.round(available * self.deploy_fraction)

    def validate(self) -> bool:
        # Launch validates before boarding sweeps funds in, so an idle
        # strategy cannot require a funded vault here; execute() checks that.
        return self.status in (IDLE, DEPLOYED)

    def execute(self) -> bool:
        status = self.status
        if status == IDLE:
            amount = self._deploy_amount()
            if amount <= 0:
                logger.warning("%s has nothing to deploy", self.address)
                return False
            state = self.ledger.get_unit_state(self.record_symbol)
            rounds = state['rounds'] + 1
            move = Move(amount, self.base_symbol, self.vault.address, self.pool_wallet,
                        f"{self.address}:deploy:{rounds}")
            self.ledger.apply(compute_state_update(self.ledger, self.record_symbol, {
                'status': DEPLOYED, 'deployed': amount, 'last_deployed': amount,
                'deployed_at': self.ledger.current_time, 'rounds': rounds,
            }, self._origin("DEPLOY"), [move]))
            logger.info("%s deployed %s %s to %s", self.address, amount, self.base_symbol, self.pool_wallet)
            return True

        if status == DEPLOYED:
            self.ledger.apply(compute_state_update(
                self.ledger, self.record_symbol, {'status': UNWINDING}, self._origin("BEGIN_UNWIND"),
            ))
            logger.info("%s began unwinding", self.address)
            return True

        logger.warning("%s cannot execute while %s", self.address, status)
        return False

    def complete_unwind(self, caller: str) -> Decimal:
        """
        Return pool funds to the vault and notify the controller.

        Returns:
            Amount of base asset returned.

        Raises:
            AuthorizationError: If caller is not the automation address
            PreconditionError: If no unwind is in progress
        """
        if caller != self.automation:
            raise AuthorizationError(f"{caller} cannot complete the unwind of {self.address}")
        if self.status != UNWINDING:
            raise PreconditionError(f"{self.address} is not unwinding")

        returned = self.ledger.get_balance(self.pool_wallet, self.base_symbol)
        moves = []
        if returned > 0:
            rounds = self.ledger.get_unit_state(self.record_symbol)['rounds']
            moves.append(Move(returned, self.base_symbol, self.pool_wallet, self.vault.address,
                              f"{self.address}:unwind:{rounds}"))

        with self.ledger.atomic():
            self.ledger.apply(compute_state_update(
                self.ledger, self.record_symbol, {'status': IDLE, 'deployed': Decimal("0")},
                self._origin("UNWIND"), moves,
            ))
            self.controller.on_unwind_complete(self.address)
        logger.info("%s unwound %s %s back to %s", self.address, returned, self.base_symbol, self.vault.address)
        return returned

    def get_state(self) -> Dict[str, Any]:
        state = self.ledger.get_unit_state(self.record_symbol)
        state['pool_balance'] = self.ledger.get_balance(self.pool_wallet, self.base_symbol)
        return state

    def __repr__(self) -> str:
        return f"LiquidityStrategy({self.address}, {self.status})"
