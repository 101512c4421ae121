"""
boarding.py - Boarding Ledger

Collects base-asset contributions while the boarding window is open and holds
them in escrow. On launch the controller finalizes: the escrow is swept to the
vault and shares are minted to every contributor. If the window expires below
the forced-launch threshold, boarding has failed and each contributor can take
back exactly what they put in.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, TYPE_CHECKING
import logging

from .core import (
    Move, Phase, UnitStateChange, TransactionOrigin, OriginType,
    UNIT_TYPE_FLIGHT,
    AuthorizationError, PreconditionError,
    build_transaction, control_unit,
)
from .membership import compute_mint

if TYPE_CHECKING:
    from .flight import FlightController

logger = logging.getLogger(__name__)


class BoardingLedger:
    """Escrowed contributions for the boarding window of a flight."""

    def __init__(self, controller: 'FlightController', address: str, record_symbol: str):
        self.controller = controller
        self.ledger = controller.ledger
        self.address = address
        self.record_symbol = record_symbol
        self.base_symbol = controller.base_symbol

        self.ledger.ensure_wallet(address)
        if record_symbol not in self.ledger.units:
            self.ledger.register_unit(control_unit(
                record_symbol, f"{controller.name} boarding ledger", UNIT_TYPE_FLIGHT,
                {'contributions': {}, 'raised': Decimal("0"), 'failed': False, 'finalized': False},
            ))

    def _state(self) -> Dict[str, Any]:
        return self.ledger.get_unit_state(self.record_symbol)

    def _write(self, old: Dict[str, Any], new: Dict[str, Any], moves, origin: TransactionOrigin):
        self.ledger.apply(build_transaction(
            self.ledger, moves, [UnitStateChange(self.record_symbol, old, new)], origin=origin
        ))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def total_raised(self) -> Decimal:
        return self._state()['raised']

    def contribution_of(self, account: str) -> Decimal:
        return self._state()['contributions'].get(account, Decimal("0"))

    def contributors(self) -> Dict[str, Decimal]:
        return dict(self._state()['contributions'])

    def is_open(self) -> bool:
        window = self.controller.boarding_window
        if self.controller.phase is not Phase.BOARDING or not window:
            return False
        return self.ledger.current_time < window['deadline']

    def is_failed(self) -> bool:
        """
        True once the window has expired below the forced-launch threshold.

        The flag is sticky: refunds lower the raised amount but never turn a
        failed boarding back into a launchable one.
        """
        state = self._state()
        if state['failed']:
            return True
        window = self.controller.boarding_window
        if not window or window.get('success') or self.controller.phase is not Phase.BOARDING:
            return False
        if self.ledger.current_time < window['deadline']:
            return False
        return state['raised'] < self.controller.forced_launch_floor()

    # ------------------------------------------------------------------
    # Member operations
    # ------------------------------------------------------------------

    def contribute(self, account: str, amount: Decimal) -> bool:
        """
        Contribute base asset to the boarding escrow.

        The launch check runs in the same atomic scope, so a launch that
        fails takes the contribution down with it.

        Returns:
            True if this contribution launched the flight.

        Raises:
            ValueError: If amount is not positive
            PreconditionError: If the boarding window is not open
        """
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        amount = self.ledger.get_unit(self.base_symbol).round(amount)
        if amount <= 0:
            raise ValueError(f"Contribution must be positive, got {amount}")
        if not self.is_open():
            raise PreconditionError("Boarding window is not open")

        with self.ledger.atomic():
            old = self._state()
            contributions = dict(old['contributions'])
            contributions[account] = contributions.get(account, Decimal("0")) + amount
            new = dict(old, contributions=contributions, raised=old['raised'] + amount)
            move = Move(amount, self.base_symbol, account, self.address,
                        f"contribution:{account}:{self.ledger.sequence}")
            origin = TransactionOrigin(OriginType.USER_ACTION, account, self.base_symbol, "CONTRIBUTE")
            self._write(old, new, [move], origin)
            logger.debug("contribution %s +%s (raised %s)", account, amount, new['raised'])

            return self.controller.check_boarding(self.address)

    def refund(self, account: str) -> Decimal:
        """
        Return an account's full contribution after a failed boarding.

        Raises:
            PreconditionError: If boarding has not failed or nothing is owed
        """
        if not self.is_failed():
            raise PreconditionError("Refunds are only available after a failed boarding")
        old = self._state()
        amount = old['contributions'].get(account, Decimal("0"))
        if amount <= 0:
            raise PreconditionError(f"{account} has no contribution to refund")

        contributions = dict(old['contributions'])
        del contributions[account]
        new = dict(old, contributions=contributions, raised=old['raised'] - amount, failed=True)
        move = Move(amount, self.base_symbol, self.address, account, f"refund:{account}")
        origin = TransactionOrigin(OriginType.USER_ACTION, account, self.base_symbol, "REFUND")
        self._write(old, new, [move], origin)
        logger.debug("refund %s %s", account, amount)
        return amount

    # ------------------------------------------------------------------
    # Controller interface
    # ------------------------------------------------------------------

    def finalize(self, caller: str) -> Decimal:
        """
        Sweep the escrow into the vault and mint shares to every contributor.

        Returns:
            Total shares minted.

        Raises:
            AuthorizationError: If caller is not the controller
            PreconditionError: If already finalized or boarding has failed
        """
        if caller != self.controller.address:
            raise AuthorizationError(f"{caller} cannot finalize boarding")
        old = self._state()
        if old['finalized']:
            raise PreconditionError("Boarding is already finalized")
        if old['failed']:
            raise PreconditionError("Boarding has failed")

        ratio = self.controller.config.shares_per_contribution
        share_unit = self.ledger.get_unit(self.controller.membership.share_symbol)
        allocations = {
            account: share_unit.round(amount * ratio)
            for account, amount in old['contributions'].items()
        }

        origin = TransactionOrigin(OriginType.CONTROLLER, caller, self.base_symbol, "FINALIZE")
        moves = []
        if old['raised'] > 0:
            moves.append(Move(old['raised'], self.base_symbol, self.address,
                              self.controller.vault.address, f"boarding:{self.controller.cycle}:sweep"))
        self._write(old, dict(old, finalized=True), moves, origin)

        minted = sum(allocations.values(), Decimal("0"))
        self.ledger.apply(compute_mint(
            self.ledger, share_unit.symbol, allocations,
            f"boarding:{self.controller.cycle}:mint", origin,
        ))
        logger.info("boarding finalized: %s %s to vault, %s shares to %d contributors",
                    old['raised'], self.base_symbol, minted, len(allocations))
        return minted

    def __repr__(self) -> str:
        return f"BoardingLedger({self.address}, raised={self.total_raised()})"
