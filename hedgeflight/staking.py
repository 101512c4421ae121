"""
staking.py - Stake Tracker

Members lock participation shares against the current (cycle, phase) to
signal support for advancing the flight. The tracker holds locked shares in
its own wallet and keeps its records as the state of a STAKES control unit:

    records = {
        "<cycle>:<phase>": {
            "stakes": {account: Decimal},   # current stake, zero entries removed
            "aggregate": Decimal,           # sum of stakes until cleared
            "cleared": bool,
            "total_at_clear": Decimal,      # aggregate when the phase concluded
            "reclaimed": [account, ...],
        }
    }

The stakes map doubles as the roster: an account is added on its first stake
and removed when its stake returns to zero, so no scan over past stakers is
ever needed.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING
import logging

from .core import (
    Move, Phase, UnitStateChange, TransactionOrigin, OriginType,
    UNIT_TYPE_FLIGHT,
    AuthorizationError, OrderingError, PreconditionError,
    build_transaction, control_unit,
)

if TYPE_CHECKING:
    from .flight import FlightController

logger = logging.getLogger(__name__)

QUORUM_GATED_PHASES = (Phase.ASCENT, Phase.DESCENT, Phase.TERMINAL)


def record_key(cycle: int, phase: Phase) -> str:
    return f"{cycle}:{phase.value}"


def _empty_record() -> Dict[str, Any]:
    return {
        'stakes': {},
        'aggregate': Decimal("0"),
        'cleared': False,
        'total_at_clear': Decimal("0"),
        'reclaimed': [],
    }


class StakeTracker:
    """
    Per-(cycle, phase) stake records and the quorum signal.

    Constructed by the FlightController, which it reads for the current
    phase and cycle and notifies through advance_on_quorum().
    """

    def __init__(self, controller: 'FlightController', address: str, record_symbol: str):
        self.controller = controller
        self.ledger = controller.ledger
        self.address = address
        self.record_symbol = record_symbol
        self.share_symbol = controller.membership.share_symbol

        self.ledger.ensure_wallet(address)
        if record_symbol not in self.ledger.units:
            self.ledger.register_unit(control_unit(
                record_symbol, f"{controller.name} stake records", UNIT_TYPE_FLIGHT,
                {'records': {}},
            ))

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def _records(self) -> Dict[str, Dict[str, Any]]:
        return self.ledger.get_unit_state(self.record_symbol).get('records', {})

    def _record(self, phase: Phase, cycle: Optional[int] = None) -> Dict[str, Any]:
        if cycle is None:
            cycle = self.controller.cycle
        return self._records().get(record_key(cycle, phase), _empty_record())

    def record(self, phase: Phase, cycle: Optional[int] = None) -> Dict[str, Any]:
        """Copy of one stake record (empty if nobody staked)."""
        return self._record(phase, cycle)

    def stake_of(self, account: str, phase: Phase, cycle: Optional[int] = None) -> Decimal:
        return self._record(phase, cycle)['stakes'].get(account, Decimal("0"))

    def roster(self, phase: Phase, cycle: Optional[int] = None) -> List[str]:
        """Accounts currently holding a non-zero stake in the record."""
        return sorted(self._record(phase, cycle)['stakes'])

    def aggregate(self, phase: Phase, cycle: Optional[int] = None) -> Decimal:
        return self._record(phase, cycle)['aggregate']

    def total_at_clear(self, phase: Phase, cycle: Optional[int] = None) -> Decimal:
        return self._record(phase, cycle)['total_at_clear']

    def is_cleared(self, phase: Phase, cycle: Optional[int] = None) -> bool:
        return self._record(phase, cycle)['cleared']

    def quorum_percent(self, phase: Phase) -> Decimal:
        """
        Stake in the current cycle's record as a percent of outstanding shares.

        Supply is read now, not snapshotted: issuing shares dilutes the quorum
        without any stake call. Zero supply yields zero.
        """
        supply = self.controller.membership.total_supply()
        if supply <= 0:
            return Decimal("0")
        return self.aggregate(phase) * Decimal("100") / supply

    def _write(self, key: str, record: Dict[str, Any], moves: List[Move], origin: TransactionOrigin) -> None:
        old = self.ledger.get_unit_state(self.record_symbol)
        new = dict(old)
        records = dict(new.get('records', {}))
        records[key] = record
        new['records'] = records
        self.ledger.apply(build_transaction(
            self.ledger, moves, [UnitStateChange(self.record_symbol, old, new)], origin=origin
        ))

    # ------------------------------------------------------------------
    # Member operations
    # ------------------------------------------------------------------

    def _normalize(self, amount: Decimal) -> Decimal:
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        amount = self.ledger.get_unit(self.share_symbol).round(amount)
        if amount <= 0:
            raise ValueError(f"Stake amount must be positive, got {amount}")
        return amount

    def _open_record(self) -> tuple:
        phase = self.controller.phase
        if phase not in self.controller.config.staking_phases:
            raise PreconditionError(f"Staking is closed during {phase.value}")
        cycle = self.controller.cycle
        record = self._record(phase, cycle)
        if record['cleared']:
            raise PreconditionError(f"Stake record {record_key(cycle, phase)} is already cleared")
        return phase, cycle, record

    def stake(self, account: str, amount: Decimal) -> Decimal:
        """
        Lock shares against the current phase.

        Returns:
            The account's stake in the current record after the call.

        Raises:
            ValueError: If amount is not positive
            PreconditionError: If the current phase does not accept stakes
            TransactionRejected: If the account cannot cover the transfer
        """
        amount = self._normalize(amount)
        phase, cycle, record = self._open_record()
        key = record_key(cycle, phase)

        stakes = dict(record['stakes'])
        stakes[account] = stakes.get(account, Decimal("0")) + amount
        record = dict(record, stakes=stakes, aggregate=record['aggregate'] + amount)

        move = Move(amount, self.share_symbol, account, self.address,
                    f"stake:{key}:{account}:{self.ledger.sequence}")
        origin = TransactionOrigin(OriginType.USER_ACTION, account, self.share_symbol, "STAKE")
        self._write(key, record, [move], origin)
        logger.debug("stake %s +%s on %s (aggregate %s)", account, amount, key, record['aggregate'])
        return stakes[account]

    def unstake(self, account: str, amount: Decimal) -> Decimal:
        """
        Withdraw shares from the current phase's record.

        Raises:
            ValueError: If amount is not positive
            PreconditionError: If the phase does not accept stakes or the
                account has staked less than amount
        """
        amount = self._normalize(amount)
        phase, cycle, record = self._open_record()
        key = record_key(cycle, phase)

        current = record['stakes'].get(account, Decimal("0"))
        if amount > current:
            raise PreconditionError(f"{account} has {current} staked on {key}, cannot unstake {amount}")

        stakes = dict(record['stakes'])
        remaining = current - amount
        if remaining > 0:
            stakes[account] = remaining
        else:
            del stakes[account]
        record = dict(record, stakes=stakes, aggregate=record['aggregate'] - amount)

        move = Move(amount, self.share_symbol, self.address, account,
                    f"unstake:{key}:{account}:{self.ledger.sequence}")
        origin = TransactionOrigin(OriginType.USER_ACTION, account, self.share_symbol, "UNSTAKE")
        self._write(key, record, [move], origin)
        logger.debug("unstake %s -%s on %s (aggregate %s)", account, amount, key, record['aggregate'])
        return remaining

    def reclaim(self, account: str) -> Decimal:
        """
        Return shares locked in records whose phase has concluded.

        Stakes stay in the records for reward accounting; the record only
        notes that the account has taken its shares back.

        Returns:
            Total shares returned (zero if nothing was reclaimable).
        """
        current_key = record_key(self.controller.cycle, self.controller.phase)
        old = self.ledger.get_unit_state(self.record_symbol)
        records = dict(old.get('records', {}))

        total = Decimal("0")
        moves = []
        for key in sorted(records):
            record = records[key]
            concluded = record['cleared'] or key != current_key
            stake = record['stakes'].get(account, Decimal("0"))
            if not concluded or stake <= 0 or account in record['reclaimed']:
                continue
            records[key] = dict(record, reclaimed=sorted(record['reclaimed'] + [account]))
            moves.append(Move(stake, self.share_symbol, self.address, account,
                              f"reclaim:{key}:{account}"))
            total += stake

        if not moves:
            return total

        new = dict(old, records=records)
        origin = TransactionOrigin(OriginType.USER_ACTION, account, self.share_symbol, "RECLAIM")
        self.ledger.apply(build_transaction(
            self.ledger, moves, [UnitStateChange(self.record_symbol, old, new)], origin=origin
        ))
        logger.debug("reclaim %s returned %s shares", account, total)
        return total

    # ------------------------------------------------------------------
    # Controller interface
    # ------------------------------------------------------------------

    def clear(self, phase: Phase, caller: str) -> None:
        """
        Zero the aggregate of the current cycle's record for phase.

        Individual stakes are kept, and the pre-clear aggregate is saved for
        reward distribution.

        Raises:
            AuthorizationError: If caller is not the controller
        """
        if caller != self.controller.address:
            raise AuthorizationError(f"{caller} cannot clear stake records")
        cycle = self.controller.cycle
        key = record_key(cycle, phase)
        record = self._record(phase, cycle)
        if record['cleared']:
            return
        record = dict(record, cleared=True, total_at_clear=record['aggregate'], aggregate=Decimal("0"))
        origin = TransactionOrigin(OriginType.CONTROLLER, caller, self.record_symbol, "CLEAR")
        self._write(key, record, [], origin)
        logger.debug("cleared stake record %s (total %s)", key, record['total_at_clear'])

    def signal_quorum(self, caller: str, phase: Phase) -> bool:
        """
        Forward a quorum signal for phase to the controller.

        Anyone may call this, naming the phase they saw the quorum in; the
        controller only accepts the signal from the tracker itself, and
        re-checks the threshold. Of two signals for the same phase, the
        second finds the flight already moved on.

        Raises:
            OrderingError: If phase is not the current phase
            PreconditionError: If the phase is not quorum-gated or quorum is short
        """
        current = self.controller.phase
        if phase is not current:
            raise OrderingError(f"Quorum signal for {phase.value} during {current.value}")
        if phase not in QUORUM_GATED_PHASES:
            raise PreconditionError(f"{phase.value} does not advance on a quorum signal")
        quorum = self.quorum_percent(phase)
        threshold = self.controller.config.quorum_threshold(phase)
        if quorum < threshold:
            raise PreconditionError(
                f"{phase.value} quorum {quorum:.2f}% is below {threshold}% (signalled by {caller})"
            )
        logger.info("quorum signal for %s from %s at %.2f%%", phase.value, caller, quorum)
        return self.controller.advance_on_quorum(self.address, phase)

    def __repr__(self) -> str:
        return f"StakeTracker({self.address}, records={len(self._records())})"
