"""
rewards.py - Reward distribution to stakers

Once a phase concludes and its stake record is cleared, the administrator can
pay a reward pool to the accounts on that record's roster, pro rata to their
stake against the aggregate at the moment of clearing. Each (cycle, phase)
record pays out at most once.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional
import logging

from .core import (
    Move, Phase, TransactionOrigin, OriginType, UNIT_TYPE_FLIGHT,
    AuthorizationError, PreconditionError,
    compute_state_update, control_unit,
)
from .ledger import Ledger
from .staking import StakeTracker, record_key

logger = logging.getLogger(__name__)


class RewardsDistributor:
    """
    Example:
        rewards = RewardsDistributor(ledger, controller.stakes, "RWD", "treasury", admin="admin")
        paid = rewards.distribute("admin", Phase.ASCENT, Decimal("1000"))
    """

    def __init__(
        self,
        ledger: Ledger,
        stake_tracker: StakeTracker,
        reward_symbol: str,
        funding_wallet: str,
        admin: str,
        record_symbol: str = "REWARDS",
    ):
        self.ledger = ledger
        self.stakes = stake_tracker
        self.reward_symbol = reward_symbol
        self.funding_wallet = funding_wallet
        self.admin = admin
        self.record_symbol = record_symbol

        ledger.ensure_wallet(funding_wallet)
        ledger.register_unit(control_unit(
            record_symbol, "reward distributions", UNIT_TYPE_FLIGHT, {'distributions': {}},
        ))

    def distributions(self) -> List[Dict[str, Any]]:
        history = self.ledger.get_unit_state(self.record_symbol)['distributions']
        return [history[k] for k in sorted(history, key=lambda k: history[k]['distributed_at'])]

    def is_distributed(self, phase: Phase, cycle: int) -> bool:
        return record_key(cycle, phase) in self.ledger.get_unit_state(self.record_symbol)['distributions']

    def distribute(
        self,
        caller: str,
        phase: Phase,
        amount: Decimal,
        cycle: Optional[int] = None,
    ) -> Dict[str, Decimal]:
        """
        Pay amount of the reward unit to the stakers of a concluded record.

        Each share is amount * stake / total_at_clear rounded down, so the
        payouts never exceed amount; the remainder stays in the funding wallet.

        Returns:
            Mapping of account to reward paid.

        Raises:
            AuthorizationError: If caller is not the administrator
            ValueError: If amount is not positive
            PreconditionError: If the record is not cleared, has no stake,
                or was already distributed
        """
        if caller != self.admin:
            raise AuthorizationError(f"{caller} cannot distribute rewards")
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError(f"Reward amount must be positive, got {amount}")
        if cycle is None:
            cycle = self.stakes.controller.cycle

        key = record_key(cycle, phase)
        if not self.stakes.is_cleared(phase, cycle):
            raise PreconditionError(f"Stake record {key} has not concluded")
        if self.is_distributed(phase, cycle):
            raise PreconditionError(f"Rewards for {key} were already distributed")
        total = self.stakes.total_at_clear(phase, cycle)
        if total <= 0:
            raise PreconditionError(f"Stake record {key} has no stake to reward")

        unit = self.ledger.get_unit(self.reward_symbol)
        payouts: Dict[str, Decimal] = {}
        moves = []
        for account in self.stakes.roster(phase, cycle):
            share = unit.round(amount * self.stakes.stake_of(account, phase, cycle) / total, ROUND_DOWN)
            if share <= 0:
                continue
            payouts[account] = share
            moves.append(Move(share, self.reward_symbol, self.funding_wallet, account, f"reward:{key}:{account}"))

        state = self.ledger.get_unit_state(self.record_symbol)
        history = dict(state['distributions'])
        history[key] = {
            'cycle': cycle,
            'phase': phase.value,
            'amount': amount,
            'paid': sum(payouts.values(), Decimal("0")),
            'recipients': len(payouts),
            'distributed_at': self.ledger.current_time,
        }
        origin = TransactionOrigin(OriginType.USER_ACTION, caller, self.reward_symbol, "DISTRIBUTE")
        self.ledger.apply(compute_state_update(
            self.ledger, self.record_symbol, {'distributions': history}, origin, moves,
        ))
        logger.info("rewards for %s: %s %s to %d stakers", key, history[key]['paid'], self.reward_symbol, len(payouts))
        return payouts
