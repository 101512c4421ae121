"""
vault.py - Custody account (TreasuryAgent)

The vault wallet holds the treasury. Other components never move its funds
directly; enabled modules issue execute() calls, and members redeem through
ragequit() while redemption is open.

The vault's own record (enabled modules, redemption flag) is the state of a
non-transferable VAULT unit, so every change is an audited, reversible ledger
transaction.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, List
import logging

from .core import (
    Move, UnitStateChange, TransactionOrigin, OriginType,
    UNIT_TYPE_VAULT, SYSTEM_WALLET,
    AuthorizationError, PreconditionError,
    build_transaction, control_unit,
)
from .ledger import Ledger
from .membership import Membership

logger = logging.getLogger(__name__)


class Operation(Enum):
    CALL = 0
    DELEGATE_CALL = 1


class VaultCall(Enum):
    """The payloads a module may submit through Vault.execute()."""
    ENABLE_REDEMPTION = "enable_redemption"
    DISABLE_REDEMPTION = "disable_redemption"


class Vault:
    """
    Custody account with module-gated execution and pro-rata redemption.

    Example:
        vault = Vault(ledger, "vault", admin="admin", share_symbol="HFLT")
        vault.enable_module("admin", "controller")
        vault.execute("controller", "vault", Decimal("0"),
                      VaultCall.ENABLE_REDEMPTION, Operation.CALL)
        payouts = vault.ragequit("alice", Decimal("10"))
    """

    def __init__(
        self,
        ledger: Ledger,
        address: str,
        admin: str,
        share_symbol: str,
        record_symbol: str = "VAULT",
    ):
        self.ledger = ledger
        self.address = address
        self.admin = admin
        self.share_symbol = share_symbol
        self.record_symbol = record_symbol
        self.membership = Membership(ledger, share_symbol)

        ledger.ensure_wallet(address)
        if record_symbol not in ledger.units:
            ledger.register_unit(control_unit(
                record_symbol, f"{address} custody record", UNIT_TYPE_VAULT,
                {'modules': [], 'redemption_enabled': False, 'nonce': 0},
            ))

    # ------------------------------------------------------------------
    # Record
    # ------------------------------------------------------------------

    def _record(self) -> Dict[str, Any]:
        return self.ledger.get_unit_state(self.record_symbol)

    def _write(self, changes: Dict[str, Any], source: str, event: str) -> None:
        old = self._record()
        new = dict(old)
        new.update(changes)
        new['nonce'] = old.get('nonce', 0) + 1
        origin = TransactionOrigin(OriginType.MODULE, source, self.record_symbol, event)
        self.ledger.apply(build_transaction(
            self.ledger, [], [UnitStateChange(self.record_symbol, old, new)], origin=origin
        ))

    @property
    def modules(self) -> List[str]:
        return list(self._record().get('modules', []))

    def is_module(self, address: str) -> bool:
        return address in self._record().get('modules', [])

    @property
    def redemption_enabled(self) -> bool:
        return bool(self._record().get('redemption_enabled', False))

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def enable_module(self, caller: str, module: str) -> None:
        if caller != self.admin:
            raise AuthorizationError(f"{caller} cannot enable vault modules")
        if not module:
            raise ValueError("Module address cannot be empty")
        current = self.modules
        if module in current:
            return
        self._write({'modules': sorted(current + [module])}, caller, "ENABLE_MODULE")
        logger.info("vault %s enabled module %s", self.address, module)

    def disable_module(self, caller: str, module: str) -> None:
        if caller != self.admin:
            raise AuthorizationError(f"{caller} cannot disable vault modules")
        current = self.modules
        if module not in current:
            return
        self._write({'modules': [m for m in current if m != module]}, caller, "DISABLE_MODULE")
        logger.info("vault %s disabled module %s", self.address, module)

    # ------------------------------------------------------------------
    # Module execution
    # ------------------------------------------------------------------

    def execute(
        self,
        caller: str,
        target: str,
        value: Decimal,
        payload: Any,
        operation: Operation = Operation.CALL,
    ) -> bool:
        """
        Execute a module call.

        Only the two redemption toggles addressed to the vault itself, with
        zero value and a plain CALL, are understood. Any other call is
        refused by returning False.

        Raises:
            AuthorizationError: If caller is not an enabled module
        """
        if not self.is_module(caller):
            raise AuthorizationError(f"{caller} is not an enabled module of {self.address}")

        if (target != self.address or Decimal(value) != 0
                or operation is not Operation.CALL or not isinstance(payload, VaultCall)):
            logger.warning("vault %s refused call from %s: %r", self.address, caller, payload)
            return False

        enabled = payload is VaultCall.ENABLE_REDEMPTION
        self._write({'redemption_enabled': enabled}, caller, payload.name)
        logger.info("vault %s redemption %s by %s",
                    self.address, "enabled" if enabled else "disabled", caller)
        return True

    # ------------------------------------------------------------------
    # Treasury
    # ------------------------------------------------------------------

    def holdings(self) -> Dict[str, Decimal]:
        """Non-zero treasury balances, excluding participation shares."""
        return {
            symbol: qty
            for symbol, qty in self.ledger.get_wallet_balances(self.address).items()
            if symbol != self.share_symbol and qty > 0
        }

    def ragequit(self, account: str, shares: Decimal) -> Dict[str, Decimal]:
        """
        Burn shares and pay out their pro-rata claim on every treasury asset.

        Each payout is shares / total_supply of the vault's holding, rounded
        down to the asset's precision. Burn and payouts are one transaction.

        Returns:
            Mapping of asset symbol to the amount paid to account.

        Raises:
            ValueError: If shares is not positive
            PreconditionError: If redemption is closed or account holds too few shares
        """
        if shares <= 0:
            raise ValueError(f"Ragequit amount must be positive, got {shares}")
        if not self.redemption_enabled:
            raise PreconditionError("Redemption is not enabled")
        held = self.membership.balance_of(account)
        if held < shares:
            raise PreconditionError(f"{account} holds {held} shares, cannot redeem {shares}")

        supply = self.membership.total_supply()
        nonce = self.ledger.sequence
        payouts: Dict[str, Decimal] = {}
        moves = [Move(shares, self.share_symbol, account, SYSTEM_WALLET,
                      f"ragequit:{account}:{nonce}:burn")]
        for symbol, holding in sorted(self.holdings().items()):
            unit = self.ledger.get_unit(symbol)
            claim = unit.round(holding * shares / supply, ROUND_DOWN)
            if claim <= 0:
                continue
            payouts[symbol] = claim
            moves.append(Move(claim, symbol, self.address, account,
                              f"ragequit:{account}:{nonce}:{symbol}"))

        origin = TransactionOrigin(OriginType.USER_ACTION, account, self.share_symbol, "RAGEQUIT")
        self.ledger.apply(build_transaction(self.ledger, moves, origin=origin))
        logger.info("ragequit %s burned %s shares, paid %s", account, shares, payouts)
        return payouts

    def __repr__(self) -> str:
        return f"Vault({self.address}, redemption={self.redemption_enabled}, modules={self.modules})"
