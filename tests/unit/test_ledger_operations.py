"""
test_ledger_operations.py - Unit tests for Ledger class operations

Tests:
- Ledger creation and configuration
- Wallet and unit registration
- Balance operations and test mode
- Time management
- Transaction execution (execute / apply)
- atomic() scopes and commit hooks
- Historical reconstruction (clone_at)
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from hedgeflight import (
    Ledger, Move, ExecuteResult, SYSTEM_WALLET,
    token, control_unit, build_transaction, compute_state_update,
    TransactionOrigin, OriginType, UNIT_TYPE_FLIGHT,
    LedgerError, TransactionRejected, WalletNotRegistered, UnitNotRegistered,
    PreconditionError, PendingTransaction,
)

from tests.flight_driver import T0


def _pay(ledger, amount, src="alice", dst="bob", cid=None):
    return build_transaction(ledger, [
        Move(Decimal(amount), "USDC", src, dst, cid or f"pay:{ledger.sequence}")
    ])


class TestLedgerCreation:

    def test_create_ledger_minimal(self):
        ledger = Ledger("test")
        assert ledger.name == "test"
        assert ledger.is_registered(SYSTEM_WALLET)

    def test_create_ledger_with_options(self):
        ledger = Ledger("test", initial_time=T0, verbose=False)
        assert ledger.current_time == T0
        assert ledger.verbose is False
        assert ledger.sequence == 0


class TestRegistration:

    def test_register_wallet_twice_fails(self, basic_ledger):
        with pytest.raises(ValueError):
            basic_ledger.register_wallet("alice")

    def test_ensure_wallet_is_idempotent(self, basic_ledger):
        basic_ledger.ensure_wallet("alice")
        basic_ledger.ensure_wallet("carol")
        assert "carol" in basic_ledger.list_wallets()

    def test_register_unit_twice_fails(self, basic_ledger):
        with pytest.raises(ValueError):
            basic_ledger.register_unit(token("USDC", "again"))

    def test_unknown_wallet_and_unit(self, basic_ledger):
        with pytest.raises(WalletNotRegistered):
            basic_ledger.get_balance("nobody", "USDC")
        with pytest.raises(UnitNotRegistered):
            basic_ledger.get_balance("alice", "NOPE")


class TestBalances:

    def test_set_balance_requires_test_mode(self):
        ledger = Ledger("prod", T0)
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        with pytest.raises(LedgerError):
            ledger.set_balance("alice", "USDC", Decimal("1"))

    def test_issuance_from_system_wallet(self, basic_ledger):
        result = basic_ledger.execute(build_transaction(basic_ledger, [
            Move(Decimal("500"), "USDC", SYSTEM_WALLET, "alice", "mint")
        ]))
        assert result == ExecuteResult.APPLIED
        assert basic_ledger.get_balance("alice", "USDC") == Decimal("500")
        assert basic_ledger.get_balance(SYSTEM_WALLET, "USDC") == Decimal("-500")
        assert basic_ledger.total_supply("USDC") == Decimal("0")

    def test_positions_index(self, funded_ledger):
        funded_ledger.apply(_pay(funded_ledger, "2500"))
        assert funded_ledger.get_positions("USDC") == {
            "alice": Decimal("7500"), "bob": Decimal("2500"),
        }


class TestTime:

    def test_advance_time(self, basic_ledger):
        basic_ledger.advance_time(T0 + timedelta(days=1))
        assert basic_ledger.current_time == T0 + timedelta(days=1)

    def test_time_cannot_go_backwards(self, basic_ledger):
        with pytest.raises(ValueError):
            basic_ledger.advance_time(T0 - timedelta(seconds=1))


class TestExecute:

    def test_execute_applies_moves(self, funded_ledger):
        assert funded_ledger.execute(_pay(funded_ledger, "100")) == ExecuteResult.APPLIED
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("100")
        assert funded_ledger.sequence == 1

    def test_execute_is_idempotent(self, funded_ledger):
        tx = _pay(funded_ledger, "100", cid="pay:fixed")
        funded_ledger.execute(tx)
        assert funded_ledger.execute(tx) == ExecuteResult.ALREADY_APPLIED
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("100")

    def test_overdraft_is_rejected(self, funded_ledger):
        assert funded_ledger.execute(_pay(funded_ledger, "10001")) == ExecuteResult.REJECTED
        assert funded_ledger.get_balance("alice", "USDC") == Decimal("10000")

    def test_apply_raises_on_rejection(self, funded_ledger):
        with pytest.raises(TransactionRejected, match="alice USDC"):
            funded_ledger.apply(_pay(funded_ledger, "10001"))

    def test_apply_raises_on_duplicate(self, funded_ledger):
        tx = _pay(funded_ledger, "1", cid="pay:dup")
        funded_ledger.apply(tx)
        with pytest.raises(TransactionRejected):
            funded_ledger.apply(tx)

    def test_control_units_cannot_move(self, funded_ledger):
        funded_ledger.register_unit(control_unit("REC", "record", UNIT_TYPE_FLIGHT, {'n': 0}))
        funded_ledger.set_balance("alice", "REC", Decimal("1"))
        tx = build_transaction(funded_ledger, [Move(Decimal("1"), "REC", "alice", "bob", "rec")])
        assert funded_ledger.execute(tx) == ExecuteResult.REJECTED

    def test_future_timestamp_rejected(self, funded_ledger):
        tx = PendingTransaction(
            moves=(Move(Decimal("1"), "USDC", "alice", "bob", "early"),),
            state_changes=(),
            origin=TransactionOrigin(OriginType.USER_ACTION, "alice"),
            timestamp=T0 + timedelta(days=1),
        )
        assert funded_ledger.execute(tx) == ExecuteResult.REJECTED
        funded_ledger.advance_time(T0 + timedelta(days=1))
        assert funded_ledger.execute(tx) == ExecuteResult.APPLIED

    def test_state_update_empty_when_unchanged(self, funded_ledger):
        funded_ledger.register_unit(control_unit("REC", "record", UNIT_TYPE_FLIGHT, {'n': 1}))
        origin = TransactionOrigin(OriginType.SYSTEM, "test")
        pending = compute_state_update(funded_ledger, "REC", {'n': 1}, origin)
        assert pending.is_empty()
        assert funded_ledger.apply(pending) is None
        funded_ledger.apply(compute_state_update(funded_ledger, "REC", {'n': 2}, origin))
        assert funded_ledger.get_unit_state("REC") == {'n': 2}


class TestAtomic:

    def test_commit_keeps_all_transactions(self, funded_ledger):
        with funded_ledger.atomic():
            funded_ledger.apply(_pay(funded_ledger, "100"))
            funded_ledger.apply(_pay(funded_ledger, "50", "bob", "alice"))
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("50")
        assert len(funded_ledger.transaction_log) == 2

    def test_exception_unwinds_everything(self, funded_ledger):
        funded_ledger.register_unit(control_unit("REC", "record", UNIT_TYPE_FLIGHT, {'n': 0}))
        origin = TransactionOrigin(OriginType.SYSTEM, "test")
        with pytest.raises(PreconditionError):
            with funded_ledger.atomic():
                funded_ledger.apply(_pay(funded_ledger, "100"))
                funded_ledger.apply(compute_state_update(funded_ledger, "REC", {'n': 1}, origin))
                raise PreconditionError("abort")
        assert funded_ledger.get_balance("alice", "USDC") == Decimal("10000")
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("0")
        assert funded_ledger.get_unit_state("REC") == {'n': 0}
        assert funded_ledger.transaction_log == []
        assert funded_ledger.seen_intent_ids == set()
        assert funded_ledger.sequence == 0

    def test_unwound_intent_can_be_reapplied(self, funded_ledger):
        tx = _pay(funded_ledger, "100", cid="pay:retry")
        with pytest.raises(RuntimeError):
            with funded_ledger.atomic():
                funded_ledger.apply(tx)
                raise RuntimeError("boom")
        assert funded_ledger.execute(tx) == ExecuteResult.APPLIED

    def test_nested_inner_failure_caught_keeps_outer(self, funded_ledger):
        with funded_ledger.atomic():
            funded_ledger.apply(_pay(funded_ledger, "100"))
            with pytest.raises(RuntimeError):
                with funded_ledger.atomic():
                    funded_ledger.apply(_pay(funded_ledger, "200"))
                    raise RuntimeError("inner")
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("100")

    def test_commit_hooks_run_after_outermost_commit(self, funded_ledger):
        fired = []
        with funded_ledger.atomic():
            funded_ledger.on_commit(lambda: fired.append("outer"))
            with funded_ledger.atomic():
                funded_ledger.on_commit(lambda: fired.append("inner"))
            assert fired == []
        assert fired == ["outer", "inner"]

    def test_commit_hooks_dropped_on_rollback(self, funded_ledger):
        fired = []
        with funded_ledger.atomic():
            with pytest.raises(RuntimeError):
                with funded_ledger.atomic():
                    funded_ledger.on_commit(lambda: fired.append("inner"))
                    raise RuntimeError("inner")
            funded_ledger.on_commit(lambda: fired.append("outer"))
        assert fired == ["outer"]

    def test_on_commit_outside_scope_runs_now(self, funded_ledger):
        fired = []
        funded_ledger.on_commit(lambda: fired.append(1))
        assert fired == [1]
        assert not funded_ledger.in_atomic

    def test_failing_hook_does_not_stop_the_others(self, funded_ledger):
        fired = []

        def broken():
            raise RuntimeError("hook")

        with pytest.raises(RuntimeError):
            with funded_ledger.atomic():
                funded_ledger.apply(_pay(funded_ledger, "100"))
                funded_ledger.on_commit(broken)
                funded_ledger.on_commit(lambda: fired.append("after"))
        assert fired == ["after"]
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("100")
        assert not funded_ledger.in_atomic


class TestCloneAt:

    def test_clone_at_rewinds_balances_and_state(self, funded_ledger):
        funded_ledger.register_unit(control_unit("REC", "record", UNIT_TYPE_FLIGHT, {'n': 0}))
        origin = TransactionOrigin(OriginType.SYSTEM, "test")
        funded_ledger.advance_time(T0 + timedelta(hours=1))
        funded_ledger.apply(_pay(funded_ledger, "100"))
        funded_ledger.advance_time(T0 + timedelta(hours=2))
        funded_ledger.apply(_pay(funded_ledger, "200"))
        funded_ledger.apply(compute_state_update(funded_ledger, "REC", {'n': 1}, origin))

        past = funded_ledger.clone_at(T0 + timedelta(hours=1))
        assert past.get_balance("bob", "USDC") == Decimal("100")
        assert past.get_unit_state("REC") == {'n': 0}
        assert funded_ledger.get_balance("bob", "USDC") == Decimal("300")

    def test_clone_at_future_fails(self, funded_ledger):
        with pytest.raises(ValueError):
            funded_ledger.clone_at(T0 + timedelta(days=1))

    def test_verify_double_entry(self, basic_ledger):
        basic_ledger.apply(build_transaction(basic_ledger, [
            Move(Decimal("500"), "USDC", SYSTEM_WALLET, "alice", "mint")
        ]))
        basic_ledger.apply(_pay(basic_ledger, "200"))
        report = basic_ledger.verify_double_entry({"USDC": Decimal("0")})
        assert report['valid']
