# mypy: ignore-errors
"""Tests for the stake ledger state machine."""

from __future__ import annotations

import random

import pytest
from sqlalchemy import select

from lockdrop.models import LedgerPhase, LedgerState, StakeAccount
from lockdrop.schemas.events import EventType
from lockdrop.services.errors import (
    AmountTooLarge,
    BelowMinimum,
    InsufficientBalance,
    LedgerInvariantViolation,
    LockdropError,
    PayoutFailed,
    Unauthorized,
    VaultAlreadySet,
    VaultGraceExpired,
    WindowClosed,
    WindowStillOpen,
    ZeroAddress,
    ZeroAmount,
)
from lockdrop.services.stake_ledger import ZERO_ADDRESS, StakeLedger, is_null_identity
from tests.conftest import GRACE_DEADLINE, OWNER, WINDOW_END


def _balances(session_factory) -> dict[str, int]:
    with session_factory() as db:
        rows = db.scalars(select(StakeAccount)).all()
        return {row.account: row.balance for row in rows}


# --- Initialization -------------------------------------------------------------


def test_initialize_is_idempotent(ledger) -> None:
    again = ledger.initialize()
    assert again.phase is LedgerPhase.OPEN
    assert again.owner == OWNER
    assert again.total_staked == 0
    assert again.last_sequence == 0


def test_operations_require_initialized_ledger(treasury, session_factory, clock) -> None:
    ledger = StakeLedger(treasury, session_factory=session_factory, clock=clock)
    with pytest.raises(LockdropError, match="not initialized"):
        ledger.stake("alice", "alice", 10)


def test_initialize_rejects_null_owner(make_ledger) -> None:
    with pytest.raises(ZeroAddress):
        make_ledger(owner=ZERO_ADDRESS)


@pytest.mark.parametrize("value", [None, "", "   ", ZERO_ADDRESS, ZERO_ADDRESS.upper()])
def test_is_null_identity(value) -> None:
    assert is_null_identity(value)


# --- Stake ----------------------------------------------------------------------


def test_stake_is_additive(ledger, treasury) -> None:
    first = ledger.stake("alice", "alice", 50)
    second = ledger.stake("alice", "alice", 70)

    assert ledger.balance_of("alice") == 120
    assert ledger.total_staked() == 120
    assert treasury.held == 120
    assert treasury.collected["alice"] == 120
    assert (first.sequence, second.sequence) == (1, 2)
    assert first.event_type is EventType.STAKED
    assert second.payload.amount == 70


def test_stake_on_behalf_of_another_account(ledger, treasury) -> None:
    event = ledger.stake("carol", "alice", 40)

    assert ledger.balance_of("alice") == 40
    assert ledger.balance_of("carol") == 0
    assert treasury.collected["carol"] == 40
    assert event.account == "alice"
    assert event.payload.depositor == "carol"


@pytest.mark.parametrize(
    ("beneficiary", "amount", "error"),
    [
        ("", 10, ZeroAddress),
        (ZERO_ADDRESS, 10, ZeroAddress),
        ("alice", 0, BelowMinimum),
        ("alice", -5, BelowMinimum),
    ],
)
def test_stake_rejections_leave_no_trace(ledger, treasury, beneficiary, amount, error) -> None:
    with pytest.raises(error):
        ledger.stake("alice", beneficiary, amount)

    snapshot = ledger.snapshot()
    assert snapshot.total_staked == 0
    assert snapshot.last_sequence == 0
    assert treasury.held == 0


def test_stake_below_configured_minimum(make_ledger) -> None:
    ledger = make_ledger(min_stake=10)
    with pytest.raises(BelowMinimum):
        ledger.stake("alice", "alice", 9)
    ledger.stake("alice", "alice", 10)
    assert ledger.balance_of("alice") == 10


def test_stake_zero_with_zero_minimum(make_ledger) -> None:
    ledger = make_ledger(min_stake=0)
    with pytest.raises(ZeroAmount):
        ledger.stake("alice", "alice", 0)


def test_stake_beyond_storable_total_is_rejected(ledger, treasury) -> None:
    with pytest.raises(AmountTooLarge):
        ledger.stake("alice", "alice", 2**63)

    ledger.stake("alice", "alice", 2**62)
    with pytest.raises(AmountTooLarge):
        ledger.stake("bob", "bob", 2**62)

    assert ledger.balance_of("bob") == 0
    assert ledger.total_staked() == 2**62
    assert treasury.held == 2**62
    assert ledger.snapshot().last_sequence == 1
    ledger.verify_invariants()


def test_stake_requires_integer_amount(ledger) -> None:
    with pytest.raises(TypeError):
        ledger.stake("alice", "alice", 1.5)
    with pytest.raises(TypeError):
        ledger.stake("alice", "alice", True)


def test_stake_after_window_is_rejected(ledger, clock) -> None:
    ledger.stake("alice", "alice", 10)
    clock.set(WINDOW_END)

    with pytest.raises(WindowClosed):
        ledger.stake("alice", "alice", 10)
    assert ledger.balance_of("alice") == 10
    assert ledger.phase() is LedgerPhase.CLOSED


def test_failed_collection_rolls_back_stake(ledger, treasury, mocker) -> None:
    mocker.patch.object(treasury, "collect", side_effect=PayoutFailed("card declined"))

    with pytest.raises(PayoutFailed):
        ledger.stake("alice", "alice", 25)

    assert ledger.balance_of("alice") == 0
    assert ledger.snapshot().last_sequence == 0


# --- Unstake --------------------------------------------------------------------


def test_partial_unstake_during_window(ledger, treasury) -> None:
    ledger.stake("alice", "alice", 100)
    event = ledger.unstake("alice", 30, "alice-cold")

    assert ledger.balance_of("alice") == 70
    assert ledger.total_staked() == 70
    assert treasury.paid["alice-cold"] == 30
    assert event.event_type is EventType.UNSTAKED
    assert event.payload.recipient == "alice-cold"


def test_unstake_more_than_balance(ledger, treasury) -> None:
    ledger.stake("alice", "alice", 10)
    with pytest.raises(InsufficientBalance):
        ledger.unstake("alice", 11, "alice")
    with pytest.raises(InsufficientBalance):
        ledger.unstake("bob", 1, "bob")

    assert ledger.balance_of("alice") == 10
    assert treasury.held == 10


def test_unstake_argument_checks(ledger) -> None:
    ledger.stake("alice", "alice", 10)
    with pytest.raises(ZeroAmount):
        ledger.unstake("alice", 0, "alice")
    with pytest.raises(ZeroAddress):
        ledger.unstake("alice", 5, ZERO_ADDRESS)
    assert ledger.snapshot().last_sequence == 1


def test_unstake_after_window_is_rejected(ledger, clock) -> None:
    ledger.stake("alice", "alice", 10)
    clock.set(WINDOW_END + 1)
    with pytest.raises(WindowClosed):
        ledger.unstake("alice", 10, "alice")


def test_failed_payout_rolls_back_debit(ledger, treasury) -> None:
    ledger.stake("alice", "alice", 100)
    treasury.fail_next_send = True

    with pytest.raises(PayoutFailed):
        ledger.unstake("alice", 40, "alice")

    assert ledger.balance_of("alice") == 100
    assert ledger.total_staked() == 100
    assert ledger.snapshot().last_sequence == 1
    assert treasury.held == 100


# --- Invariants -----------------------------------------------------------------


def test_total_matches_balances_under_interleaving(ledger, session_factory) -> None:
    rng = random.Random(7)
    accounts = ["alice", "bob", "carol", "dave"]

    for _ in range(120):
        account = rng.choice(accounts)
        if rng.random() < 0.6:
            ledger.stake(rng.choice(accounts), account, rng.randint(1, 50))
        else:
            held = ledger.balance_of(account)
            if held:
                ledger.unstake(account, rng.randint(1, held), account)

        balances = _balances(session_factory)
        assert sum(balances.values()) == ledger.total_staked()
        assert all(balance >= 0 for balance in balances.values())

    ledger.verify_invariants()


def test_invariant_violation_blocks_mutations(ledger, session_factory) -> None:
    ledger.stake("alice", "alice", 10)
    with session_factory() as db:
        state = db.get(LedgerState, 1)
        state.total_staked += 1
        db.commit()

    with pytest.raises(LedgerInvariantViolation):
        ledger.verify_invariants()
    with pytest.raises(LedgerInvariantViolation):
        ledger.stake("alice", "alice", 5)
    assert ledger.balance_of("alice") == 10


# --- Phases ---------------------------------------------------------------------


def test_close_window(ledger, clock) -> None:
    assert ledger.close_window() is LedgerPhase.OPEN
    clock.set(WINDOW_END)
    assert ledger.close_window() is LedgerPhase.CLOSED


def test_phase_is_derived_from_clock(ledger, clock) -> None:
    assert ledger.phase() is LedgerPhase.OPEN
    clock.set(WINDOW_END)
    assert ledger.phase() is LedgerPhase.CLOSED
    clock.set(GRACE_DEADLINE)
    assert ledger.phase() is LedgerPhase.EMERGENCY_UNLOCKED


# --- Vault address --------------------------------------------------------------


def test_set_vault_address(ledger, vault, clock) -> None:
    clock.set(WINDOW_END)
    event = ledger.set_vault_address(OWNER, vault.address)

    assert event.event_type is EventType.VAULT_SET
    snapshot = ledger.snapshot()
    assert snapshot.phase is LedgerPhase.VAULT_READY
    assert snapshot.vault_address == vault.address

    with pytest.raises(VaultAlreadySet):
        ledger.set_vault_address(OWNER, vault.address)


def test_set_vault_address_rejections(ledger, vault, clock) -> None:
    with pytest.raises(Unauthorized):
        ledger.set_vault_address("mallory", vault.address)
    with pytest.raises(WindowStillOpen):
        ledger.set_vault_address(OWNER, vault.address)

    clock.set(WINDOW_END)
    with pytest.raises(ZeroAddress):
        ledger.set_vault_address(OWNER, ZERO_ADDRESS)
    with pytest.raises(ValueError):
        ledger.set_vault_address(OWNER, "vault-9999")
    assert ledger.snapshot().vault_address is None


def test_set_vault_address_after_grace_deadline(ledger, vault, clock) -> None:
    clock.set(GRACE_DEADLINE)
    with pytest.raises(VaultGraceExpired):
        ledger.set_vault_address(OWNER, vault.address)
    assert ledger.phase() is LedgerPhase.EMERGENCY_UNLOCKED


def test_set_vault_address_without_bridge(make_ledger, clock) -> None:
    ledger = make_ledger(vault_bridge=None)
    clock.set(WINDOW_END)
    ledger.set_vault_address(OWNER, "vault-external")
    assert ledger.snapshot().vault_address == "vault-external"
