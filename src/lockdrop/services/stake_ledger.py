"""Authoritative stake ledger.

This module provides the StakeLedger class that owns per-account balances and
global totals. Every mutating operation:

- runs under a single per-instance lock and one database transaction
- re-checks ``total_staked == sum(balances)`` before committing
- appends exactly one event to the hash-chained log on success
- rolls back entirely on any precondition or external failure
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from lockdrop.core.settings import settings
from lockdrop.db.time import Clock, epoch_seconds
from lockdrop.db.types import MAX_BIGINT
from lockdrop.models import LEDGER_STATE_ID, LedgerPhase, LedgerState, StakeAccount
from lockdrop.schemas.events import (
    LedgerEvent,
    MigratedPayload,
    StakedPayload,
    UnstakedPayload,
    VaultSetPayload,
)
from lockdrop.services.errors import (
    AlreadyMigrated,
    AmountTooLarge,
    BelowMinimum,
    InsufficientBalance,
    LedgerInvariantViolation,
    LockdropError,
    Unauthorized,
    VaultAlreadySet,
    VaultGraceExpired,
    VaultNotSet,
    WindowClosed,
    WindowStillOpen,
    ZeroAddress,
    ZeroAmount,
)
from lockdrop.services.event_log import append_event
from lockdrop.services.treasury import Treasury
from lockdrop.services.vault_bridge import VaultBridge

# Configure logger for this module
logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


def is_null_identity(value: str | None) -> bool:
    """Return True for the empty identity or the all-zero address."""
    return value is None or not value.strip() or value.strip().lower() == ZERO_ADDRESS


@dataclass(frozen=True)
class LedgerConfig:
    """Immutable parameters fixed when the ledger is initialized."""

    owner: str
    window_end: int
    vault_grace_period_seconds: int
    min_stake: int = 1

    @property
    def vault_grace_deadline(self) -> int:
        return self.window_end + self.vault_grace_period_seconds


def load_ledger_config() -> LedgerConfig:
    """Build configuration object from global settings."""
    if not settings.ledger_owner or settings.staking_window_end is None:
        raise ValueError("LOCKDROP_OWNER and LOCKDROP_WINDOW_END must be configured")
    return LedgerConfig(
        owner=settings.ledger_owner,
        window_end=int(settings.staking_window_end),
        vault_grace_period_seconds=int(settings.vault_grace_period_seconds),
        min_stake=int(settings.min_stake_amount),
    )


@dataclass(frozen=True)
class LedgerSnapshot:
    """Read-only view of the global state."""

    phase: LedgerPhase
    owner: str
    total_staked: int
    min_stake: int
    window_end: int
    vault_grace_deadline: int
    vault_address: str | None
    last_sequence: int
    head_digest: str


def next_phase(state: LedgerState, now: int) -> LedgerPhase:
    """Return the phase ``state`` is in at time ``now``.

    Only clock-driven transitions happen here; CLOSED -> VAULT_READY is an
    explicit owner action.
    """
    phase = state.phase
    if phase is LedgerPhase.OPEN and now >= state.window_end:
        phase = LedgerPhase.CLOSED
    if (
        phase is LedgerPhase.CLOSED
        and state.vault_address is None
        and now >= state.vault_grace_deadline
    ):
        phase = LedgerPhase.EMERGENCY_UNLOCKED
    return phase


def _require_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"amount must be an integer number of base units, got {amount!r}")
    return amount


def _snapshot(state: LedgerState, phase: LedgerPhase | None = None) -> LedgerSnapshot:
    return LedgerSnapshot(
        phase=phase or state.phase,
        owner=state.owner,
        total_staked=int(state.total_staked),
        min_stake=int(state.min_stake),
        window_end=int(state.window_end),
        vault_grace_deadline=int(state.vault_grace_deadline),
        vault_address=state.vault_address,
        last_sequence=int(state.last_sequence),
        head_digest=state.head_digest,
    )


class StakeLedger:
    """Single-writer state machine over stake balances.

    Args:
        treasury: Custody used to collect stakes and pay out unstakes.
        vault_bridge: Adapter used by ``migrate_to_vault``; may be None until a
            vault exists, in which case migration raises VaultNotSet.
        config: Parameters applied by ``initialize``; defaults to settings.
        session_factory: SQLAlchemy session factory; defaults to SessionLocal.
        clock: Callable returning the current epoch second.
    """

    def __init__(
        self,
        treasury: Treasury,
        vault_bridge: VaultBridge | None = None,
        *,
        config: LedgerConfig | None = None,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
    ) -> None:
        if session_factory is None:
            from lockdrop.db.session import SessionLocal

            session_factory = SessionLocal
        self.treasury = treasury
        self.vault_bridge = vault_bridge
        self._config = config
        self._session_factory = session_factory
        self._clock = clock or epoch_seconds
        self._lock = RLock()

    # --- Transaction plumbing -------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._lock, self._session_factory() as db:
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise

    def _load_state(self, db: Session, now: int) -> LedgerState:
        state = db.scalars(
            select(LedgerState).where(LedgerState.id == LEDGER_STATE_ID).with_for_update()
        ).first()
        if state is None:
            raise LockdropError("Ledger is not initialized; call initialize() first")
        phase = next_phase(state, now)
        if phase is not state.phase:
            logger.info("Ledger phase %s -> %s", state.phase.value, phase.value)
            state.phase = phase
        return state

    def _check_totals(self, db: Session, state: LedgerState) -> None:
        db.flush()
        balance_sum = db.scalar(select(func.coalesce(func.sum(StakeAccount.balance), 0)))
        negative = db.scalar(
            select(func.count()).select_from(StakeAccount).where(StakeAccount.balance < 0)
        )
        if negative:
            raise LedgerInvariantViolation(f"{negative} account(s) with negative balance")
        if int(balance_sum or 0) != int(state.total_staked):
            raise LedgerInvariantViolation(
                f"total_staked={state.total_staked} but balances sum to {balance_sum}"
            )

    # --- Lifecycle ------------------------------------------------------------------

    def initialize(self) -> LedgerSnapshot:
        """Create the global state row if it does not exist yet."""
        with self._transaction() as db:
            state = db.get(LedgerState, LEDGER_STATE_ID)
            if state is None:
                config = self._config or load_ledger_config()
                if is_null_identity(config.owner):
                    raise ZeroAddress("ledger owner is the null identity")
                state = LedgerState(
                    id=LEDGER_STATE_ID,
                    phase=LedgerPhase.OPEN,
                    owner=config.owner,
                    total_staked=0,
                    min_stake=config.min_stake,
                    window_end=config.window_end,
                    vault_grace_deadline=config.vault_grace_deadline,
                    vault_address=None,
                    last_sequence=0,
                )
                db.add(state)
                db.flush()
                logger.info(
                    "Initialized ledger owned by %s, window ends at %d", config.owner, config.window_end
                )
            return _snapshot(state)

    def close_window(self) -> LedgerPhase:
        """Move OPEN -> CLOSED once the window end has passed; no-op otherwise."""
        with self._transaction() as db:
            state = self._load_state(db, self._clock())
            if state.phase is LedgerPhase.OPEN:
                logger.debug("close_window called before window end; nothing to do")
            return state.phase

    # --- Stake / unstake ------------------------------------------------------------

    def stake(self, depositor: str, beneficiary: str, amount: int) -> LedgerEvent:
        """Lock ``amount`` for ``beneficiary``, adding to any existing balance."""
        amount = _require_amount(amount)
        with self._transaction() as db:
            now = self._clock()
            state = self._load_state(db, now)
            if state.phase is not LedgerPhase.OPEN:
                raise WindowClosed("staking window is closed")
            if is_null_identity(beneficiary):
                raise ZeroAddress("beneficiary is the null identity")
            if amount < state.min_stake:
                raise BelowMinimum(f"stake of {amount} is below the minimum of {state.min_stake}")
            if amount <= 0:
                raise ZeroAmount("stake amount must be positive")
            if state.total_staked + amount > MAX_BIGINT:
                raise AmountTooLarge(f"stake of {amount} would exceed the ledger maximum of {MAX_BIGINT}")

            account = db.get(StakeAccount, beneficiary)
            if account is None:
                account = StakeAccount(account=beneficiary, balance=0, has_migrated=False)
                db.add(account)
            account.balance += amount
            state.total_staked += amount
            self._check_totals(db, state)

            event = append_event(
                db,
                state,
                StakedPayload(account=beneficiary, amount=amount, depositor=depositor),
                now,
            )
            self.treasury.collect(depositor, amount)

        logger.info("Staked %d for %s (depositor %s)", amount, beneficiary, depositor)
        return event

    def unstake(self, caller: str, amount: int, recipient: str) -> LedgerEvent:
        """Release ``amount`` of the caller's balance to ``recipient``.

        Allowed while the window is open, or after the emergency unlock.
        """
        amount = _require_amount(amount)
        with self._transaction() as db:
            now = self._clock()
            state = self._load_state(db, now)
            if state.phase not in (LedgerPhase.OPEN, LedgerPhase.EMERGENCY_UNLOCKED):
                raise WindowClosed("unstaking is only possible while the window is open")
            event = self._release(db, state, caller, amount, recipient, now)

        logger.info("Unstaked %d from %s to %s", amount, caller, recipient)
        return event

    def emergency_unstake(self, caller: str, amount: int, recipient: str) -> LedgerEvent:
        """Unstake after the vault grace deadline passed with no vault configured."""
        amount = _require_amount(amount)
        with self._transaction() as db:
            now = self._clock()
            state = self._load_state(db, now)
            if state.phase is LedgerPhase.VAULT_READY:
                raise VaultAlreadySet("vault is configured; migrate instead")
            if state.phase is not LedgerPhase.EMERGENCY_UNLOCKED:
                raise WindowStillOpen(
                    f"emergency unlock starts at {state.vault_grace_deadline}, now {now}"
                )
            event = self._release(db, state, caller, amount, recipient, now)

        logger.warning("Emergency unstake of %d from %s to %s", amount, caller, recipient)
        return event

    def _release(
        self,
        db: Session,
        state: LedgerState,
        caller: str,
        amount: int,
        recipient: str,
        now: int,
    ) -> LedgerEvent:
        if is_null_identity(recipient):
            raise ZeroAddress("recipient is the null identity")
        if amount <= 0:
            raise ZeroAmount("unstake amount must be positive")
        account = db.get(StakeAccount, caller)
        if account is None or account.balance < amount:
            held = account.balance if account else 0
            raise InsufficientBalance(f"{caller} holds {held}, cannot unstake {amount}")

        account.balance -= amount
        state.total_staked -= amount
        self._check_totals(db, state)
        event = append_event(
            db,
            state,
            UnstakedPayload(account=caller, amount=amount, recipient=recipient),
            now,
        )
        # Last step before commit: a failed payout rolls back the debit.
        self.treasury.send(recipient, amount)
        return event

    # --- Vault ----------------------------------------------------------------------

    def set_vault_address(self, caller: str, address: str) -> LedgerEvent:
        """Configure the vault destination once (owner only)."""
        with self._transaction() as db:
            now = self._clock()
            state = self._load_state(db, now)
            if caller != state.owner:
                raise Unauthorized(f"{caller} is not the ledger owner")
            if is_null_identity(address):
                raise ZeroAddress("vault address is the null identity")
            if state.vault_address is not None:
                raise VaultAlreadySet(f"vault already set to {state.vault_address}")
            if state.phase is LedgerPhase.OPEN:
                raise WindowStillOpen("vault can only be set after the window closes")
            if state.phase is LedgerPhase.EMERGENCY_UNLOCKED:
                raise VaultGraceExpired("grace period expired; emergency unlock is active")
            if self.vault_bridge is not None and self.vault_bridge.vault.address != address:
                raise ValueError(
                    f"vault bridge targets {self.vault_bridge.vault.address}, not {address}"
                )

            state.vault_address = address
            state.phase = LedgerPhase.VAULT_READY
            event = append_event(db, state, VaultSetPayload(vault_address=address), now)

        logger.info("Vault set to %s", address)
        return event

    def migrate_to_vault(self, caller: str) -> LedgerEvent:
        """Move the caller's whole balance into the vault, exactly once.

        The balance is debited before the vault is called; a failed deposit
        rolls the debit back with the rest of the transaction.
        """
        with self._transaction() as db:
            now = self._clock()
            state = self._load_state(db, now)
            if state.phase is LedgerPhase.OPEN:
                raise WindowStillOpen("migration opens after the staking window")
            if state.phase is not LedgerPhase.VAULT_READY or self.vault_bridge is None:
                raise VaultNotSet("no vault configured")

            account = db.get(StakeAccount, caller)
            if account is not None and account.has_migrated:
                raise AlreadyMigrated(f"{caller} already migrated")
            if account is None or account.balance == 0:
                raise InsufficientBalance(f"{caller} has nothing to migrate")

            amount = int(account.balance)
            account.balance = 0
            account.has_migrated = True
            state.total_staked -= amount
            self._check_totals(db, state)

            vault_address = state.vault_address
            shares = self.vault_bridge.deposit(amount, caller)
            event = append_event(
                db,
                state,
                MigratedPayload(account=caller, amount=amount, shares_received=shares),
                now,
            )

        logger.info("Migrated %d for %s into %s (%d shares)", amount, caller, vault_address, shares)
        return event

    # --- Queries --------------------------------------------------------------------

    def balance_of(self, account: str) -> int:
        with self._session_factory() as db:
            row = db.get(StakeAccount, account)
            return int(row.balance) if row else 0

    def has_migrated(self, account: str) -> bool:
        with self._session_factory() as db:
            row = db.get(StakeAccount, account)
            return bool(row and row.has_migrated)

    def snapshot(self) -> LedgerSnapshot:
        """Return the global state as seen at the current clock reading."""
        with self._session_factory() as db:
            state = db.get(LedgerState, LEDGER_STATE_ID)
            if state is None:
                raise LockdropError("Ledger is not initialized; call initialize() first")
            return _snapshot(state, next_phase(state, self._clock()))

    def phase(self) -> LedgerPhase:
        return self.snapshot().phase

    def total_staked(self) -> int:
        return self.snapshot().total_staked

    def verify_invariants(self) -> None:
        """Raise LedgerInvariantViolation if totals and balances disagree."""
        with self._lock, self._session_factory() as db:
            state = db.get(LedgerState, LEDGER_STATE_ID)
            if state is None:
                raise LockdropError("Ledger is not initialized; call initialize() first")
            self._check_totals(db, state)
