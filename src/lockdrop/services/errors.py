"""Error taxonomy shared by the ledger, the vault bridge and the indexer."""

from __future__ import annotations


class LockdropError(RuntimeError):
    """Base exception for every lockdrop failure."""


# Ledger preconditions -----------------------------------------------------------


class WindowClosed(LockdropError):
    """Raised when an operation needs the staking window to be open."""


class WindowStillOpen(LockdropError):
    """Raised when an operation needs a deadline that has not passed yet."""


class BelowMinimum(LockdropError):
    """Raised when a stake is smaller than the configured minimum."""


class ZeroAddress(LockdropError):
    """Raised when a beneficiary, recipient or vault identity is null."""


class ZeroAmount(LockdropError):
    """Raised when an amount of zero is supplied."""


class AmountTooLarge(LockdropError):
    """Raised when a stake would push a balance or the total past the storable maximum."""


class InsufficientBalance(LockdropError):
    """Raised when an account cannot cover the requested amount."""


class AlreadyMigrated(InsufficientBalance):
    """Raised when an account that already migrated tries again.

    Subclasses InsufficientBalance: a migrated account has nothing left to move.
    """


class VaultNotSet(LockdropError):
    """Raised when migration is attempted before a vault is configured."""


class VaultAlreadySet(LockdropError):
    """Raised when the vault address is assigned twice."""


class VaultGraceExpired(LockdropError):
    """Raised when the vault is configured after the emergency unlock."""


class Unauthorized(LockdropError):
    """Raised when a non-owner invokes a privileged operation."""


class LedgerInvariantViolation(LockdropError):
    """Raised when totals drift from the sum of balances; the mutation is rolled back."""


# External calls -----------------------------------------------------------------


class ExternalDepositFailed(LockdropError):
    """Raised when the vault deposit fails at any sub-step."""


class PayoutFailed(LockdropError):
    """Raised when the treasury cannot transfer value to a recipient."""


# Indexer ------------------------------------------------------------------------


class SequenceGapDetected(LockdropError):
    """Raised when the event stream skips or reorders a sequence number."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"expected event #{expected}, received #{received}")
        self.expected = expected
        self.received = received


class LogCorruptionDetected(LockdropError):
    """Raised when an event does not extend the checkpointed hash chain."""


class EventStreamUnavailable(LockdropError):
    """Raised when the event stream keeps failing after every retry."""
