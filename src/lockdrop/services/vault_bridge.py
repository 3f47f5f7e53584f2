"""Adapter forwarding migrated balances into the external vault.

The bridge wraps raw value into the vault's asset, approves the vault for the
exact amount and calls its deposit capability. Whatever step fails before the
vault mints, the caller sees a single `ExternalDepositFailed` and the bridge
leaves no allowance and no wrapped balance behind. Once the vault has minted,
the deposit is reported as successful even if clearing a leftover allowance
fails.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

from lockdrop.services.errors import ExternalDepositFailed
from lockdrop.services.treasury import InMemoryTreasury

logger = logging.getLogger(__name__)


class WrappedAsset(Protocol):
    """Token form of the staked value that the vault accepts."""

    def wrap(self, holder: str, amount: int) -> None: ...

    def unwrap(self, holder: str, amount: int) -> None: ...

    def approve(self, holder: str, spender: str, amount: int) -> None: ...

    def allowance(self, holder: str, spender: str) -> int: ...

    def balance_of(self, holder: str) -> int: ...


class Vault(Protocol):
    """Opaque yield vault: takes wrapped value, mints shares."""

    @property
    def address(self) -> str: ...

    def deposit(self, amount: int, beneficiary: str) -> int: ...


class VaultBridge:
    """Converts and forwards value to a vault on behalf of the ledger."""

    def __init__(self, asset: WrappedAsset, vault: Vault, *, holder: str) -> None:
        self.asset = asset
        self.vault = vault
        self.holder = holder
        self._in_flight: set[str] = set()
        self._lock = Lock()

    def deposit(self, amount: int, beneficiary: str) -> int:
        """Deposit ``amount`` into the vault for ``beneficiary`` and return the shares."""
        if amount <= 0:
            raise ExternalDepositFailed(f"refusing to deposit non-positive amount {amount}")

        with self._lock:
            if beneficiary in self._in_flight:
                raise ExternalDepositFailed(f"deposit for {beneficiary} already in flight")
            self._in_flight.add(beneficiary)

        spender = self.vault.address
        baseline = 0
        try:
            baseline = self.asset.balance_of(self.holder)
            self.asset.wrap(self.holder, amount)
            self.asset.approve(self.holder, spender, amount)
            shares = self.vault.deposit(amount, beneficiary)
        except Exception as exc:
            logger.warning("Vault deposit of %d for %s failed: %s", amount, beneficiary, exc)
            self._unwind(spender, baseline)
            raise ExternalDepositFailed(f"vault deposit failed: {exc}") from exc
        finally:
            with self._lock:
                self._in_flight.discard(beneficiary)

        # The vault has minted; from here on the deposit counts as done.
        try:
            self._revoke(spender)
        except Exception as exc:
            logger.error(
                "Deposit for %s succeeded but revoking the vault allowance failed: %s",
                beneficiary,
                exc,
                exc_info=True,
            )
        logger.info("Deposited %d for %s into vault %s (%d shares)", amount, beneficiary, spender, shares)
        return int(shares)

    def _revoke(self, spender: str) -> None:
        if self.asset.allowance(self.holder, spender):
            self.asset.approve(self.holder, spender, 0)

    def _unwind(self, spender: str, baseline: int) -> None:
        try:
            self._revoke(spender)
            residual = self.asset.balance_of(self.holder) - baseline
            if residual > 0:
                self.asset.unwrap(self.holder, residual)
        except Exception as exc:
            logger.error("Could not unwind failed vault deposit: %s", exc, exc_info=True)


# In-memory implementations ------------------------------------------------------


class InMemoryWrappedAsset:
    """Wrapped-token ledger kept in process memory.

    When given a custody treasury, wrapping draws value from it and unwrapping
    returns value to it, so tests can check that nothing is stranded.
    """

    def __init__(self, custody: InMemoryTreasury | None = None) -> None:
        self.custody = custody
        self.balances: dict[str, int] = defaultdict(int)
        self.allowances: dict[tuple[str, str], int] = defaultdict(int)
        self.fail_on: set[str] = set()

    def _maybe_fail(self, step: str) -> None:
        if step in self.fail_on:
            raise ExternalDepositFailed(f"injected failure during {step}")

    def wrap(self, holder: str, amount: int) -> None:
        self._maybe_fail("wrap")
        if self.custody is not None:
            self.custody.release(amount)
        self.balances[holder] += amount

    def unwrap(self, holder: str, amount: int) -> None:
        if amount > self.balances[holder]:
            raise ValueError(f"{holder} holds {self.balances[holder]} wrapped, cannot unwrap {amount}")
        self.balances[holder] -= amount
        if self.custody is not None:
            self.custody.restore(amount)

    def approve(self, holder: str, spender: str, amount: int) -> None:
        if amount:
            self._maybe_fail("approve")
        self.allowances[(holder, spender)] = amount

    def allowance(self, holder: str, spender: str) -> int:
        return self.allowances[(holder, spender)]

    def balance_of(self, holder: str) -> int:
        return self.balances[holder]

    def transfer_from(self, spender: str, holder: str, recipient: str, amount: int) -> None:
        """Move approved tokens, consuming the allowance."""
        if self.allowances[(holder, spender)] < amount:
            raise ValueError(f"allowance of {spender} over {holder} below {amount}")
        if self.balances[holder] < amount:
            raise ValueError(f"{holder} holds less than {amount}")
        self.allowances[(holder, spender)] -= amount
        self.balances[holder] -= amount
        self.balances[recipient] += amount


@dataclass
class InMemoryVault:
    """Vault that pulls approved tokens and mints shares at a fixed ratio.

    Set ``fail_next_deposit`` to make the next deposit raise after the
    approval, exercising the caller's rollback path.
    """

    asset: InMemoryWrappedAsset
    address: str = "vault-0001"
    depositor: str = "lockdrop-ledger"
    shares_per_unit: int = 1
    fail_next_deposit: bool = False
    shares: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    total_assets: int = 0

    def deposit(self, amount: int, beneficiary: str) -> int:
        if self.fail_next_deposit:
            self.fail_next_deposit = False
            raise ExternalDepositFailed("vault rejected the deposit")
        self.asset.transfer_from(self.address, self.depositor, self.address, amount)
        minted = amount * self.shares_per_unit
        self.shares[beneficiary] += minted
        self.total_assets += amount
        return minted
