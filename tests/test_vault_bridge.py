# mypy: ignore-errors
"""Tests for the vault bridge adapter and its in-memory counterparts."""

from __future__ import annotations

import logging

import pytest

from lockdrop.services.errors import ExternalDepositFailed
from lockdrop.services.vault_bridge import InMemoryVault, VaultBridge
from tests.conftest import HOLDER


@pytest.fixture()
def funded(treasury):
    treasury.collect("alice", 100)
    return treasury


def test_deposit_returns_minted_shares(bridge, vault, wrapped_asset, funded) -> None:
    vault.shares_per_unit = 3

    shares = bridge.deposit(40, "alice")

    assert shares == 120
    assert vault.shares["alice"] == 120
    assert vault.total_assets == 40
    assert funded.held == 60
    assert wrapped_asset.balance_of(vault.address) == 40
    assert wrapped_asset.allowance(HOLDER, vault.address) == 0


@pytest.mark.parametrize("amount", [0, -1])
def test_deposit_rejects_non_positive_amount(bridge, vault, amount) -> None:
    with pytest.raises(ExternalDepositFailed):
        bridge.deposit(amount, "alice")
    assert vault.total_assets == 0


@pytest.mark.parametrize("step", ["wrap", "approve"])
def test_failure_before_deposit_leaves_nothing_behind(bridge, vault, wrapped_asset, funded, step) -> None:
    wrapped_asset.fail_on.add(step)

    with pytest.raises(ExternalDepositFailed, match=step):
        bridge.deposit(40, "alice")

    assert funded.held == 100
    assert wrapped_asset.balance_of(HOLDER) == 0
    assert wrapped_asset.allowance(HOLDER, vault.address) == 0


def test_failed_deposit_revokes_allowance(bridge, vault, wrapped_asset, funded) -> None:
    vault.fail_next_deposit = True

    with pytest.raises(ExternalDepositFailed, match="rejected"):
        bridge.deposit(40, "alice")

    assert wrapped_asset.allowance(HOLDER, vault.address) == 0
    assert wrapped_asset.balance_of(HOLDER) == 0
    assert funded.held == 100


def test_unwind_preserves_pre_existing_wrapped_balance(bridge, vault, wrapped_asset, funded) -> None:
    wrapped_asset.balances[HOLDER] = 7
    vault.fail_next_deposit = True

    with pytest.raises(ExternalDepositFailed):
        bridge.deposit(40, "alice")

    assert wrapped_asset.balance_of(HOLDER) == 7
    assert funded.held == 100


class ReentrantVault(InMemoryVault):
    """Vault that calls back into the bridge during its deposit."""

    bridge: VaultBridge | None = None
    inner_error: Exception | None = None

    def deposit(self, amount: int, beneficiary: str) -> int:
        try:
            self.bridge.deposit(amount, beneficiary)
        except ExternalDepositFailed as exc:
            self.inner_error = exc
            raise
        return super().deposit(amount, beneficiary)


def test_reentrant_deposit_is_rejected(wrapped_asset, funded) -> None:
    vault = ReentrantVault(asset=wrapped_asset, depositor=HOLDER)
    bridge = VaultBridge(wrapped_asset, vault, holder=HOLDER)
    vault.bridge = bridge

    with pytest.raises(ExternalDepositFailed):
        bridge.deposit(10, "alice")

    assert "already in flight" in str(vault.inner_error)
    assert vault.total_assets == 0
    assert funded.held == 100
    assert wrapped_asset.allowance(HOLDER, vault.address) == 0


def test_in_flight_marker_is_cleared_after_failure(bridge, vault, funded) -> None:
    vault.fail_next_deposit = True
    with pytest.raises(ExternalDepositFailed):
        bridge.deposit(10, "alice")

    assert bridge.deposit(10, "alice") == 10


def test_unwind_failure_is_logged(mocker, caplog) -> None:
    asset = mocker.MagicMock()
    asset.balance_of.return_value = 0
    asset.allowance.side_effect = OSError("asset service down")
    target = mocker.MagicMock()
    target.address = "vault-0001"
    target.deposit.side_effect = ValueError("vault paused")
    bridge = VaultBridge(asset, target, holder=HOLDER)

    with caplog.at_level(logging.ERROR, logger="lockdrop.services.vault_bridge"):
        with pytest.raises(ExternalDepositFailed, match="vault paused"):
            bridge.deposit(5, "alice")

    assert "Could not unwind" in caplog.text
    asset.wrap.assert_called_once_with(HOLDER, 5)
    asset.approve.assert_called_once_with(HOLDER, "vault-0001", 5)


def test_unwind_failure_of_any_kind_keeps_single_error(mocker) -> None:
    asset = mocker.MagicMock()
    asset.balance_of.return_value = 0
    asset.allowance.side_effect = KeyError("vault-0001")
    target = mocker.MagicMock()
    target.address = "vault-0001"
    target.deposit.side_effect = ExternalDepositFailed("vault rejected the deposit")
    bridge = VaultBridge(asset, target, holder=HOLDER)

    with pytest.raises(ExternalDepositFailed, match="rejected"):
        bridge.deposit(5, "alice")


def _reject_revocations(mocker, wrapped_asset) -> None:
    original = wrapped_asset.approve

    def approve(holder, spender, amount):
        if amount == 0:
            raise ValueError("revoke rejected")
        return original(holder, spender, amount)

    mocker.patch.object(wrapped_asset, "approve", side_effect=approve)
    mocker.patch.object(wrapped_asset, "allowance", return_value=1)


def test_revoke_failure_after_deposit_keeps_the_deposit(
    bridge, vault, wrapped_asset, funded, mocker, caplog
) -> None:
    _reject_revocations(mocker, wrapped_asset)

    with caplog.at_level(logging.ERROR, logger="lockdrop.services.vault_bridge"):
        shares = bridge.deposit(40, "alice")

    assert shares == 40
    assert vault.shares["alice"] == 40
    assert funded.held == 60
    assert "revoking the vault allowance failed" in caplog.text
