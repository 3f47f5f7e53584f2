"""Value custody used by the ledger for deposits and payouts."""

from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import Protocol

from lockdrop.services.errors import PayoutFailed

logger = logging.getLogger(__name__)


class Treasury(Protocol):
    """Moves raw value between participants and the ledger's custody."""

    def collect(self, depositor: str, amount: int) -> None: ...

    def send(self, recipient: str, amount: int) -> None: ...


class InMemoryTreasury:
    """Process-local custody for tests and local runs.

    ``fail_next_send`` makes the next payout raise, to exercise rollbacks.
    """

    def __init__(self) -> None:
        self.held = 0
        self.collected: dict[str, int] = defaultdict(int)
        self.paid: dict[str, int] = defaultdict(int)
        self.fail_next_send = False
        self._lock = Lock()

    def collect(self, depositor: str, amount: int) -> None:
        with self._lock:
            self.collected[depositor] += amount
            self.held += amount

    def send(self, recipient: str, amount: int) -> None:
        with self._lock:
            if self.fail_next_send:
                self.fail_next_send = False
                raise PayoutFailed(f"transfer of {amount} to {recipient} rejected")
            if amount > self.held:
                raise PayoutFailed(f"custody holds {self.held}, cannot send {amount}")
            self.held -= amount
            self.paid[recipient] += amount
        logger.debug("Sent %d to %s", amount, recipient)

    def release(self, amount: int) -> None:
        """Hand ``amount`` of custody over to the vault bridge for wrapping."""
        with self._lock:
            if amount > self.held:
                raise PayoutFailed(f"custody holds {self.held}, cannot release {amount}")
            self.held -= amount

    def restore(self, amount: int) -> None:
        """Take back value the vault bridge unwrapped after a failed deposit."""
        with self._lock:
            self.held += amount
