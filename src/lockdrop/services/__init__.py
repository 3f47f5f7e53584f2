# src/lockdrop/services/__init__.py
"""Business logic services for the lockdrop ledger."""

from .event_log import LedgerEventLog
from .indexer import EventIndexer
from .points import PointsLedger
from .stake_ledger import StakeLedger
from .vault_bridge import VaultBridge

__all__ = [
    "EventIndexer",
    "LedgerEventLog",
    "PointsLedger",
    "StakeLedger",
    "VaultBridge",
]
