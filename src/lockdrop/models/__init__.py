# src/lockdrop/models/__init__.py
"""SQLAlchemy models for the lockdrop ledger."""

from .account import StakeAccount
from .ledger_event import LedgerEventRecord
from .ledger_state import LEDGER_STATE_ID, LedgerPhase, LedgerState
from .points import IndexerCheckpoint, PointsAccount

__all__ = [
    "StakeAccount",
    "LedgerEventRecord",
    "LEDGER_STATE_ID", "LedgerPhase", "LedgerState",
    "IndexerCheckpoint", "PointsAccount",
]
