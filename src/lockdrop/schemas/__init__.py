# src/lockdrop/schemas/__init__.py
"""
Pydantic schemas for ledger events.

These schemas define the structure of event payloads for serialization and validation.
"""

from .events import (
    EventType,
    LedgerEvent,
    MigratedPayload,
    StakedPayload,
    UnstakedPayload,
    VaultSetPayload,
)

__all__ = [
    "EventType", "LedgerEvent",
    "MigratedPayload", "StakedPayload", "UnstakedPayload", "VaultSetPayload",
]
