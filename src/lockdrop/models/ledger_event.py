# src/lockdrop/models/ledger_event.py
"""Append-only storage for ledger events."""

from typing import Any

from sqlalchemy import CHAR, JSON, BigInteger, Text
from sqlalchemy.orm import Mapped, mapped_column

from lockdrop.db.session import Base


class LedgerEventRecord(Base):
    """One immutable entry of the ledger's event log.

    Sequences start at 1 and are assigned inside the mutating transaction, so a
    rolled back operation never leaves a gap.
    """

    __tablename__ = "ledger_event"

    sequence: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)  # e.g., 'Staked'
    account: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    prev_digest: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    digest: Mapped[str] = mapped_column(CHAR(64), nullable=False, unique=True)
