# src/lockdrop/models/ledger_state.py
"""Singleton row holding the ledger's global state."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import CHAR, BigInteger, CheckConstraint, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from lockdrop.db.session import Base
from lockdrop.utils.hash import GENESIS_DIGEST

LEDGER_STATE_ID = 1


class LedgerPhase(Enum):
    """Lifecycle of the staking ledger.

    OPEN -> CLOSED -> VAULT_READY, with CLOSED -> EMERGENCY_UNLOCKED when the
    grace deadline passes before a vault is configured.
    """

    OPEN = "open"
    CLOSED = "closed"
    VAULT_READY = "vault_ready"
    EMERGENCY_UNLOCKED = "emergency_unlocked"


class LedgerState(Base):
    """Global totals, deadlines and the head of the event chain."""

    __tablename__ = "ledger_state"
    __table_args__ = (CheckConstraint("total_staked >= 0", name="ck_ledger_state_total"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=LEDGER_STATE_ID)
    phase: Mapped[LedgerPhase] = mapped_column(
        SAEnum(LedgerPhase, native_enum=False, length=24),
        nullable=False,
        default=LedgerPhase.OPEN,
    )
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    total_staked: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    min_stake: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    window_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vault_grace_deadline: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Set once by the owner; immutable afterwards.
    vault_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    head_digest: Mapped[str] = mapped_column(CHAR(64), nullable=False, default=GENESIS_DIGEST)
