# src/lockdrop/models/points.py
"""Derived, rebuildable state owned by the points indexer."""

from sqlalchemy import CHAR, BigInteger, Text
from sqlalchemy.orm import Mapped, mapped_column

from lockdrop.db.session import Base
from lockdrop.db.types import IntegerText
from lockdrop.utils.hash import GENESIS_DIGEST


class PointsAccount(Base):
    """Accrued points for one participant.

    Written only while applying replayed ledger events.
    """

    __tablename__ = "points_account"

    account: Mapped[str] = mapped_column(Text, primary_key=True)
    # Balance implied by the replayed stream, not read from the ledger.
    staked: Mapped[int] = mapped_column(IntegerText, nullable=False, default=0)
    # Integrated balance-over-time in unit-seconds; points = accrued * rate.
    accrued: Mapped[int] = mapped_column(IntegerText, nullable=False, default=0)
    active_stake_since: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_accrual_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class IndexerCheckpoint(Base):
    """Last event sequence durably applied by a named consumer."""

    __tablename__ = "indexer_checkpoint"

    name: Mapped[str] = mapped_column(Text, primary_key=True)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_digest: Mapped[str] = mapped_column(CHAR(64), nullable=False, default=GENESIS_DIGEST)
