# src/lockdrop/models/account.py
"""SQLAlchemy model for per-account stake balances."""

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Text
from sqlalchemy.orm import Mapped, mapped_column

from lockdrop.db.session import Base


class StakeAccount(Base):
    """Locked balance owned by a single participant.

    Rows are created on first stake and never deleted; a balance may reach zero.
    """

    __tablename__ = "stake_account"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_stake_account_balance"),)

    account: Mapped[str] = mapped_column(Text, primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    has_migrated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
