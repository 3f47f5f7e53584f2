"""initial lockdrop schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

GENESIS_DIGEST = "0" * 64


def upgrade() -> None:
    """Create ledger, event log, checkpoint and points tables."""
    op.create_table(
        "stake_account",
        sa.Column("account", sa.Text(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False),
        sa.Column("has_migrated", sa.Boolean(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_stake_account_balance"),
        sa.PrimaryKeyConstraint("account"),
    )
    op.create_table(
        "ledger_state",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column(
            "phase",
            sa.Enum(
                "OPEN",
                "CLOSED",
                "VAULT_READY",
                "EMERGENCY_UNLOCKED",
                name="ledgerphase",
                native_enum=False,
                length=24,
            ),
            nullable=False,
        ),
        sa.Column("owner", sa.Text(), nullable=False),
        sa.Column("total_staked", sa.BigInteger(), nullable=False),
        sa.Column("min_stake", sa.BigInteger(), nullable=False),
        sa.Column("window_end", sa.BigInteger(), nullable=False),
        sa.Column("vault_grace_deadline", sa.BigInteger(), nullable=False),
        sa.Column("vault_address", sa.Text(), nullable=True),
        sa.Column("last_sequence", sa.BigInteger(), nullable=False),
        sa.Column("head_digest", sa.CHAR(length=64), nullable=False),
        sa.CheckConstraint("total_staked >= 0", name="ck_ledger_state_total"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "ledger_event",
        sa.Column("sequence", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("account", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("prev_digest", sa.CHAR(length=64), nullable=False),
        sa.Column("digest", sa.CHAR(length=64), nullable=False),
        sa.PrimaryKeyConstraint("sequence"),
        sa.UniqueConstraint("digest"),
    )
    op.create_index("ix_ledger_event_account", "ledger_event", ["account"])
    op.create_table(
        "indexer_checkpoint",
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("last_sequence", sa.BigInteger(), nullable=False),
        sa.Column(
            "last_digest",
            sa.CHAR(length=64),
            nullable=False,
            server_default=GENESIS_DIGEST,
        ),
        sa.PrimaryKeyConstraint("name"),
    )
    op.create_table(
        "points_account",
        sa.Column("account", sa.Text(), nullable=False),
        sa.Column("staked", sa.Text(), nullable=False),
        sa.Column("accrued", sa.Text(), nullable=False),
        sa.Column("active_stake_since", sa.BigInteger(), nullable=True),
        sa.Column("last_accrual_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("account"),
    )


def downgrade() -> None:
    """Drop every lockdrop table."""
    op.drop_table("points_account")
    op.drop_table("indexer_checkpoint")
    op.drop_index("ix_ledger_event_account", table_name="ledger_event")
    op.drop_table("ledger_event")
    op.drop_table("ledger_state")
    op.drop_table("stake_account")
