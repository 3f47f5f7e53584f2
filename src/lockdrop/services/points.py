"""Reward points derived from the ledger event stream.

Points are the time integral of the staked balance implied by the replayed
events: every event first accrues ``staked * elapsed`` for its account, then
applies its balance change. Because accrual depends on balance-over-time and
not on how many events were seen, stake/unstake cycling cannot inflate it.

`apply_event` and `fold_events` are pure; `PointsLedger` persists their result
and is written only by the EventIndexer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from lockdrop.core.settings import settings
from lockdrop.db.time import Clock, epoch_seconds
from lockdrop.models import PointsAccount
from lockdrop.schemas.events import EventType, LedgerEvent
from lockdrop.services.errors import LogCorruptionDetected, SequenceGapDetected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    """Points state of one account after some prefix of the event stream."""

    staked: int = 0
    accrued: int = 0  # unit-seconds
    active_stake_since: int | None = None
    last_accrual_at: int | None = None

    def accrued_at(self, at: int) -> int:
        """Return unit-seconds accrued up to ``at``, extrapolating the open interval."""
        if self.last_accrual_at is None or self.staked == 0:
            return self.accrued
        return self.accrued + self.staked * max(0, at - self.last_accrual_at)


def apply_event(position: Position, event: LedgerEvent) -> Position:
    """Return the position after ``event``; events without an account are ignored."""
    if event.event_type is EventType.VAULT_SET:
        return position

    at = event.timestamp
    if position.last_accrual_at is not None:
        at = max(at, position.last_accrual_at)
    accrued = position.accrued_at(at)
    amount = int(event.payload.amount)  # type: ignore[union-attr]

    if event.event_type is EventType.STAKED:
        staked = position.staked + amount
        since = position.active_stake_since if position.active_stake_since is not None else at
    else:
        # Unstaked and Migrated both take value out of the ledger.
        staked = position.staked - amount
        if staked < 0:
            raise LogCorruptionDetected(
                f"event #{event.sequence} removes {amount} from {event.account} "
                f"holding {position.staked}"
            )
        since = None if staked == 0 else position.active_stake_since

    return Position(staked=staked, accrued=accrued, active_stake_since=since, last_accrual_at=at)


def fold_events(
    events: Iterable[LedgerEvent],
    initial: Mapping[str, Position] | None = None,
) -> dict[str, Position]:
    """Fold an ordered event sequence into per-account positions."""
    book = dict(initial or {})
    for event in events:
        account = event.account
        if account is None:
            continue
        book[account] = apply_event(book.get(account, Position()), event)
    return book


def to_points(accrued: int, rate: Decimal) -> Decimal:
    """Convert integrated unit-seconds to points."""
    return Decimal(accrued) * rate


def _position_from_row(row: PointsAccount) -> Position:
    return Position(
        staked=int(row.staked),
        accrued=int(row.accrued),
        active_stake_since=row.active_stake_since,
        last_accrual_at=row.last_accrual_at,
    )


def _write_position(row: PointsAccount, position: Position) -> None:
    row.staked = position.staked
    row.accrued = position.accrued
    row.active_stake_since = position.active_stake_since
    row.last_accrual_at = position.last_accrual_at


class PointsLedger:
    """Persistent store of derived points.

    Mutations go through ``apply`` and ``rebuild_from_scratch``, both of which
    run inside a transaction owned by the EventIndexer.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        rate: Decimal | None = None,
        clock: Clock | None = None,
    ) -> None:
        if session_factory is None:
            from lockdrop.db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self.rate = settings.points_per_unit_second if rate is None else rate
        self._clock = clock or epoch_seconds

    def apply(self, db: Session, event: LedgerEvent) -> Position | None:
        """Apply one event within the caller's transaction."""
        account = event.account
        if account is None:
            return None
        row = db.get(PointsAccount, account)
        if row is None:
            row = PointsAccount(account=account, staked=0, accrued=0)
            db.add(row)
            position = Position()
        else:
            position = _position_from_row(row)
        updated = apply_event(position, event)
        _write_position(row, updated)
        return updated

    def rebuild_from_scratch(
        self, db: Session, events: Iterable[LedgerEvent]
    ) -> LedgerEvent | None:
        """Discard all derived state and refold ``events`` from sequence 1.

        Returns the last event applied, or None for an empty stream.
        """
        last: LedgerEvent | None = None

        def ordered() -> Iterable[LedgerEvent]:
            nonlocal last
            expected = 1
            for event in events:
                if event.sequence != expected:
                    raise SequenceGapDetected(expected, event.sequence)
                expected += 1
                last = event
                yield event

        book = fold_events(ordered())
        db.execute(delete(PointsAccount))
        for account, position in book.items():
            row = PointsAccount(account=account)
            _write_position(row, position)
            db.add(row)
        db.flush()
        logger.info(
            "Rebuilt points for %d accounts from %d events",
            len(book),
            last.sequence if last else 0,
        )
        return last

    # --- Queries --------------------------------------------------------------------

    def position_of(self, account: str) -> Position:
        with self._session_factory() as db:
            row = db.get(PointsAccount, account)
            return _position_from_row(row) if row else Position()

    def positions(self) -> dict[str, Position]:
        with self._session_factory() as db:
            rows = db.scalars(select(PointsAccount).order_by(PointsAccount.account)).all()
            return {row.account: _position_from_row(row) for row in rows}

    def points_of(self, account: str, *, at: int | None = None) -> Decimal:
        """Return points for ``account`` as of ``at`` (default: now)."""
        when = self._clock() if at is None else at
        return to_points(self.position_of(account).accrued_at(when), self.rate)
