"""Append-only event log emitted by the stake ledger.

The ledger appends inside its own transaction; consumers read through the
`EventSource` protocol, either in batches or as a polling subscription.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from lockdrop.core.settings import settings
from lockdrop.models import LedgerEventRecord, LedgerState
from lockdrop.schemas.events import EventPayload, LedgerEvent

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    """Ordered, at-least-once source of ledger events."""

    def read_from(self, from_sequence: int, limit: int) -> list[LedgerEvent]: ...

    def subscribe(self, from_sequence: int) -> AsyncIterator[LedgerEvent]: ...


def append_event(
    db: Session,
    state: LedgerState,
    payload: EventPayload,
    timestamp: int,
) -> LedgerEvent:
    """Append the next event of the chain within the caller's transaction."""
    event = LedgerEvent.create(
        sequence=int(state.last_sequence) + 1,
        timestamp=timestamp,
        payload=payload,
        prev_digest=state.head_digest,
    )
    db.add(event.to_record())
    state.last_sequence = event.sequence
    state.head_digest = event.digest
    db.flush()
    return event


class LedgerEventLog:
    """Read access to the persisted event log."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        if session_factory is None:
            from lockdrop.db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size or settings.indexer_batch_size)
        self.poll_interval = max(
            0.0,
            settings.indexer_poll_interval_seconds if poll_interval is None else poll_interval,
        )

    def read_from(self, from_sequence: int, limit: int) -> list[LedgerEvent]:
        """Return up to ``limit`` events with sequence >= ``from_sequence``, in order."""
        with self._session_factory() as db:
            rows = db.scalars(
                select(LedgerEventRecord)
                .where(LedgerEventRecord.sequence >= from_sequence)
                .order_by(LedgerEventRecord.sequence)
                .limit(limit)
            ).all()
            return [LedgerEvent.from_record(row) for row in rows]

    def head(self) -> int:
        """Return the sequence number of the newest event (0 when empty)."""
        with self._session_factory() as db:
            state = db.get(LedgerState, 1)
            return int(state.last_sequence) if state else 0

    def iter_events(self, from_sequence: int = 1) -> Iterator[LedgerEvent]:
        """Yield every stored event from ``from_sequence`` onwards, batch by batch."""
        cursor = from_sequence
        while True:
            batch = self.read_from(cursor, self.batch_size)
            if not batch:
                return
            yield from batch
            cursor = batch[-1].sequence + 1

    async def subscribe(
        self, from_sequence: int, *, follow: bool = True
    ) -> AsyncIterator[LedgerEvent]:
        """Stream events in order, polling for new entries while ``follow`` is set."""
        cursor = from_sequence
        while True:
            batch = await asyncio.to_thread(self.read_from, cursor, self.batch_size)
            if batch:
                logger.debug("Read %d events starting at #%d", len(batch), cursor)
                for event in batch:
                    yield event
                cursor = batch[-1].sequence + 1
                continue
            if not follow:
                return
            await asyncio.sleep(self.poll_interval)
