"""Checkpointed consumer applying ledger events to the points ledger.

This module provides the EventIndexer class that follows the ledger's event
log and applies every event exactly once:

- events arrive in order from ``checkpoint + 1`` (at-least-once delivery)
- sequences at or below the checkpoint are skipped as re-deliveries
- a sequence jump or a broken hash chain halts consumption
- the points update and the new checkpoint commit in one transaction
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from lockdrop.core.settings import settings
from lockdrop.models import IndexerCheckpoint
from lockdrop.schemas.events import LedgerEvent
from lockdrop.services.errors import (
    EventStreamUnavailable,
    LogCorruptionDetected,
    SequenceGapDetected,
)
from lockdrop.services.event_log import EventSource
from lockdrop.services.points import PointsLedger
from lockdrop.utils.hash import GENESIS_DIGEST

# Configure logger for this module
logger = logging.getLogger(__name__)

FATAL_ERRORS = (SequenceGapDetected, LogCorruptionDetected)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient stream errors."""

    max_retries: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))


def load_retry_policy() -> RetryPolicy:
    """Build the retry policy from global settings."""
    return RetryPolicy(
        max_retries=max(0, settings.indexer_max_retries),
        base_delay=max(0.0, settings.indexer_backoff_base_seconds),
        max_delay=max(0.0, settings.indexer_backoff_max_seconds),
    )


@dataclass(frozen=True)
class Checkpoint:
    """Last applied position of a consumer."""

    sequence: int
    digest: str


class EventIndexer:
    """Single sequential consumer of the ledger event log."""

    def __init__(
        self,
        source: EventSource,
        points: PointsLedger,
        session_factory: sessionmaker[Session] | None = None,
        *,
        name: str | None = None,
        retry: RetryPolicy | None = None,
        batch_size: int | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            source: Ordered event source (usually a LedgerEventLog).
            points: Derived store the events are applied to.
            session_factory: Session factory for the checkpoint and points tables.
            name: Checkpoint key, so several consumers can share one database.
            retry: Backoff policy for transient stream errors.
            batch_size: Events per read during ``catch_up``.
        """
        if session_factory is None:
            from lockdrop.db.session import SessionLocal

            session_factory = SessionLocal
        self.source = source
        self.points = points
        self.name = name or settings.indexer_name
        self.retry = retry or load_retry_policy()
        self.batch_size = max(1, batch_size or settings.indexer_batch_size)
        self.fatal_error: Exception | None = None
        self._session_factory = session_factory
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    # --- Checkpoint -----------------------------------------------------------------

    def _load_checkpoint(self, db: Session) -> IndexerCheckpoint:
        row = db.get(IndexerCheckpoint, self.name)
        if row is None:
            row = IndexerCheckpoint(name=self.name, last_sequence=0, last_digest=GENESIS_DIGEST)
            db.add(row)
            db.flush()
        return row

    def checkpoint(self) -> Checkpoint:
        """Return the last durably applied sequence and digest."""
        with self._session_factory() as db:
            row = db.get(IndexerCheckpoint, self.name)
            if row is None:
                return Checkpoint(sequence=0, digest=GENESIS_DIGEST)
            return Checkpoint(sequence=int(row.last_sequence), digest=row.last_digest)

    # --- Application ----------------------------------------------------------------

    def apply(self, event: LedgerEvent) -> bool:
        """Apply one event; return False when it was a duplicate delivery."""
        with self._session_factory() as db:
            try:
                row = self._load_checkpoint(db)
                last = int(row.last_sequence)
                if event.sequence <= last:
                    logger.debug("Skipping already applied event #%d", event.sequence)
                    db.rollback()
                    return False
                if event.sequence != last + 1:
                    raise SequenceGapDetected(last + 1, event.sequence)
                if event.prev_digest != row.last_digest or not event.verify_digest():
                    raise LogCorruptionDetected(
                        f"event #{event.sequence} does not extend the chain at #{last}"
                    )

                self.points.apply(db, event)
                row.last_sequence = event.sequence
                row.last_digest = event.digest
                db.commit()
            except Exception:
                db.rollback()
                raise
        return True

    def apply_batch(self, events: Iterable[LedgerEvent]) -> int:
        """Apply events in order and return how many were new."""
        applied = 0
        for event in events:
            if self.apply(event):
                applied += 1
        return applied

    def catch_up(self) -> int:
        """Synchronously drain the source up to its current head."""
        total = 0
        while True:
            cursor = self.checkpoint().sequence + 1
            batch = self.source.read_from(cursor, self.batch_size)
            if not batch:
                break
            applied = self.apply_batch(batch)
            if not applied:
                break
            total += applied
        if total:
            logger.info("Indexer %s applied %d events", self.name, total)
        return total

    def rebuild(self, events: Iterable[LedgerEvent] | None = None) -> Checkpoint:
        """Recompute all points from sequence 1 and reset the checkpoint.

        ``events`` defaults to the full history read from the source.
        """
        stream = events if events is not None else self._read_all()
        with self._session_factory() as db:
            try:
                last = self.points.rebuild_from_scratch(db, self._verified(stream))
                row = self._load_checkpoint(db)
                row.last_sequence = last.sequence if last else 0
                row.last_digest = last.digest if last else GENESIS_DIGEST
                db.commit()
            except Exception:
                db.rollback()
                raise
            checkpoint = Checkpoint(sequence=int(row.last_sequence), digest=row.last_digest)
        logger.info("Indexer %s rebuilt up to #%d", self.name, checkpoint.sequence)
        return checkpoint

    def _read_all(self) -> Iterable[LedgerEvent]:
        cursor = 1
        while True:
            batch = self.source.read_from(cursor, self.batch_size)
            if not batch:
                return
            yield from batch
            cursor = batch[-1].sequence + 1

    @staticmethod
    def _verified(events: Iterable[LedgerEvent]) -> Iterable[LedgerEvent]:
        prev = GENESIS_DIGEST
        for event in events:
            if event.prev_digest != prev or not event.verify_digest():
                raise LogCorruptionDetected(f"event #{event.sequence} breaks the hash chain")
            prev = event.digest
            yield event

    # --- Async consumption ----------------------------------------------------------

    async def start(self) -> None:
        """Start the background consumption loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run_guarded())

    async def stop(self) -> None:
        """Stop consuming; the persisted checkpoint allows exact resumption."""
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run_guarded(self) -> None:
        try:
            await self.run()
        except FATAL_ERRORS as exc:
            logger.critical("Indexer %s halted: %s", self.name, exc)
        except EventStreamUnavailable as exc:
            logger.critical("Indexer %s stopped after exhausting retries: %s", self.name, exc)

    async def run(self) -> None:
        """Consume the subscription until it ends, the indexer stops, or a fatal error.

        Transient errors are retried with exponential backoff; each retry
        resubscribes from the persisted checkpoint. Gaps and chain corruption
        are re-raised without retrying.
        """
        failures = 0
        while not self._stopping.is_set():
            cursor = self.checkpoint().sequence + 1
            try:
                async for event in self.source.subscribe(cursor):
                    await asyncio.to_thread(self.apply, event)
                    failures = 0
                    if self._stopping.is_set():
                        return
                return
            except FATAL_ERRORS as exc:
                self.fatal_error = exc
                raise
            except (OSError, ConnectionError, TimeoutError, SQLAlchemyError) as exc:
                failures += 1
                logger.warning("Indexer %s stream error (attempt %d): %s", self.name, failures, exc)
            except (ValueError, TypeError, KeyError, ArithmeticError) as exc:
                failures += 1
                logger.error(
                    "Indexer %s data error (attempt %d): %s", self.name, failures, exc, exc_info=True
                )

            if failures > self.retry.max_retries:
                logger.critical(
                    "Operational alert: indexer %s gave up after %d attempts at #%d",
                    self.name,
                    failures,
                    cursor,
                )
                raise EventStreamUnavailable(
                    f"event stream failed {failures} times; checkpoint held at #{cursor - 1}"
                )
            await asyncio.sleep(self.retry.delay(failures))
