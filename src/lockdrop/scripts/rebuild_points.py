"""Rebuild the points ledger from the stake ledger's event log.

Disaster recovery: every derived row is discarded and refolded from
sequence 1, and the indexer checkpoint is reset to the last event replayed.
"""

from __future__ import annotations

import argparse
import logging
import sys
from decimal import Decimal

from lockdrop.core.settings import settings
from lockdrop.db.time import epoch_seconds
from lockdrop.services.errors import LockdropError
from lockdrop.services.event_log import LedgerEventLog
from lockdrop.services.indexer import EventIndexer
from lockdrop.services.points import PointsLedger, to_points

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rebuild derived points from the event log")
    parser.add_argument(
        "--name",
        default=settings.indexer_name,
        help="Indexer checkpoint name to reset (default: %(default)s)",
    )
    parser.add_argument(
        "--rate",
        type=Decimal,
        default=settings.points_per_unit_second,
        help="Points per staked unit per second (default: %(default)s)",
    )
    parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Print the N accounts with the most points after rebuilding",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    points = PointsLedger(rate=args.rate)
    indexer = EventIndexer(LedgerEventLog(), points, name=args.name)
    try:
        checkpoint = indexer.rebuild()
    except LockdropError as exc:
        logger.critical("Rebuild aborted: %s", exc)
        return 1

    now = epoch_seconds()
    ranked = sorted(
        points.positions().items(),
        key=lambda item: item[1].accrued_at(now),
        reverse=True,
    )
    print(f"[rebuild] checkpoint {args.name} -> #{checkpoint.sequence} ({checkpoint.digest[:12]})")
    for account, position in ranked[: max(0, args.top)]:
        print(f"[rebuild] {account}: {to_points(position.accrued_at(now), args.rate)} points")
    return 0


if __name__ == "__main__":
    sys.exit(main())
