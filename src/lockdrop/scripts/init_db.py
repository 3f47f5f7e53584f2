"""Create the ledger, event log and points tables."""

from __future__ import annotations

import argparse
import logging

from lockdrop.db.session import create_tables, drop_tables, engine

logger = logging.getLogger(__name__)


def init_db(*, reset: bool = False) -> None:
    """Initialize the database by creating all tables.

    With ``reset``, existing tables and their data are dropped first.
    """
    if reset:
        drop_tables()
        logger.warning("Dropped all tables at %s", engine.url.render_as_string(hide_password=True))
    create_tables()
    logger.info("Database initialized at %s", engine.url.render_as_string(hide_password=True))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="drop every table before creating them")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db(reset=args.reset)
