# src/lockdrop/db/time.py
"""Time utilities for ledger timestamps."""

import time
from collections.abc import Callable

Clock = Callable[[], int]


def epoch_seconds() -> int:
    """Return the current UNIX time in whole seconds.

    Ledger timestamps are integers so that replay arithmetic stays exact.
    """
    return int(time.time())
