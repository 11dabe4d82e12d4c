"""Timestamp helpers.

Persisted rows store epoch seconds; presence events carry epoch milliseconds
to match what browsers produce with ``Date.now()``.
"""

from __future__ import annotations

import time
from typing import Optional, Union

Number = Union[int, float]

# Largest accepted client timestamp, in epoch milliseconds (year 2286).
MAX_CLIENT_TIMESTAMP = 1e13


def epoch_seconds() -> int:
    return int(time.time())


def epoch_millis() -> int:
    return int(time.time() * 1000)


def seconds_from_client(value: Optional[Number]) -> int:
    """Normalise a client supplied timestamp to epoch seconds.

    Browsers send milliseconds; anything that already looks like seconds is
    kept.  Missing values resolve to now.
    """

    if value is None:
        return epoch_seconds()
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return epoch_seconds()
    if numeric > 1e11:
        numeric /= 1000.0
    return int(numeric)


__all__ = ["MAX_CLIENT_TIMESTAMP", "epoch_seconds", "epoch_millis", "seconds_from_client"]
