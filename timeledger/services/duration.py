"""Elapsed-minutes calculation shared by every entry mode."""

from datetime import datetime, timedelta
from typing import Optional

_MILLISECOND = timedelta(milliseconds=1)
_MINUTE_MS = 60_000


def compute_duration_minutes(start_time: datetime, end_time: Optional[datetime]) -> Optional[int]:
    """
    Whole minutes between two instants, rounded half-up.

    Returns None while the entry is open (no end time).
    """
    if end_time is None:
        return None
    elapsed_ms = (end_time - start_time) // _MILLISECOND
    # floor(x + 0.5) on integers, so ties always round toward +inf
    return (elapsed_ms + _MINUTE_MS // 2) // _MINUTE_MS
