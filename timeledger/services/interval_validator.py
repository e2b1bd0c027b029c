"""
Interval Validator - boundary and overlap checks for day blocks.

Both checks are pure: they take the candidate interval, its parent day (or
siblings) and "now", and never touch the store. Intervals are half-open,
so a block ending at 12:00 and one starting at 12:00 do not overlap.
"""

from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel

from timeledger.domain.models import ConflictingBlock


class BoundaryViolation(str, Enum):
    OUT_OF_BOUNDS = "OUT_OF_BOUNDS"
    INVALID_RANGE = "INVALID_RANGE"
    FUTURE_END = "FUTURE_END"


class BoundaryCheck(BaseModel):
    valid: bool
    reason: Optional[BoundaryViolation] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> "BoundaryCheck":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: BoundaryViolation, message: str) -> "BoundaryCheck":
        return cls(valid=False, reason=reason, message=message)


def validate_boundaries(block, day, now: datetime) -> BoundaryCheck:
    """
    Check that a block fits inside its day.

    Args:
        block: Anything with start_time / end_time
        day: The parent day entry (end_time is None while the day is open)
        now: Current instant, the upper bound for blocks of an open day

    Returns:
        BoundaryCheck describing the first rule the block breaks, if any
    """
    if block.start_time < day.start_time:
        return BoundaryCheck.fail(
            BoundaryViolation.OUT_OF_BOUNDS, "Block start time cannot be before day start"
        )

    if block.end_time <= block.start_time:
        return BoundaryCheck.fail(
            BoundaryViolation.INVALID_RANGE, "Block end time must be after start time"
        )

    if day.end_time is None:
        if block.end_time > now:
            return BoundaryCheck.fail(
                BoundaryViolation.FUTURE_END, "Block end time cannot be in the future"
            )
    elif block.end_time > day.end_time:
        return BoundaryCheck.fail(
            BoundaryViolation.OUT_OF_BOUNDS, "Block end time cannot be after day end"
        )

    return BoundaryCheck.ok()


def check_overlap(candidate, siblings: Iterable, exclude_id: Optional[int] = None) -> List[ConflictingBlock]:
    """
    Find the siblings a candidate interval overlaps.

    A sibling conflicts when candidate.start < sibling.end and
    candidate.end > sibling.start. A sibling without an end is unbounded.
    The sibling with id == exclude_id (the block being updated) is skipped.
    """
    conflicts = []
    for sibling in siblings:
        if exclude_id is not None and sibling.id == exclude_id:
            continue

        ends_after_start = sibling.end_time is None or candidate.start_time < sibling.end_time
        if ends_after_start and candidate.end_time > sibling.start_time:
            conflicts.append(ConflictingBlock(
                id=sibling.id,
                start_time=sibling.start_time,
                end_time=sibling.end_time,
            ))
    return conflicts
