"""
Domain Models using Pydantic for validation.

Architecture Decision: Why Pydantic?
Pydantic provides runtime data validation, so every payload that reaches the
lifecycle service has already been checked for shape, length and time ordering.
ORM rows are converted with model_validate(from_attributes=True).

All datetimes are absolute instants stored as naive UTC. Aware values are
converted to UTC on the way in.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


DESCRIPTION_MAX_LENGTH = 500


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an instant to naive UTC (naive input is taken as UTC)"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


Instant = Annotated[datetime, AfterValidator(to_naive_utc)]


class EntryMode(str, Enum):
    SIMPLE = "simple"
    DAY = "day"
    BLOCK = "block"


class TimesheetStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    VALIDATED = "validated"


class Entry(BaseModel):
    """
    One row of recorded time.

    - simple: an ad-hoc timer entry
    - day: a full-day container (parent_id is None)
    - block: a sub-interval of a day (parent_id points at the day)
    """
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    owner_id: str = Field(..., min_length=1)
    mode: EntryMode
    parent_id: Optional[int] = None

    start_time: Instant
    end_time: Optional[Instant] = None
    duration_minutes: Optional[int] = None  # Derived from start/end

    project_id: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = None

    created_at: Instant = Field(default_factory=utc_now)
    updated_at: Instant = Field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.end_time is None


class ConflictingBlock(BaseModel):
    """A sibling block that a candidate interval overlaps with"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    start_time: Instant
    end_time: Optional[Instant] = None


class DayWithBlocks(BaseModel):
    """A day entry together with its blocks, ordered by start time"""
    day: Entry
    blocks: List[Entry] = Field(default_factory=list)


class BlockListMeta(BaseModel):
    day_id: Optional[int] = None
    day_start: Optional[Instant] = None
    day_end: Optional[Instant] = None
    total_blocks_minutes: int = 0
    unallocated_minutes: int = 0


class BlockListing(BaseModel):
    blocks: List[Entry] = Field(default_factory=list)
    meta: BlockListMeta = Field(default_factory=BlockListMeta)


class LockCheck(BaseModel):
    """Outcome of an approval-status lookup for one week"""
    can_modify: bool
    status: Optional[TimesheetStatus] = None
    week_start: Optional[date] = None


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    def provided(self, *names: str) -> dict:
        """Values of the given fields that the caller explicitly set"""
        return {name: getattr(self, name) for name in names if name in self.model_fields_set}


class TimerStart(_Payload):
    pass


class TimerStop(_Payload):
    """Optional attributes to attach to the entry when the timer stops"""


class DayStart(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)


class EntryCreate(_Payload):
    start_time: Instant
    end_time: Optional[Instant] = None

    @model_validator(mode="after")
    def check_range(self) -> "EntryCreate":
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class EntryUpdate(_Payload):
    """
    Partial update of a simple entry.

    Fields left out are untouched; fields explicitly set to None are cleared
    (start_time cannot be cleared).
    """
    start_time: Optional[Instant] = None
    end_time: Optional[Instant] = None

    @model_validator(mode="after")
    def check_fields(self) -> "EntryUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        if "start_time" in self.model_fields_set and self.start_time is None:
            raise ValueError("Start time cannot be cleared")
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class BlockCreate(_Payload):
    start_time: Instant
    end_time: Instant


class BlockUpdate(_Payload):
    start_time: Optional[Instant] = None
    end_time: Optional[Instant] = None

    @model_validator(mode="after")
    def check_times(self) -> "BlockUpdate":
        for name in ("start_time", "end_time"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared on a block")
        return self
