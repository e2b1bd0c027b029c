"""Domain layer - Pure business entities and errors"""

from .models import Entry, EntryMode, TimesheetStatus, DayWithBlocks, BlockListing
from .errors import TimeLedgerError, ErrorKind, ErrorCode

__all__ = [
    "Entry", "EntryMode", "TimesheetStatus", "DayWithBlocks", "BlockListing",
    "TimeLedgerError", "ErrorKind", "ErrorCode",
]
