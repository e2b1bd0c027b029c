"""
Typed errors raised by the lifecycle service.

Every error carries a human-readable message, a classification (ErrorKind),
a machine-readable code and optional attached data. status_code is an
HTTP-style hint for whatever boundary adapter maps these to responses.
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    WORKFLOW = "workflow"
    INFRASTRUCTURE = "infrastructure"
    NOT_FOUND = "not_found"


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"
    UNSUPPORTED_ENTRY_MODE = "UNSUPPORTED_ENTRY_MODE"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    TIMER_ALREADY_RUNNING = "TIMER_ALREADY_RUNNING"
    DAY_ALREADY_ACTIVE = "DAY_ALREADY_ACTIVE"
    NO_ACTIVE_TIMER = "NO_ACTIVE_TIMER"
    NO_ACTIVE_DAY = "NO_ACTIVE_DAY"
    BLOCK_OUTSIDE_DAY_BOUNDARIES = "BLOCK_OUTSIDE_DAY_BOUNDARIES"
    BLOCKS_OVERLAP = "BLOCKS_OVERLAP"
    INVALID_PROJECT_REF = "INVALID_PROJECT_REF"
    INVALID_CATEGORY_REF = "INVALID_CATEGORY_REF"
    TIMESHEET_LOCKED = "TIMESHEET_LOCKED"
    TIMESHEET_CHECK_FAILED = "TIMESHEET_CHECK_FAILED"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"


class TimeLedgerError(Exception):
    """Base class for every error the service raises on purpose"""

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400

    def __init__(self, message: str, code: ErrorCode, data: Any = None,
                 details: Optional[List[dict]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ValidationError(TimeLedgerError):
    """Client-correctable: bad range, overlap, missing prerequisite state"""
    kind = ErrorKind.VALIDATION
    status_code = 400


class NotFoundError(TimeLedgerError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404

    def __init__(self, message: str = "Time entry not found", code: ErrorCode = ErrorCode.NOT_FOUND,
                 data: Any = None):
        super().__init__(message, code, data)


class ForbiddenError(TimeLedgerError):
    kind = ErrorKind.AUTHORIZATION
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, ErrorCode.FORBIDDEN)


class TimesheetLockedError(TimeLedgerError):
    """The entry's week has been submitted or validated"""
    kind = ErrorKind.WORKFLOW
    status_code = 403

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message, ErrorCode.TIMESHEET_LOCKED, data={"status": status})


class InfrastructureError(TimeLedgerError):
    """Store failure. The message is generic; driver text stays in the logs."""
    kind = ErrorKind.INFRASTRUCTURE
    status_code = 500
