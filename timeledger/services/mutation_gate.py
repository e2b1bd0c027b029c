"""
Mutation Gate - decides whether a settled simple entry may still change.

The weekly approval record belongs to the approval workflow. A week with no
record, or a draft record, is open for edits. Submitted and validated weeks
are locked. If the record cannot be read at all the gate fails closed.
"""

import datetime
import logging
from typing import Optional, Union

from timeledger.domain.errors import ErrorCode, InfrastructureError
from timeledger.domain.models import LockCheck, TimesheetStatus
from timeledger.infra.repository import StoreError, TimesheetRepository

logger = logging.getLogger(__name__)

_LOCKED_STATUSES = {TimesheetStatus.SUBMITTED, TimesheetStatus.VALIDATED}


def week_start(value: Union[datetime.date, datetime.datetime]) -> datetime.date:
    """Monday on or before the given date (Sunday belongs to the week before)"""
    if isinstance(value, datetime.datetime):
        value = value.date()
    return value - datetime.timedelta(days=value.weekday())


class MutationGate:
    """Answers whether an owner's entries for a given week may still change"""

    def __init__(self, timesheet_repo: Optional[TimesheetRepository] = None):
        self.timesheet_repo = timesheet_repo or TimesheetRepository()

    async def check_lock(self, owner_id: str,
                         entry_date: Union[datetime.date, datetime.datetime]) -> LockCheck:
        """
        Look up the approval status of the week containing entry_date.

        Raises:
            InfrastructureError: TIMESHEET_CHECK_FAILED when the lookup fails
        """
        monday = week_start(entry_date)
        try:
            status = await self.timesheet_repo.get_status(owner_id, monday)
        except StoreError as e:
            logger.error(f"Timesheet status check failed for {owner_id} week {monday}: {e}")
            raise InfrastructureError(
                "Unable to verify timesheet status", ErrorCode.TIMESHEET_CHECK_FAILED
            ) from e

        if status in _LOCKED_STATUSES:
            return LockCheck(can_modify=False, status=status, week_start=monday)
        return LockCheck(can_modify=True, status=status, week_start=monday)
