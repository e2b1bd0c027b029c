"""
Entry Lifecycle Service - timer, day and block state machines.

Three independent state machines share one table:
- simple: absent -> start_timer -> running -> stop_timer -> absent
- day:    absent -> start_day -> running -> end_day -> absent
- block:  created / updated / deleted inside a day

Every operation reads, validates and only then writes. No entry state is
kept in memory between calls, so callers re-read (get_active_timer,
get_active_day) to observe a transition. Block writes for one owner are
serialized by a per-owner asyncio.Lock, so concurrent callers must share
one service instance.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import pydantic

from timeledger.domain.errors import (
    ErrorCode, ForbiddenError, InfrastructureError, NotFoundError, TimeLedgerError,
    TimesheetLockedError, ValidationError,
)
from timeledger.domain.models import (
    BlockCreate, BlockListing, BlockListMeta, BlockUpdate, DayStart, DayWithBlocks, Entry,
    EntryCreate, EntryMode, EntryUpdate, TimerStart, TimerStop, utc_now,
)
from timeledger.infra.config import Settings, get_settings
from timeledger.infra.repository import (
    EntryRepository, OpenEntryConflict, ReferenceViolation, StoreError,
)
from timeledger.services.duration import compute_duration_minutes
from timeledger.services.interval_validator import check_overlap, validate_boundaries
from timeledger.services.mutation_gate import MutationGate

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=pydantic.BaseModel)

_REFERENCE_ERRORS = {
    "project_id": (ErrorCode.INVALID_PROJECT_REF, "Project not found"),
    "category_id": (ErrorCode.INVALID_CATEGORY_REF, "Category not found"),
}

_EDITABLE_FIELDS = ("start_time", "end_time", "project_id", "category_id", "description")
_ATTRIBUTE_FIELDS = ("project_id", "category_id", "description")


class EntryLifecycleService:
    """
    Orchestrates duration, interval validation, the repository and the
    mutation gate. Methods take (owner_id, payload) and return domain
    models or raise a TimeLedgerError subclass.

    The owner_id is trusted: authentication happens before this layer.
    """

    def __init__(self, entry_repo: Optional[EntryRepository] = None,
                 gate: Optional[MutationGate] = None,
                 clock: Optional[Callable[[], Any]] = None,
                 settings: Optional[Settings] = None):
        self.entry_repo = entry_repo or EntryRepository()
        self.gate = gate or MutationGate()
        self.clock = clock or utc_now
        self.settings = settings or get_settings()

        # One lock per owner around block read-validate-write
        self._block_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Simple mode
    # ------------------------------------------------------------------

    async def get_active_timer(self, owner_id: str) -> Optional[Entry]:
        """Get the owner's running timer, or None"""
        try:
            return await self.entry_repo.get_active_simple(owner_id)
        except StoreError as e:
            raise InfrastructureError("Failed to check active timer", ErrorCode.DATABASE_ERROR) from e

    async def start_timer(self, owner_id: str, payload=None) -> Entry:
        """
        Open a new simple entry starting now.

        Raises:
            ValidationError: TIMER_ALREADY_RUNNING (data is the running entry)
        """
        data = self._parse(TimerStart, payload)

        active = await self.get_active_timer(owner_id)
        if active:
            raise ValidationError("Timer already running", ErrorCode.TIMER_ALREADY_RUNNING, data=active)

        now = self.clock()
        entry = Entry(
            owner_id=owner_id,
            mode=EntryMode.SIMPLE,
            start_time=now,
            project_id=data.project_id,
            category_id=data.category_id,
            description=data.description,
            created_at=now,
            updated_at=now
        )
        try:
            created = await self.entry_repo.insert(entry)
        except OpenEntryConflict as e:
            raise await self._open_entry_conflict(owner_id, EntryMode.SIMPLE) from e
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.CREATE_FAILED, "Failed to start timer",
                                      f"start timer for {owner_id}") from e

        logger.info(f"Timer {created.id} started for {owner_id}")
        return created

    async def stop_timer(self, owner_id: str, payload=None) -> Entry:
        """
        Close the running timer at now.

        The stored duration never drops below settings.minimum_timer_minutes.
        Project, category and description may be set in the same call.
        """
        data = self._parse(TimerStop, payload)

        active = await self.get_active_timer(owner_id)
        if not active:
            raise ValidationError("No active timer found", ErrorCode.NO_ACTIVE_TIMER, status_code=404)

        now = self.clock()
        if now <= active.start_time:
            raise ValidationError("Timer cannot stop before it started", ErrorCode.INVALID_TIME_RANGE)

        duration = compute_duration_minutes(active.start_time, now)
        patch = {
            "end_time": now,
            "duration_minutes": max(duration, self.settings.minimum_timer_minutes),
            "updated_at": now,
        }
        patch.update(data.provided(*_ATTRIBUTE_FIELDS))

        try:
            stopped = await self.entry_repo.update(active.id, patch, only_open=True)
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.UPDATE_FAILED, "Failed to stop timer",
                                      f"stop timer {active.id}") from e
        if stopped is None:
            # Stopped by a concurrent request between the read and the write
            raise ValidationError("No active timer found", ErrorCode.NO_ACTIVE_TIMER, status_code=404)

        logger.info(f"Timer {stopped.id} stopped for {owner_id} after {stopped.duration_minutes} min")
        return stopped

    # ------------------------------------------------------------------
    # Day mode
    # ------------------------------------------------------------------

    async def get_active_day(self, owner_id: str) -> Optional[Entry]:
        """Get the owner's open day, or None"""
        try:
            return await self.entry_repo.get_active_day(owner_id)
        except StoreError as e:
            raise InfrastructureError("Failed to check active day", ErrorCode.DATABASE_ERROR) from e

    async def get_day_with_blocks(self, day_id: int, owner_id: str) -> DayWithBlocks:
        day = await self._get_owned(day_id, owner_id, EntryMode.DAY, "Day entry")
        return DayWithBlocks(day=day, blocks=await self._blocks_of(day))

    async def start_day(self, owner_id: str, payload=None) -> Entry:
        """
        Open a new day container starting now.

        Raises:
            ValidationError: DAY_ALREADY_ACTIVE (data is the open day)
        """
        data = self._parse(DayStart, payload)

        active = await self.get_active_day(owner_id)
        if active:
            raise ValidationError("A day is already in progress", ErrorCode.DAY_ALREADY_ACTIVE, data=active)

        now = self.clock()
        day = Entry(
            owner_id=owner_id,
            mode=EntryMode.DAY,
            start_time=now,
            description=data.description,
            created_at=now,
            updated_at=now
        )
        try:
            created = await self.entry_repo.insert(day)
        except OpenEntryConflict as e:
            raise await self._open_entry_conflict(owner_id, EntryMode.DAY) from e
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.CREATE_FAILED, "Failed to start day",
                                      f"start day for {owner_id}") from e

        logger.info(f"Day {created.id} started for {owner_id}")
        return created

    async def end_day(self, owner_id: str) -> DayWithBlocks:
        """Close the open day at now. Its blocks are returned unchanged."""
        active = await self.get_active_day(owner_id)
        if not active:
            raise ValidationError("No active day found", ErrorCode.NO_ACTIVE_DAY, status_code=404)

        now = self.clock()
        if now <= active.start_time:
            raise ValidationError("Day cannot end before it started", ErrorCode.INVALID_TIME_RANGE)

        patch = {
            "end_time": now,
            "duration_minutes": compute_duration_minutes(active.start_time, now),
            "updated_at": now,
        }
        try:
            closed = await self.entry_repo.update(active.id, patch, only_open=True)
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.UPDATE_FAILED, "Failed to end day",
                                      f"end day {active.id}") from e
        if closed is None:
            raise ValidationError("No active day found", ErrorCode.NO_ACTIVE_DAY, status_code=404)

        blocks = await self._blocks_of(closed)
        logger.info(f"Day {closed.id} ended for {owner_id} with {len(blocks)} block(s)")
        return DayWithBlocks(day=closed, blocks=blocks)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    async def get_block(self, block_id: int, owner_id: str) -> Entry:
        return await self._get_owned(block_id, owner_id, EntryMode.BLOCK, "Time block")

    async def list_blocks(self, owner_id: str) -> BlockListing:
        """Blocks of the active day plus allocation totals (empty when no day is open)"""
        day = await self.get_active_day(owner_id)
        if not day:
            return BlockListing()

        blocks = await self._blocks_of(day)
        total = sum(block.duration_minutes or 0 for block in blocks)
        day_minutes = compute_duration_minutes(day.start_time, day.end_time or self.clock())

        return BlockListing(
            blocks=blocks,
            meta=BlockListMeta(
                day_id=day.id,
                day_start=day.start_time,
                day_end=day.end_time,
                total_blocks_minutes=total,
                unallocated_minutes=max(0, day_minutes - total),
            ),
        )

    async def create_block(self, owner_id: str, payload) -> Entry:
        """
        Add a block to the owner's open day.

        The block must fit inside the day and must not overlap any sibling.
        Block writes for one owner run one at a time, so the sibling read and
        the insert cannot interleave with another create or update.
        """
        data = self._parse(BlockCreate, payload)
        async with self._block_lock(owner_id):
            return await self._create_block(owner_id, data)

    async def _create_block(self, owner_id: str, data: BlockCreate) -> Entry:
        day = await self.get_active_day(owner_id)
        if not day:
            raise ValidationError("No active day found. Start a day first.", ErrorCode.NO_ACTIVE_DAY,
                                  status_code=404)

        now = self.clock()
        self._check_boundaries(data, day, now)
        self._check_overlap(data, await self._blocks_of(day))

        block = Entry(
            owner_id=owner_id,
            mode=EntryMode.BLOCK,
            parent_id=day.id,
            start_time=data.start_time,
            end_time=data.end_time,
            duration_minutes=compute_duration_minutes(data.start_time, data.end_time),
            project_id=data.project_id,
            category_id=data.category_id,
            description=data.description,
            created_at=now,
            updated_at=now
        )
        try:
            created = await self.entry_repo.insert(block)
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.CREATE_FAILED, "Failed to create block",
                                      f"create block in day {day.id}") from e

        logger.info(f"Block {created.id} created in day {day.id} ({created.duration_minutes} min)")
        return created

    async def update_block(self, block_id: int, owner_id: str, payload) -> Entry:
        """
        Change a block's times or attributes.

        The parent day is re-read and the merged interval re-validated against
        it and against every sibling except the block itself.
        """
        data = self._parse(BlockUpdate, payload)
        async with self._block_lock(owner_id):
            return await self._update_block(block_id, owner_id, data)

    async def _update_block(self, block_id: int, owner_id: str, data: BlockUpdate) -> Entry:
        block = await self.get_block(block_id, owner_id)

        day = await self._load(block.parent_id)
        if day is None or day.mode != EntryMode.DAY or day.owner_id != owner_id:
            raise NotFoundError("Parent day not found")

        changes = data.provided(*_EDITABLE_FIELDS)
        candidate = block.model_copy(update={
            "start_time": changes.get("start_time", block.start_time),
            "end_time": changes.get("end_time", block.end_time),
        })

        now = self.clock()
        self._check_boundaries(candidate, day, now)
        self._check_overlap(candidate, await self._blocks_of(day), exclude_id=block.id)

        patch = dict(changes, updated_at=now)
        if "start_time" in changes or "end_time" in changes:
            patch["duration_minutes"] = compute_duration_minutes(candidate.start_time, candidate.end_time)

        try:
            updated = await self.entry_repo.update(block.id, patch)
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.UPDATE_FAILED, "Failed to update block",
                                      f"update block {block.id}") from e
        if updated is None:
            raise NotFoundError("Time block not found")

        logger.info(f"Block {updated.id} updated in day {day.id}")
        return updated

    async def delete_block(self, block_id: int, owner_id: str) -> Entry:
        """Remove a block. Only ownership is checked."""
        block = await self.get_block(block_id, owner_id)
        try:
            deleted = await self.entry_repo.delete(block.id)
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.DELETE_FAILED, "Failed to delete block",
                                      f"delete block {block.id}") from e
        if not deleted:
            raise NotFoundError("Time block not found")

        logger.info(f"Block {block.id} deleted from day {block.parent_id}")
        return block

    # ------------------------------------------------------------------
    # Generic simple entries
    # ------------------------------------------------------------------

    async def get_entry(self, entry_id: int, owner_id: str) -> Entry:
        return await self._get_owned(entry_id, owner_id)

    async def list_entries(self, owner_id: str, start_date: Optional[date] = None,
                           end_date: Optional[date] = None,
                           mode: Optional[EntryMode] = None) -> List[Entry]:
        """An owner's entries starting within the date range, newest first, optionally of one mode"""
        try:
            return await self.entry_repo.list_for_owner(owner_id, start_date, end_date, mode)
        except StoreError as e:
            raise InfrastructureError("Failed to retrieve time entries", ErrorCode.DATABASE_ERROR) from e

    async def create_entry(self, owner_id: str, payload) -> Entry:
        """
        Record a simple entry with explicit times.

        Duration is computed up front. Leaving end_time out creates a running
        timer, which is subject to the one-open-timer rule.
        """
        data = self._parse(EntryCreate, payload)

        if data.end_time is None:
            active = await self.get_active_timer(owner_id)
            if active:
                raise ValidationError("Timer already running", ErrorCode.TIMER_ALREADY_RUNNING, data=active)

        now = self.clock()
        entry = Entry(
            owner_id=owner_id,
            mode=EntryMode.SIMPLE,
            start_time=data.start_time,
            end_time=data.end_time,
            duration_minutes=compute_duration_minutes(data.start_time, data.end_time),
            project_id=data.project_id,
            category_id=data.category_id,
            description=data.description,
            created_at=now,
            updated_at=now
        )
        try:
            created = await self.entry_repo.insert(entry)
        except OpenEntryConflict as e:
            raise await self._open_entry_conflict(owner_id, EntryMode.SIMPLE) from e
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.CREATE_FAILED, "Failed to create time entry",
                                      f"create entry for {owner_id}") from e

        logger.info(f"Entry {created.id} created for {owner_id}")
        return created

    async def update_entry(self, entry_id: int, owner_id: str, payload) -> Entry:
        """
        Edit a simple entry.

        Ownership is checked first, then the approval status of the week the
        entry currently starts in. Duration is recomputed from the merged times.
        """
        data = self._parse(EntryUpdate, payload)
        entry = await self._get_owned(entry_id, owner_id)
        self._require_simple(entry)
        await self._require_unlocked(entry, "Cannot modify time entry in submitted/validated timesheet")

        changes = data.provided(*_EDITABLE_FIELDS)
        start_time = changes.get("start_time", entry.start_time)
        end_time = changes["end_time"] if "end_time" in changes else entry.end_time
        if end_time is not None and end_time <= start_time:
            raise ValidationError("End time must be after start time", ErrorCode.INVALID_TIME_RANGE)

        if end_time is None and not entry.is_open:
            active = await self.get_active_timer(owner_id)
            if active:
                raise ValidationError("Timer already running", ErrorCode.TIMER_ALREADY_RUNNING, data=active)

        patch = dict(
            changes,
            duration_minutes=compute_duration_minutes(start_time, end_time),
            updated_at=self.clock(),
        )
        try:
            updated = await self.entry_repo.update(entry.id, patch)
        except OpenEntryConflict as e:
            raise await self._open_entry_conflict(owner_id, EntryMode.SIMPLE) from e
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.UPDATE_FAILED, "Update failed",
                                      f"update entry {entry.id}") from e
        if updated is None:
            raise NotFoundError()

        logger.info(f"Entry {updated.id} updated for {owner_id}")
        return updated

    async def delete_entry(self, entry_id: int, owner_id: str) -> Entry:
        entry = await self._get_owned(entry_id, owner_id)
        self._require_simple(entry)
        await self._require_unlocked(entry, "Cannot delete time entry in submitted/validated timesheet")

        try:
            deleted = await self.entry_repo.delete(entry.id)
        except StoreError as e:
            raise self._store_failure(e, ErrorCode.DELETE_FAILED, "Failed to delete time entry",
                                      f"delete entry {entry.id}") from e
        if not deleted:
            raise NotFoundError()

        logger.info(f"Entry {entry.id} deleted for {owner_id}")
        return entry

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(model: Type[PayloadT], payload) -> PayloadT:
        """Accept either the payload model or a plain mapping"""
        if isinstance(payload, model):
            return payload
        try:
            return model.model_validate(payload or {})
        except pydantic.ValidationError as e:
            details = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationError("Validation failed", ErrorCode.VALIDATION_ERROR, details=details) from e

    def _block_lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._block_locks.get(owner_id)
        if lock is None:
            lock = self._block_locks[owner_id] = asyncio.Lock()
        return lock

    async def _load(self, entry_id: Optional[int]) -> Optional[Entry]:
        if entry_id is None:
            return None
        try:
            return await self.entry_repo.get_by_id(entry_id)
        except StoreError as e:
            raise InfrastructureError("Failed to retrieve time entry", ErrorCode.DATABASE_ERROR) from e

    async def _get_owned(self, entry_id: int, owner_id: str, mode: Optional[EntryMode] = None,
                         label: str = "Time entry") -> Entry:
        entry = await self._load(entry_id)
        if entry is None or (mode is not None and entry.mode != mode):
            raise NotFoundError(f"{label} not found")
        if entry.owner_id != owner_id:
            raise ForbiddenError()
        return entry

    async def _blocks_of(self, day: Entry) -> List[Entry]:
        try:
            return await self.entry_repo.get_blocks_for_day(day.id, day.owner_id)
        except StoreError as e:
            raise InfrastructureError("Failed to retrieve blocks", ErrorCode.DATABASE_ERROR) from e

    @staticmethod
    def _check_boundaries(block, day: Entry, now) -> None:
        check = validate_boundaries(block, day, now)
        if not check.valid:
            raise ValidationError(check.message, ErrorCode.BLOCK_OUTSIDE_DAY_BOUNDARIES,
                                  data={"reason": check.reason.value})

    @staticmethod
    def _check_overlap(candidate, siblings: List[Entry], exclude_id: Optional[int] = None) -> None:
        conflicts = check_overlap(candidate, siblings, exclude_id)
        if conflicts:
            raise ValidationError("Time block overlaps with existing block(s)", ErrorCode.BLOCKS_OVERLAP,
                                  data={"conflicting_blocks": conflicts})

    @staticmethod
    def _require_simple(entry: Entry) -> None:
        if entry.mode != EntryMode.SIMPLE:
            raise ValidationError(
                f"{entry.mode.value.capitalize()} entries can only be changed through day operations",
                ErrorCode.UNSUPPORTED_ENTRY_MODE,
            )

    async def _require_unlocked(self, entry: Entry, message: str) -> None:
        check = await self.gate.check_lock(entry.owner_id, entry.start_time)
        if not check.can_modify:
            logger.warning(
                f"Entry {entry.id} locked: timesheet for week {check.week_start} is {check.status.value}"
            )
            raise TimesheetLockedError(message, status=check.status.value)

    async def _open_entry_conflict(self, owner_id: str, mode: EntryMode) -> TimeLedgerError:
        """The store rejected a second open entry; report the one that won"""
        logger.warning(f"Concurrent open {mode.value} entry rejected by the store for {owner_id}")
        if mode == EntryMode.DAY:
            return ValidationError("A day is already in progress", ErrorCode.DAY_ALREADY_ACTIVE,
                                   data=await self.get_active_day(owner_id))
        return ValidationError("Timer already running", ErrorCode.TIMER_ALREADY_RUNNING,
                               data=await self.get_active_timer(owner_id))

    @staticmethod
    def _store_failure(error: StoreError, code: ErrorCode, message: str, action: str) -> TimeLedgerError:
        """Map a repository failure onto the error taxonomy"""
        if isinstance(error, ReferenceViolation):
            if error.field in _REFERENCE_ERRORS:
                ref_code, ref_message = _REFERENCE_ERRORS[error.field]
                return ValidationError(ref_message, ref_code)
            return NotFoundError("Parent day not found")

        logger.error(f"Failed to {action}: {error}")
        return InfrastructureError(message, code)
