"""
Repository Pattern Implementation.

Architecture Decision: Why Repository Pattern?
Separates data access logic from business logic. Makes it easy to:
- Switch database implementations
- Mock data for testing
- Keep driver-specific error text out of the service layer

"No matching row" is never an error here: lookups return None. Everything
the driver raises is translated into one of the StoreError types below.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.domain.models import Entry, EntryMode, TimesheetStatus
from timeledger.infra.db import CategoryModel, EntryModel, ProjectModel, TimesheetModel, get_engine

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Generic data store failure"""


class ReferenceViolation(StoreError):
    """A foreign reference (project, category, parent day) does not exist"""

    def __init__(self, field: str):
        super().__init__(f"Dangling reference: {field}")
        self.field = field


class OpenEntryConflict(StoreError):
    """The store refused a second open entry of the same mode for an owner"""

    def __init__(self, mode: EntryMode):
        super().__init__(f"Open {mode.value} entry already exists")
        self.mode = mode


# Columns a caller may pass to EntryRepository.update()
UPDATABLE_FIELDS = {
    "start_time", "end_time", "duration_minutes", "project_id",
    "category_id", "description", "updated_at",
}


class EntryRepository:
    """
    Handles all Entry-related database operations.

    Converts between domain models (Pydantic) and ORM models (SQLAlchemy).
    """

    def __init__(self, session: Optional[AsyncSession] = None):
        self.session = session

    async def _get_session(self) -> AsyncSession:
        """Get session - either injected or create new one"""
        if self.session:
            return self.session
        engine = get_engine()
        return engine.get_session()

    async def _fetch_one(self, stmt, what: str) -> Optional[Entry]:
        session = await self._get_session()
        try:
            async with session:
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                return Entry.model_validate(model) if model else None
        except SQLAlchemyError as e:
            logger.error(f"Lookup of {what} failed: {e}")
            raise StoreError(f"Lookup of {what} failed") from e

    async def _fetch_all(self, stmt, what: str) -> List[Entry]:
        session = await self._get_session()
        try:
            async with session:
                result = await session.execute(stmt)
                return [Entry.model_validate(m) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Listing of {what} failed: {e}")
            raise StoreError(f"Listing of {what} failed") from e

    async def get_active_simple(self, owner_id: str) -> Optional[Entry]:
        """Get the owner's running timer, if any"""
        return await self._fetch_one(
            select(EntryModel).where(
                EntryModel.owner_id == owner_id,
                EntryModel.mode == EntryMode.SIMPLE.value,
                EntryModel.end_time.is_(None),
            ),
            f"active timer for {owner_id}",
        )

    async def get_active_day(self, owner_id: str) -> Optional[Entry]:
        """Get the owner's open day container, if any"""
        return await self._fetch_one(
            select(EntryModel).where(
                EntryModel.owner_id == owner_id,
                EntryModel.mode == EntryMode.DAY.value,
                EntryModel.end_time.is_(None),
                EntryModel.parent_id.is_(None),
            ),
            f"active day for {owner_id}",
        )

    async def get_blocks_for_day(self, day_id: int, owner_id: str) -> List[Entry]:
        """Get all blocks of a day, earliest first"""
        return await self._fetch_all(
            select(EntryModel)
            .where(EntryModel.parent_id == day_id, EntryModel.owner_id == owner_id)
            .order_by(EntryModel.start_time.asc(), EntryModel.id.asc()),
            f"blocks of day {day_id}",
        )

    async def get_by_id(self, entry_id: int) -> Optional[Entry]:
        """Get a specific entry by ID"""
        return await self._fetch_one(
            select(EntryModel).where(EntryModel.id == entry_id),
            f"entry {entry_id}",
        )

    async def list_for_owner(self, owner_id: str, start_date: Optional[date] = None,
                             end_date: Optional[date] = None,
                             mode: Optional[EntryMode] = None) -> List[Entry]:
        """Get an owner's entries whose start falls in [start_date, end_date], newest first"""
        query = select(EntryModel).where(EntryModel.owner_id == owner_id)

        if start_date:
            query = query.where(EntryModel.start_time >= datetime.combine(start_date, time.min))
        if end_date:
            query = query.where(
                EntryModel.start_time < datetime.combine(end_date + timedelta(days=1), time.min)
            )
        if mode:
            query = query.where(EntryModel.mode == mode.value)

        return await self._fetch_all(
            query.order_by(EntryModel.start_time.desc()),
            f"entries of {owner_id}",
        )

    async def insert(self, entry: Entry) -> Entry:
        """Create a new entry"""
        session = await self._get_session()
        async with session:
            entry_model = EntryModel(
                owner_id=entry.owner_id,
                mode=entry.mode.value,
                parent_id=entry.parent_id,
                start_time=entry.start_time,
                end_time=entry.end_time,
                duration_minutes=entry.duration_minutes,
                project_id=entry.project_id,
                category_id=entry.category_id,
                description=entry.description,
                created_at=entry.created_at,
                updated_at=entry.updated_at
            )
            session.add(entry_model)
            try:
                await session.commit()
                await session.refresh(entry_model)
            except IntegrityError as e:
                await session.rollback()
                raise await self._translate_integrity_error(
                    session, e, entry.mode, entry.model_dump()
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Insert of {entry.mode.value} entry for {entry.owner_id} failed: {e}")
                raise StoreError("Insert failed") from e
            return Entry.model_validate(entry_model)

    async def update(self, entry_id: int, patch: Dict[str, Any],
                     only_open: bool = False) -> Optional[Entry]:
        """
        Apply a partial update and return the stored row.

        Args:
            entry_id: Entry to update
            patch: Column values to write (see UPDATABLE_FIELDS)
            only_open: Only touch the row while its end_time is still NULL

        Returns:
            The updated entry, or None if no row matched
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        session = await self._get_session()
        async with session:
            stmt = update(EntryModel).where(EntryModel.id == entry_id)
            if only_open:
                stmt = stmt.where(EntryModel.end_time.is_(None))
            try:
                result = await session.execute(stmt.values(**patch))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                try:
                    existing = await session.get(EntryModel, entry_id)
                except SQLAlchemyError as lookup_error:
                    logger.error(f"Lookup of entry {entry_id} after integrity error failed: {lookup_error}")
                    raise StoreError("Constraint violated") from e
                mode = EntryMode(existing.mode) if existing else EntryMode.SIMPLE
                raise await self._translate_integrity_error(session, e, mode, patch) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Update of entry {entry_id} failed: {e}")
                raise StoreError("Update failed") from e

            if result.rowcount == 0:
                return None

        return await self.get_by_id(entry_id)

    async def delete(self, entry_id: int) -> bool:
        """Delete an entry by ID. Returns False if nothing was deleted."""
        session = await self._get_session()
        async with session:
            try:
                result = await session.execute(
                    delete(EntryModel).where(EntryModel.id == entry_id)
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Delete of entry {entry_id} failed: {e}")
                raise StoreError("Delete failed") from e
            return result.rowcount > 0

    async def _translate_integrity_error(self, session: AsyncSession, error: IntegrityError,
                                         mode: EntryMode, values: Dict[str, Any]) -> StoreError:
        """Work out which rule the store enforced"""
        message = str(error.orig).lower()

        if "unique" in message or "duplicate" in message:
            return OpenEntryConflict(mode)

        if "foreign key" in message:
            # PostgreSQL names the column; SQLite does not, so probe the references
            for field in ("project_id", "category_id", "parent_id"):
                if field in message:
                    return ReferenceViolation(field)
            try:
                field = await self._find_dangling_reference(session, values)
            except SQLAlchemyError as e:
                logger.error(f"Reference probe after integrity error failed: {e}")
                return StoreError("Constraint violated")
            if field:
                return ReferenceViolation(field)

        logger.error(f"Integrity error on time_entries: {error.orig}")
        return StoreError("Constraint violated")

    async def _find_dangling_reference(self, session: AsyncSession,
                                       values: Dict[str, Any]) -> Optional[str]:
        checks = (
            ("project_id", ProjectModel),
            ("category_id", CategoryModel),
            ("parent_id", EntryModel),
        )
        for field, model in checks:
            ref = values.get(field)
            if ref is not None and await session.get(model, ref) is None:
                return field
        return None


class TimesheetRepository:
    """
    Read access to the weekly approval records.

    The records are written by the approval workflow, not by this package.
    """

    def __init__(self, session: Optional[AsyncSession] = None):
        self.session = session

    async def _get_session(self) -> AsyncSession:
        if self.session:
            return self.session
        engine = get_engine()
        return engine.get_session()

    async def get_status(self, owner_id: str, week_start: date) -> Optional[TimesheetStatus]:
        """Get the approval status for one owner and week, None if no record exists"""
        session = await self._get_session()
        try:
            async with session:
                result = await session.execute(
                    select(TimesheetModel.status).where(
                        TimesheetModel.owner_id == owner_id,
                        TimesheetModel.week_start == week_start,
                    )
                )
                status = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Timesheet lookup for {owner_id} / {week_start} failed: {e}")
            raise StoreError("Timesheet lookup failed") from e

        if status is None:
            return None
        try:
            return TimesheetStatus(status)
        except ValueError as e:
            raise StoreError(f"Unknown timesheet status: {status}") from e
