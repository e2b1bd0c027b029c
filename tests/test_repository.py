"""
Tests for the entry repository against an in-memory SQLite store.
"""

import datetime

import pytest
from sqlalchemy.exc import OperationalError

from timeledger.domain.models import Entry, EntryMode
from timeledger.infra.repository import OpenEntryConflict, ReferenceViolation, StoreError

from conftest import OTHER_OWNER, OWNER


def at(hour: int, minute: int = 0, day: int = 10) -> datetime.datetime:
    return datetime.datetime(2026, 3, day, hour, minute)


def simple(owner=OWNER, start=None, end=None, **kwargs) -> Entry:
    return Entry(owner_id=owner, mode=EntryMode.SIMPLE, start_time=start or at(9), end_time=end, **kwargs)


@pytest.mark.asyncio
async def test_active_lookups_return_none_when_nothing_is_open(entry_repo):
    await entry_repo.insert(simple(end=at(10)))

    assert await entry_repo.get_active_simple(OWNER) is None
    assert await entry_repo.get_active_day(OWNER) is None
    assert await entry_repo.get_by_id(9999) is None


@pytest.mark.asyncio
async def test_active_lookups_are_scoped_by_owner_and_mode(entry_repo):
    timer = await entry_repo.insert(simple())
    day = await entry_repo.insert(Entry(owner_id=OWNER, mode=EntryMode.DAY, start_time=at(8)))
    await entry_repo.insert(simple(owner=OTHER_OWNER))

    assert (await entry_repo.get_active_simple(OWNER)).id == timer.id
    assert (await entry_repo.get_active_day(OWNER)).id == day.id
    assert await entry_repo.get_active_day(OTHER_OWNER) is None


@pytest.mark.asyncio
async def test_blocks_are_returned_in_start_order(entry_repo):
    day = await entry_repo.insert(Entry(owner_id=OWNER, mode=EntryMode.DAY, start_time=at(8)))
    for start, end in [(13, 14), (9, 10), (11, 12)]:
        await entry_repo.insert(Entry(
            owner_id=OWNER, mode=EntryMode.BLOCK, parent_id=day.id,
            start_time=at(start), end_time=at(end), duration_minutes=60,
        ))

    blocks = await entry_repo.get_blocks_for_day(day.id, OWNER)

    assert [b.start_time.hour for b in blocks] == [9, 11, 13]
    assert all(b.parent_id == day.id for b in blocks)
    assert await entry_repo.get_blocks_for_day(day.id, OTHER_OWNER) == []


@pytest.mark.asyncio
async def test_second_open_timer_is_rejected_by_the_store(entry_repo):
    await entry_repo.insert(simple())

    with pytest.raises(OpenEntryConflict) as exc_info:
        await entry_repo.insert(simple(start=at(10)))
    assert exc_info.value.mode == EntryMode.SIMPLE

    # Closed entries and other owners are unaffected
    await entry_repo.insert(simple(start=at(6), end=at(7)))
    await entry_repo.insert(simple(owner=OTHER_OWNER))


@pytest.mark.asyncio
async def test_second_open_day_is_rejected_by_the_store(entry_repo):
    await entry_repo.insert(Entry(owner_id=OWNER, mode=EntryMode.DAY, start_time=at(8)))

    with pytest.raises(OpenEntryConflict) as exc_info:
        await entry_repo.insert(Entry(owner_id=OWNER, mode=EntryMode.DAY, start_time=at(9)))
    assert exc_info.value.mode == EntryMode.DAY


@pytest.mark.asyncio
async def test_dangling_references_name_the_field(entry_repo, project):
    with pytest.raises(ReferenceViolation) as exc_info:
        await entry_repo.insert(simple(end=at(10), project_id=4242))
    assert exc_info.value.field == "project_id"

    with pytest.raises(ReferenceViolation) as exc_info:
        await entry_repo.insert(simple(end=at(10), project_id=project, category_id=4242))
    assert exc_info.value.field == "category_id"


@pytest.mark.asyncio
async def test_reversed_range_is_a_generic_store_error(entry_repo):
    with pytest.raises(StoreError) as exc_info:
        await entry_repo.insert(simple(start=at(10), end=at(9)))
    assert not isinstance(exc_info.value, (ReferenceViolation, OpenEntryConflict))


@pytest.mark.asyncio
async def test_update_returns_stored_row(entry_repo, category):
    entry = await entry_repo.insert(simple(end=at(10)))

    updated = await entry_repo.update(entry.id, {"category_id": category, "description": "Review"})

    assert updated.category_id == category
    assert updated.description == "Review"
    assert updated.start_time == entry.start_time


@pytest.mark.asyncio
async def test_update_only_open_skips_closed_rows(entry_repo):
    entry = await entry_repo.insert(simple(end=at(10)))

    assert await entry_repo.update(entry.id, {"description": "x"}, only_open=True) is None
    assert await entry_repo.update(9999, {"description": "x"}) is None


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(entry_repo):
    entry = await entry_repo.insert(simple(end=at(10)))

    with pytest.raises(ValueError):
        await entry_repo.update(entry.id, {"owner_id": OTHER_OWNER})


@pytest.mark.asyncio
async def test_delete_reports_whether_a_row_was_removed(entry_repo):
    entry = await entry_repo.insert(simple(end=at(10)))

    assert await entry_repo.delete(entry.id) is True
    assert await entry_repo.delete(entry.id) is False
    assert await entry_repo.get_by_id(entry.id) is None


@pytest.mark.asyncio
async def test_list_for_owner_filters_by_start_date(entry_repo):
    for day in (9, 10, 11, 12):
        await entry_repo.insert(simple(start=at(9, day=day), end=at(10, day=day)))

    entries = await entry_repo.list_for_owner(
        OWNER, start_date=datetime.date(2026, 3, 10), end_date=datetime.date(2026, 3, 11)
    )

    assert [e.start_time.day for e in entries] == [11, 10]


@pytest.mark.asyncio
async def test_list_for_owner_filters_by_mode(entry_repo):
    day = await entry_repo.insert(Entry(owner_id=OWNER, mode=EntryMode.DAY, start_time=at(8)))
    await entry_repo.insert(Entry(
        owner_id=OWNER, mode=EntryMode.BLOCK, parent_id=day.id,
        start_time=at(9), end_time=at(10), duration_minutes=60,
    ))
    await entry_repo.insert(simple(start=at(11), end=at(12)))

    blocks = await entry_repo.list_for_owner(OWNER, mode=EntryMode.BLOCK)
    assert [e.mode for e in blocks] == [EntryMode.BLOCK]
    assert len(await entry_repo.list_for_owner(OWNER)) == 3


@pytest.mark.asyncio
async def test_failed_lookup_after_integrity_error_is_a_store_error(entry_repo, db_session, monkeypatch):
    entry = await entry_repo.insert(simple(end=at(10)))

    async def broken_get(*args, **kwargs):
        raise OperationalError("SELECT time_entries", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "get", broken_get)

    with pytest.raises(StoreError) as exc_info:
        await entry_repo.update(entry.id, {"project_id": 4242})

    assert not isinstance(exc_info.value, (ReferenceViolation, OpenEntryConflict))
    assert "locked" not in str(exc_info.value)
