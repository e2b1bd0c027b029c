"""
Pytest configuration and fixtures.
"""

import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from timeledger.infra.config import Settings
from timeledger.infra.db import Base, CategoryModel, DatabaseEngine, ProjectModel, TimesheetModel, init_db
from timeledger.infra.repository import EntryRepository, TimesheetRepository
from timeledger.services.entry_service import EntryLifecycleService
from timeledger.services.mutation_gate import MutationGate


OWNER = "user-1"
OTHER_OWNER = "user-2"

# A Tuesday
START = datetime.datetime(2026, 3, 10, 8, 0)


class FakeClock:
    """Callable clock that only moves when a test says so"""

    def __init__(self, now: datetime.datetime):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> datetime.datetime:
        self.now += datetime.timedelta(**kwargs)
        return self.now

    def set(self, hour: int, minute: int = 0, second: int = 0) -> datetime.datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=second, microsecond=0)
        return self.now


@pytest_asyncio.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing"""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Create a new session for a test"""
    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """File-backed database behind the engine singleton; every call opens its own session"""
    url = f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"
    await DatabaseEngine.dispose_instance()
    await init_db(url)
    yield url
    await DatabaseEngine.dispose_instance()


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def entry_repo(db_session):
    return EntryRepository(session=db_session)


@pytest.fixture
def service(db_session, clock, settings):
    """Lifecycle service wired to the test session and the fake clock"""
    return EntryLifecycleService(
        entry_repo=EntryRepository(session=db_session),
        gate=MutationGate(TimesheetRepository(session=db_session)),
        clock=clock,
        settings=settings,
    )


@pytest_asyncio.fixture
async def project(db_session):
    model = ProjectModel(code="P-1", name="Platform")
    db_session.add(model)
    await db_session.commit()
    return model.id


@pytest_asyncio.fixture
async def category(db_session):
    model = CategoryModel(name="Development", color="#3366ff")
    db_session.add(model)
    await db_session.commit()
    return model.id


@pytest.fixture
def set_timesheet(db_session):
    """Write an approval record the way the approval workflow would"""
    async def _set(owner_id: str, week_start: datetime.date, status: str):
        db_session.add(TimesheetModel(owner_id=owner_id, week_start=week_start, status=status))
        await db_session.commit()
    return _set
