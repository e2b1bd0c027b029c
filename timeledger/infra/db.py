"""
SQLAlchemy database models and configuration.

Architecture Decision: Why SQLAlchemy?
- Provides ORM for cleaner code and prevents SQL injection
- Supports async operations for non-blocking database access
- Easy to migrate to PostgreSQL or other databases if needed

The "one open timer / one open day per owner" rules live here as partial
unique indexes. The service checks first for a friendlier error, but the
index is what holds under concurrent requests.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, event, text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from timeledger.domain.models import utc_now


# Base class for all models
class Base(DeclarativeBase):
    pass


class ProjectModel(Base):
    """Referenced project. Owned by another part of the system."""
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)


class CategoryModel(Base):
    """Referenced category. Owned by another part of the system."""
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


class TimesheetModel(Base):
    """Weekly approval record. Read-only from this package's point of view."""
    __tablename__ = "timesheets"
    __table_args__ = (
        UniqueConstraint("owner_id", "week_start", name="uq_timesheets_owner_week"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")


class EntryModel(Base):
    """SQLAlchemy model for Entry entity"""
    __tablename__ = "time_entries"
    __table_args__ = (
        CheckConstraint(
            "end_time IS NULL OR end_time > start_time",
            name="ck_time_entries_range",
        ),
        CheckConstraint(
            "(mode = 'block') = (parent_id IS NOT NULL)",
            name="ck_time_entries_parent",
        ),
        Index(
            "uq_time_entries_open_simple", "owner_id", "mode",
            unique=True,
            sqlite_where=text("end_time IS NULL AND mode = 'simple'"),
            postgresql_where=text("end_time IS NULL AND mode = 'simple'"),
        ),
        Index(
            "uq_time_entries_open_day", "owner_id", "mode",
            unique=True,
            sqlite_where=text("end_time IS NULL AND mode = 'day'"),
            postgresql_where=text("end_time IS NULL AND mode = 'day'"),
        ),
        Index("ix_time_entries_parent_start", "parent_id", "start_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(10), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("time_entries.id", ondelete="CASCADE"), nullable=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    project_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("projects.id"), nullable=True)
    category_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("categories.id"), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ships with foreign keys off; dangling references must fail"""
    module = type(dbapi_connection).__module__
    if "sqlite" not in module:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseEngine:
    """
    Manages database connection and session lifecycle.

    Singleton pattern ensures only one engine exists per application.
    """
    _instance: Optional['DatabaseEngine'] = None

    def __init__(self, db_url: str, echo: bool = False):
        self.engine = create_async_engine(db_url, echo=echo)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    @classmethod
    def get_instance(cls, db_url: Optional[str] = None) -> 'DatabaseEngine':
        """Get or create the database engine instance"""
        if cls._instance is None:
            from timeledger.infra.config import get_settings
            settings = get_settings()
            cls._instance = cls(db_url or settings.get_db_url(), echo=settings.echo_sql)
        return cls._instance

    @classmethod
    async def dispose_instance(cls) -> None:
        """Close the pooled connections and forget the singleton"""
        if cls._instance is not None:
            await cls._instance.engine.dispose()
            cls._instance = None

    async def create_tables(self):
        """Create all tables in the database"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def get_session(self) -> AsyncSession:
        """Get a new database session"""
        return self.session_factory()


# Convenience functions
def get_engine(db_url: Optional[str] = None) -> DatabaseEngine:
    """Get the database engine instance"""
    return DatabaseEngine.get_instance(db_url)


async def init_db(db_url: Optional[str] = None):
    """Initialize the database (create tables)"""
    engine = get_engine(db_url)
    await engine.create_tables()
