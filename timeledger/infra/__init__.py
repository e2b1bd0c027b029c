"""Infrastructure layer - Database, configuration and persistence"""

from .db import DatabaseEngine, get_engine, init_db
from .models import EntryModel, TimesheetModel
from .repository import EntryRepository, TimesheetRepository, StoreError

__all__ = [
    "DatabaseEngine", "get_engine", "init_db", "EntryModel", "TimesheetModel",
    "EntryRepository", "TimesheetRepository", "StoreError",
]
