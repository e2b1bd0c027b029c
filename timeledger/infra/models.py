"""
SQLAlchemy ORM models.
Separated from db.py for cleaner imports.
"""

from .db import Base, CategoryModel, EntryModel, ProjectModel, TimesheetModel

__all__ = ["Base", "CategoryModel", "EntryModel", "ProjectModel", "TimesheetModel"]
