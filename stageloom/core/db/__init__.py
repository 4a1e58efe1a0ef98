"""
Database module for Stageloom.

Exports:
- DatabaseManager: Database connection and session management
- sqlite_url: Build a SQLite URL for a file path
- Models: MigrationSessionRow, MigrationStageRow, BackupEntryRow
- Base: SQLAlchemy declarative base
"""

from .db import DatabaseManager, sqlite_url
from .models import Base, BackupEntryRow, MigrationSessionRow, MigrationStageRow

__all__ = [
    "DatabaseManager",
    "sqlite_url",
    "Base",
    "BackupEntryRow",
    "MigrationSessionRow",
    "MigrationStageRow",
]
