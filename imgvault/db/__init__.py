"""
Database layer for imgvault.

This module provides:
- Database connection management (async for requests, sync for workers)
- SQLAlchemy ORM models
"""

from imgvault.db.database import (
    get_db,
    init_db,
    AsyncSessionLocal,
    SyncSessionLocal,
    engine,
    sync_engine,
)
from imgvault.db.models import (
    BackupTaskDB,
    RestoreTaskDB,
)

__all__ = [
    # Database
    "get_db",
    "init_db",
    "AsyncSessionLocal",
    "SyncSessionLocal",
    "engine",
    "sync_engine",
    # Models
    "BackupTaskDB",
    "RestoreTaskDB",
]
