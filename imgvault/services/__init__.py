"""
Service layer for imgvault.

This module provides business logic for:
- Backup and restore task orchestration
- Archive encoding/decoding
- Database export/import per dialect
"""

from imgvault.services.backup_service import BackupService, backup_service
from imgvault.services.errors import (
    BackupServiceError,
    BackupNotFoundError,
    RestoreTaskNotFoundError,
    UploadStagingError,
    ArchiveSecurityError,
    DialectMismatchError,
)
from imgvault.services.task_manager import TaskManager, TaskStatus, task_manager

__all__ = [
    "BackupService",
    "backup_service",
    "BackupServiceError",
    "BackupNotFoundError",
    "RestoreTaskNotFoundError",
    "UploadStagingError",
    "ArchiveSecurityError",
    "DialectMismatchError",
    "TaskManager",
    "TaskStatus",
    "task_manager",
]
