"""
Backup Service - Orchestrates backup and restore tasks.

Synchronous operations (called from request handlers) create or read task
rows and return immediately. The pipelines run on background threads via
the task manager:

- backup:  archive(write) -> database export -> uploads -> completed
- upload:  staged file -> backups dir -> completed
- restore: archive(unpack) -> dialect check -> database import -> uploads
"""

import logging
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from imgvault.config import Settings, get_settings
from imgvault.db.database import SyncSessionLocal, sync_engine
from imgvault.db.models import BackupTaskDB, RestoreTaskDB
from imgvault.services.archive import (
    ArchiveWriter,
    database_entry_name,
    detect_dialect,
    extract_archive,
)
from imgvault.services.db_dump import (
    CommandRunner,
    DatabaseDumper,
    export_database,
    get_dumper,
)
from imgvault.services.errors import (
    BackupFileMissingError,
    BackupNotCompletedError,
    BackupNotFoundError,
    BackupServiceError,
    DialectMismatchError,
    EmptyUploadError,
    RestoreTaskNotFoundError,
    UploadStagingError,
    UploadTooLargeError,
)
from imgvault.services.file_sync import add_uploads_to_archive, restore_uploads
from imgvault.services.task_manager import TaskManager, TaskStatus, task_manager

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1MB


def _sanitize_upload_name(filename: Optional[str]) -> str:
    """Reduce a client-supplied file name to a bare, harmless name."""
    name = Path((filename or "").replace("\\", "/")).name.strip()
    if not name or name in (".", ".."):
        return "backup.zip"
    return name[:128]


class BackupService:
    """Owns the BackupTask/RestoreTask lifecycle."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        manager: Optional[TaskManager] = None,
        runner: Optional[CommandRunner] = None,
        engine: Optional[Engine] = None,
    ):
        self.settings = settings or get_settings()
        self.task_manager = manager or task_manager
        self.runner = runner
        self.engine = engine or sync_engine

    # ============ Paths ============

    @property
    def backups_dir(self) -> Path:
        return Path(self.settings.backups_dir).resolve()

    @property
    def temp_dir(self) -> Path:
        return Path(self.settings.temp_dir).resolve()

    @property
    def upload_root(self) -> Path:
        return Path(self.settings.upload_dir).resolve()

    def _new_archive_path(self, task_id: str) -> Path:
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
        return self.backups_dir / f"backup_{timestamp}_{task_id[:8]}.zip"

    def _dumper(self) -> DatabaseDumper:
        return get_dumper(self.settings, self.engine, self.runner)

    # ============ Backup ============

    async def create_backup(self, db: AsyncSession, user_id: Optional[str] = None) -> BackupTaskDB:
        """Insert a pending backup task and start the backup pipeline."""
        task = BackupTaskDB(
            status=TaskStatus.PENDING.value,
            source="created",
            start_time=datetime.utcnow(),
            created_by=user_id,
        )
        db.add(task)
        await db.commit()

        logger.info(f"Backup task {task.id} created")
        self.task_manager.run_in_background(
            BackupTaskDB, task.id, self._execute_backup, task.id,
            user_id=user_id, event="backup",
        )
        return task

    def _execute_backup(self, task_id: str) -> Dict[str, Any]:
        dumper = self._dumper()
        archive_path = self._new_archive_path(task_id)
        # Written under a temporary name so a crash never leaves a
        # truncated archive that looks complete
        part_path = archive_path.with_name(archive_path.name + ".part")

        try:
            with ArchiveWriter(part_path) as writer:
                with writer.open_database_entry(dumper.dialect) as fp:
                    export_database(dumper, fp)
                files = add_uploads_to_archive(writer, self.upload_root)
            part_path.replace(archive_path)
        except Exception:
            part_path.unlink(missing_ok=True)
            raise

        size = archive_path.stat().st_size
        logger.info(f"Backup {task_id} written to {archive_path} ({files} files, {size} bytes)")
        return {"size": size, "storage_path": str(archive_path)}

    # ============ Upload intake ============

    async def create_upload_backup_task(
        self,
        db: AsyncSession,
        start_time: datetime,
        upload,
        user_id: Optional[str] = None,
    ) -> BackupTaskDB:
        """Stage an uploaded archive and register it as a backup.

        Staging happens before returning so the bytes outlive the request.
        It is the only step that can fail synchronously: on failure the task
        row is removed and UploadStagingError (or EmptyUploadError) raised.
        """
        task = BackupTaskDB(
            status=TaskStatus.PENDING.value,
            source="uploaded",
            start_time=start_time,
            created_by=user_id,
        )
        db.add(task)
        await db.commit()

        staged_path = self.temp_dir / f"upload_{task.id}_{_sanitize_upload_name(upload.filename)}"
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            received = 0
            with open(staged_path, "wb") as dst:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    received += len(chunk)
                    if received > self.settings.max_upload_size:
                        raise UploadTooLargeError(self.settings.max_upload_size)
                    dst.write(chunk)
            if received == 0:
                raise EmptyUploadError()
        except Exception as e:
            staged_path.unlink(missing_ok=True)
            await db.delete(task)
            await db.commit()
            logger.error(f"Staging upload for backup task {task.id} failed: {e}")
            if isinstance(e, BackupServiceError):
                raise
            raise UploadStagingError(f"Failed to stage uploaded file: {e}")

        logger.info(f"Upload backup task {task.id} staged {received} bytes at {staged_path}")
        self.task_manager.run_in_background(
            BackupTaskDB, task.id, self._execute_upload_backup, task.id, staged_path,
            user_id=user_id, event="backup",
        )
        return task

    def _execute_upload_backup(self, task_id: str, staged_path: Path) -> Dict[str, Any]:
        try:
            archive_path = self._new_archive_path(task_id)
            # shutil.move falls back to copy + delete across filesystems
            shutil.move(str(staged_path), str(archive_path))
        finally:
            Path(staged_path).unlink(missing_ok=True)

        size = archive_path.stat().st_size
        logger.info(f"Uploaded backup {task_id} stored at {archive_path} ({size} bytes)")
        return {"size": size, "storage_path": str(archive_path)}

    # ============ Restore ============

    async def restore_backup(
        self,
        db: AsyncSession,
        backup_id: str,
        user_id: Optional[str] = None,
    ) -> RestoreTaskDB:
        """Insert a pending restore task for an existing backup and start it.

        Whether the backup is completed is checked by the pipeline itself,
        before anything destructive happens.
        """
        backup = await db.get(BackupTaskDB, backup_id)
        if backup is None:
            raise BackupNotFoundError(backup_id)

        task = RestoreTaskDB(
            backup_task_id=backup_id,
            status=TaskStatus.PENDING.value,
            start_time=datetime.utcnow(),
            created_by=user_id,
        )
        db.add(task)
        await db.commit()

        logger.info(f"Restore task {task.id} created from backup {backup_id}")
        self.task_manager.run_in_background(
            RestoreTaskDB, task.id, self._execute_restore, task.id,
            user_id=user_id, event="restore",
        )
        return task

    def _execute_restore(self, restore_id: str) -> None:
        # Read-only view of the backup row; the restore never modifies it
        with SyncSessionLocal() as session:
            restore = session.get(RestoreTaskDB, restore_id)
            if restore is None:
                raise RestoreTaskNotFoundError(restore_id)
            backup = session.get(BackupTaskDB, restore.backup_task_id)
            if backup is None:
                raise BackupNotFoundError(restore.backup_task_id)
            backup_id, status, storage_path = backup.id, backup.status, backup.storage_path

        if status != TaskStatus.COMPLETED.value:
            raise BackupNotCompletedError(backup_id, status)
        if not storage_path or not Path(storage_path).is_file():
            raise BackupFileMissingError(storage_path or "<unset>")

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="restore_", dir=self.temp_dir) as scratch:
            extract_dir = extract_archive(Path(storage_path), Path(scratch))

            dialect = detect_dialect(extract_dir)
            if dialect != self.settings.database_type:
                raise DialectMismatchError(dialect, self.settings.database_type)

            dumper = self._dumper()
            dumper.import_from(extract_dir / database_entry_name(dialect))
            restore_uploads(extract_dir, self.upload_root)

        logger.info(f"Restore {restore_id} from backup {backup_id} finished")

    # ============ Queries ============

    async def get_backup_list(self, db: AsyncSession) -> List[BackupTaskDB]:
        result = await db.execute(
            select(BackupTaskDB).order_by(BackupTaskDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_restore_records(self, db: AsyncSession) -> List[RestoreTaskDB]:
        result = await db.execute(
            select(RestoreTaskDB)
            .options(selectinload(RestoreTaskDB.backup_task))
            .order_by(RestoreTaskDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_backup_task_by_id(self, db: AsyncSession, backup_id: str) -> BackupTaskDB:
        task = await db.get(BackupTaskDB, backup_id)
        if task is None:
            raise BackupNotFoundError(backup_id)
        return task

    async def get_restore_task_by_id(self, db: AsyncSession, restore_id: str) -> RestoreTaskDB:
        result = await db.execute(
            select(RestoreTaskDB)
            .options(selectinload(RestoreTaskDB.backup_task))
            .where(RestoreTaskDB.id == restore_id)
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise RestoreTaskNotFoundError(restore_id)
        return task

    async def get_download_path(self, db: AsyncSession, backup_id: str) -> Path:
        """Archive path of a completed backup."""
        task = await self.get_backup_task_by_id(db, backup_id)
        if task.status != TaskStatus.COMPLETED.value or not task.storage_path:
            raise BackupNotFoundError(backup_id, "is not completed")
        path = Path(task.storage_path)
        if not path.is_file():
            raise BackupNotFoundError(backup_id, "archive file is missing")
        return path

    # ============ Deletion ============

    async def delete_backup(self, db: AsyncSession, backup_id: str) -> None:
        """Delete dependent restore tasks, the archive file, then the backup row."""
        task = await self.get_backup_task_by_id(db, backup_id)

        await db.execute(
            delete(RestoreTaskDB).where(RestoreTaskDB.backup_task_id == backup_id)
        )

        if task.storage_path:
            try:
                Path(task.storage_path).unlink(missing_ok=True)
            except OSError as e:
                await db.rollback()
                logger.error(f"Delete backup file failed: {e}")
                raise BackupServiceError(f"Failed to delete backup file: {e}", "DELETE_BACKUP_ERROR")

        await db.delete(task)
        await db.commit()
        logger.info(f"Backup {backup_id} deleted")

    async def delete_restore_task(self, db: AsyncSession, restore_id: str) -> None:
        """Delete a restore task row. Its backup is left alone."""
        task = await db.get(RestoreTaskDB, restore_id)
        if task is None:
            raise RestoreTaskNotFoundError(restore_id)
        await db.delete(task)
        await db.commit()
        logger.info(f"Restore task {restore_id} deleted")


# Global instance
backup_service = BackupService()
