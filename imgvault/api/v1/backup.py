"""
Backup & Restore API - Task-based full system backup and restore.

Backup scope: every application table (never the task tables) + the uploads root.
Creating a backup or a restore returns a pending task immediately; progress
is observed by polling the task endpoints.
"""

import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from imgvault.api.v1.auth import current_user_id
from imgvault.db.database import get_db
from imgvault.db.models import BackupTaskDB, RestoreTaskDB
from imgvault.services.backup_service import BackupService, backup_service
from imgvault.services.errors import (
    BackupNotFoundError,
    BackupServiceError,
    RestoreTaskNotFoundError,
    UploadStagingError,
    UploadTooLargeError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup", tags=["backup"])


def get_backup_service() -> BackupService:
    return backup_service


# ============ Response Models ============


class BackupTaskResponse(BaseModel):
    id: str
    status: str
    source: str
    start_time: datetime
    end_time: Optional[datetime] = None
    size: Optional[int] = None
    storage_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime


class BackupListResponse(BaseModel):
    backups: List[BackupTaskResponse]
    total: int


class RestoreTaskResponse(BaseModel):
    id: str
    backup_task_id: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime
    backup_task: Optional[BackupTaskResponse] = None


class RestoreListResponse(BaseModel):
    records: List[RestoreTaskResponse]
    total: int


class MessageResponse(BaseModel):
    success: bool
    message: str


# ============ Internal Helpers ============


def _backup_to_response(task: BackupTaskDB) -> BackupTaskResponse:
    return BackupTaskResponse(
        id=task.id,
        status=task.status,
        source=task.source,
        start_time=task.start_time,
        end_time=task.end_time,
        size=task.size,
        storage_path=task.storage_path,
        error=task.error,
        created_at=task.created_at,
    )


def _restore_to_response(task: RestoreTaskDB, backup: Optional[BackupTaskDB] = None) -> RestoreTaskResponse:
    return RestoreTaskResponse(
        id=task.id,
        backup_task_id=task.backup_task_id,
        status=task.status,
        start_time=task.start_time,
        end_time=task.end_time,
        error=task.error,
        created_at=task.created_at,
        backup_task=_backup_to_response(backup) if backup is not None else None,
    )


def _to_http_error(e: BackupServiceError) -> HTTPException:
    if isinstance(e, (BackupNotFoundError, RestoreTaskNotFoundError)):
        status_code = 404
    elif isinstance(e, UploadTooLargeError):
        status_code = 413
    elif isinstance(e, UploadStagingError):
        status_code = 500
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail={"code": e.code, "message": e.message})


# ============ Endpoints ============


@router.post("", response_model=BackupTaskResponse)
async def create_backup(
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
    user_id: Optional[str] = Depends(current_user_id),
):
    """Create a full system backup.

    Returns the pending task at once; the archive (database export plus
    uploads) is produced in the background.
    """
    task = await service.create_backup(db, user_id=user_id)
    return _backup_to_response(task)


@router.get("/list", response_model=BackupListResponse)
async def list_backups(
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    """List all backup tasks, newest first."""
    tasks = await service.get_backup_list(db)
    return BackupListResponse(
        backups=[_backup_to_response(t) for t in tasks],
        total=len(tasks),
    )


@router.get("/restore/list", response_model=RestoreListResponse)
async def list_restore_records(
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    """List all restore tasks with their backup, newest first."""
    records = await service.get_restore_records(db)
    return RestoreListResponse(
        records=[_restore_to_response(r, r.backup_task) for r in records],
        total=len(records),
    )


@router.get("/restore/{restore_id}", response_model=RestoreTaskResponse)
async def get_restore_task(
    restore_id: str,
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    try:
        task = await service.get_restore_task_by_id(db, restore_id)
    except BackupServiceError as e:
        raise _to_http_error(e)
    return _restore_to_response(task, task.backup_task)


@router.post("/restore/{backup_id}", response_model=RestoreTaskResponse)
async def restore_backup(
    backup_id: str,
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
    user_id: Optional[str] = Depends(current_user_id),
):
    """Restore the system from a backup.

    The live database and uploads are replaced in the background. Backups
    that are not completed, or that were taken from another database type,
    fail before anything is changed.
    """
    try:
        task = await service.restore_backup(db, backup_id, user_id=user_id)
    except BackupServiceError as e:
        raise _to_http_error(e)
    return _restore_to_response(task)


@router.delete("/restore/{restore_id}", response_model=MessageResponse)
async def delete_restore_task(
    restore_id: str,
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    try:
        await service.delete_restore_task(db, restore_id)
    except BackupServiceError as e:
        raise _to_http_error(e)
    return MessageResponse(success=True, message="Restore task deleted successfully")


@router.get("/download/{backup_id}")
async def download_backup(
    backup_id: str,
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    """Download the archive of a completed backup."""
    try:
        path = await service.get_download_path(db, backup_id)
    except BackupServiceError as e:
        raise _to_http_error(e)

    return FileResponse(
        path=str(path),
        media_type="application/octet-stream",
        filename=path.name,
        headers={"Cache-Control": "must-revalidate"},
    )


@router.post("/upload", response_model=BackupTaskResponse)
async def upload_backup(
    file: Optional[UploadFile] = File(None, description="Backup archive to register"),
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
    user_id: Optional[str] = Depends(current_user_id),
):
    """Register an uploaded archive as a backup.

    The content is not inspected here; a broken archive is only rejected
    when a restore from it is attempted.
    """
    start_time = datetime.utcnow()
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="A backup file is required")

    try:
        task = await service.create_upload_backup_task(db, start_time, file, user_id=user_id)
    except BackupServiceError as e:
        raise _to_http_error(e)
    return _backup_to_response(task)


@router.get("/{backup_id}", response_model=BackupTaskResponse)
async def get_backup(
    backup_id: str,
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    try:
        task = await service.get_backup_task_by_id(db, backup_id)
    except BackupServiceError as e:
        raise _to_http_error(e)
    return _backup_to_response(task)


@router.delete("/{backup_id}", response_model=MessageResponse)
async def delete_backup(
    backup_id: str,
    db: AsyncSession = Depends(get_db),
    service: BackupService = Depends(get_backup_service),
):
    """Delete a backup, its archive file and every restore task made from it."""
    try:
        await service.delete_backup(db, backup_id)
    except BackupServiceError as e:
        raise _to_http_error(e)
    return MessageResponse(success=True, message="Backup deleted successfully")
