"""
Task Manager - Database-backed lifecycle for backup and restore tasks.

Each pipeline runs on its own daemon thread. A single-slot semaphore is
shared by all pipelines so that only one of them touches the live database
and uploads tree at a time; queued tasks stay pending until they get it.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Type, Union

from sqlalchemy import update

from imgvault.db.database import AsyncSessionLocal, SyncSessionLocal
from imgvault.db.models import BackupTaskDB, RestoreTaskDB
from imgvault.services.notifier import NotificationHub, notification_hub

logger = logging.getLogger(__name__)

TaskModel = Type[Union[BackupTaskDB, RestoreTaskDB]]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)

STALE_TASK_ERROR = "Server restarted while task was in progress"


class TaskManager:
    """Runs task pipelines in background threads and persists their status."""

    def __init__(self, notifier: Optional[NotificationHub] = None):
        self.notifier = notifier or notification_hub
        self._slot = threading.BoundedSemaphore(1)

    def _update_task_status_sync(
        self,
        model: TaskModel,
        task_id: str,
        status: TaskStatus,
        error: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """Update task status using sync DB session (safe for background threads)."""
        with SyncSessionLocal() as session:
            update_data: Dict[str, Any] = {"status": status.value, **fields}

            if status in TERMINAL_STATUSES:
                update_data["end_time"] = datetime.utcnow()
            if error is not None:
                update_data["error"] = error

            result = session.execute(
                update(model)
                .where(model.id == task_id)
                .values(**update_data)
            )
            session.commit()

        if result.rowcount == 0:
            logger.warning(
                f"{model.__tablename__} row {task_id} vanished before status {status.value} was written"
            )
            return False
        return True

    def start_task(self, model: TaskModel, task_id: str) -> None:
        """Mark task as running (sync - for background threads)."""
        self._update_task_status_sync(model, task_id, TaskStatus.RUNNING)

    def complete_task(self, model: TaskModel, task_id: str, **fields: Any) -> None:
        """Mark task as completed, storing any result fields on the row."""
        self._update_task_status_sync(model, task_id, TaskStatus.COMPLETED, **fields)

    def fail_task(self, model: TaskModel, task_id: str, error: str) -> None:
        """Mark task as failed (sync - for background threads)."""
        self._update_task_status_sync(model, task_id, TaskStatus.FAILED, error=error)

    def run_in_background(
        self,
        model: TaskModel,
        task_id: str,
        func: Callable[..., Optional[Dict[str, Any]]],
        *args: Any,
        user_id: Optional[str] = None,
        event: str = "task",
        **kwargs: Any,
    ) -> threading.Thread:
        """Run a pipeline in a background thread.

        func may return a dict of columns to set on completion. Any exception
        marks the task failed with its message; nothing is re-raised.
        """
        def wrapper():
            with self._slot:
                try:
                    self.start_task(model, task_id)
                    fields = func(*args, **kwargs) or {}
                    self.complete_task(model, task_id, **fields)
                except Exception as e:
                    logger.exception(f"{event} task {task_id} failed: {e}")
                    try:
                        self.fail_task(model, task_id, str(e) or e.__class__.__name__)
                    except Exception:
                        logger.exception(f"Could not record failure of {event} task {task_id}")
                    self.notifier.notify(
                        user_id, f"{event}_failed", {"task_id": task_id, "error": str(e)}
                    )
                    return

            logger.info(f"{event} task {task_id} completed")
            self.notifier.notify(user_id, f"{event}_completed", {"task_id": task_id})

        thread = threading.Thread(target=wrapper, daemon=True, name=f"{event}-{task_id[:8]}")
        thread.start()
        return thread

    async def sweep_stale_tasks_async(self, grace_minutes: int) -> int:
        """Fail pending/running tasks older than the grace period.

        Intended for startup: no worker survives a restart, so such rows
        would otherwise stay in progress forever.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=grace_minutes)
        swept = 0
        async with AsyncSessionLocal() as session:
            for model in (BackupTaskDB, RestoreTaskDB):
                result = await session.execute(
                    update(model)
                    .where(
                        model.status.in_([TaskStatus.PENDING.value, TaskStatus.RUNNING.value]),
                        model.start_time < cutoff,
                    )
                    .values(
                        status=TaskStatus.FAILED.value,
                        error=STALE_TASK_ERROR,
                        end_time=datetime.utcnow(),
                    )
                )
                swept += result.rowcount
            await session.commit()
        if swept:
            logger.info(f"Marked {swept} stale backup/restore tasks as failed")
        return swept


# Global instance
task_manager = TaskManager()
