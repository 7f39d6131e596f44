"""
Tests for imgvault.services.backup_service: full backup/restore pipelines
against the test SQLite database and uploads directory.
"""

import io
import zipfile
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imgvault.db.database import AsyncSessionLocal
from imgvault.db.models import (
    BackupTaskDB,
    ImageDB,
    RestoreTaskDB,
    SystemSettingDB,
    UserDB,
)
from imgvault.services.backup_service import BackupService, _sanitize_upload_name
from imgvault.services.errors import (
    BackupNotFoundError,
    EmptyUploadError,
    RestoreTaskNotFoundError,
    UploadStagingError,
    UploadTooLargeError,
)
from imgvault.services.notifier import NotificationHub
from imgvault.services.task_manager import TaskManager
from tests.factories import (
    make_album,
    make_archive,
    make_backup_task,
    make_image,
    make_image_album,
    make_restore_task,
    make_role,
    make_setting,
    make_storage,
    make_user,
)


class FakeUpload:
    """Minimal stand-in for an UploadFile: a name and an async read()."""

    def __init__(self, filename: str, data: bytes):
        self.filename = filename
        self._buf = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buf.read(size)


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def service(hub):
    return BackupService(manager=TaskManager(notifier=hub))


async def _count(model) -> int:
    async with AsyncSessionLocal() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _seed(db: AsyncSession, upload_dir: str):
    role = make_role(name="member")
    storage = make_storage()
    db.add_all([role, storage])
    await db.flush()

    users = [make_user(username=name, role_id=role.id) for name in ("alice", "bob", "carol")]
    db.add_all(users)
    await db.flush()

    images = [
        make_image(users[i % 3].id, file_path=f"2024/01/img{i}.png", storage_id=storage.id)
        for i in range(5)
    ]
    album = make_album(users[0].id, name="O'Brien; holiday")
    db.add_all(images + [album, make_setting("site_name", "imgvault")])
    await db.flush()
    db.add(make_image_album(images[0].id, album.id))
    await db.commit()

    root = Path(upload_dir)
    (root / "2024" / "01").mkdir(parents=True, exist_ok=True)
    (root / "2024" / "01" / "img0.png").write_bytes(b"\x89PNG zero")
    (root / "avatar.jpg").write_bytes(b"avatar")


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------


class TestCreateBackup:
    async def test_backup_archive_contents(self, service, db_session, upload_dir, backups_dir, wait_for_task):
        await _seed(db_session, upload_dir)

        task = await service.create_backup(db_session)
        assert task.status == "pending"
        assert task.source == "created"

        done = wait_for_task(BackupTaskDB, task.id)
        assert done.status == "completed", done.error
        assert done.end_time is not None
        path = Path(done.storage_path)
        assert path.parent == Path(backups_dir).resolve()
        assert path.suffix == ".zip"
        assert done.size == path.stat().st_size
        assert not list(Path(backups_dir).glob("*.part"))

        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
            sql = zf.read("database_sqlite.sql").decode("utf-8")
        assert names == {"database_sqlite.sql", "uploads/2024/01/img0.png", "uploads/avatar.jpg"}
        assert "backup_tasks" not in sql
        assert "restore_tasks" not in sql
        assert "O''Brien; holiday" in sql

    async def test_backup_without_uploads_dir(self, service, db_session, upload_dir, wait_for_task):
        Path(upload_dir).rmdir()

        task = await service.create_backup(db_session)
        done = wait_for_task(BackupTaskDB, task.id)

        assert done.status == "completed", done.error
        with zipfile.ZipFile(done.storage_path) as zf:
            assert zf.namelist() == ["database_sqlite.sql"]

    async def test_owner_is_notified(self, service, hub, db_session, wait_for_task):
        q = hub.subscribe("user-1")
        task = await service.create_backup(db_session, user_id="user-1")
        wait_for_task(BackupTaskDB, task.id)

        message = q.get(timeout=5)
        assert message.event == "backup_completed"
        assert message.payload["task_id"] == task.id


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestoreBackup:
    async def test_backup_then_restore_round_trip(self, service, db_session, upload_dir, wait_for_task):
        await _seed(db_session, upload_dir)
        backup = await service.create_backup(db_session)
        assert wait_for_task(BackupTaskDB, backup.id).status == "completed"

        # Diverge from the backup
        async with AsyncSessionLocal() as session:
            for image in (await session.execute(select(ImageDB))).scalars():
                await session.delete(image)
            session.add(make_user(username="mallory"))
            setting = await session.get(SystemSettingDB, "site_name")
            setting.value = "changed"
            await session.commit()
        (Path(upload_dir) / "avatar.jpg").unlink()
        (Path(upload_dir) / "new.png").write_bytes(b"added after backup")

        restore = await service.restore_backup(db_session, backup.id)
        assert restore.status == "pending"
        done = wait_for_task(RestoreTaskDB, restore.id)
        assert done.status == "completed", done.error

        assert await _count(UserDB) == 3
        assert await _count(ImageDB) == 5
        async with AsyncSessionLocal() as session:
            setting = await session.get(SystemSettingDB, "site_name")
            assert setting.value == "imgvault"
            names = set((await session.execute(select(UserDB.username))).scalars())
            assert names == {"alice", "bob", "carol"}

        root = Path(upload_dir)
        assert (root / "avatar.jpg").read_bytes() == b"avatar"
        assert (root / "2024" / "01" / "img0.png").read_bytes() == b"\x89PNG zero"
        assert not (root / "new.png").exists()

        # Task bookkeeping survives the restore
        assert await _count(BackupTaskDB) == 1
        assert await _count(RestoreTaskDB) == 1

    async def test_unknown_backup(self, service, db_session):
        with pytest.raises(BackupNotFoundError):
            await service.restore_backup(db_session, "missing")
        assert await _count(RestoreTaskDB) == 0

    @pytest.mark.parametrize("status", ["pending", "running", "failed"])
    async def test_backup_not_completed(self, service, db_session, upload_dir, wait_for_task, status):
        await _seed(db_session, upload_dir)
        backup = make_backup_task(status=status)
        db_session.add(backup)
        await db_session.commit()

        restore = await service.restore_backup(db_session, backup.id)
        done = wait_for_task(RestoreTaskDB, restore.id)

        assert done.status == "failed"
        assert "not completed" in done.error
        assert await _count(UserDB) == 3

    async def test_archive_file_missing(self, service, db_session, backups_dir, wait_for_task):
        backup = make_backup_task(storage_path=str(Path(backups_dir) / "gone.zip"), size=10)
        db_session.add(backup)
        await db_session.commit()

        restore = await service.restore_backup(db_session, backup.id)
        done = wait_for_task(RestoreTaskDB, restore.id)

        assert done.status == "failed"
        assert "does not exist" in done.error

    async def test_dialect_mismatch(self, service, db_session, upload_dir, backups_dir, wait_for_task):
        await _seed(db_session, upload_dir)
        archive = make_archive(Path(backups_dir) / "mysql.zip", {
            "database_mysql.sql": b"DROP DATABASE imgvault;",
            "uploads/hijack.png": b"x",
        })
        backup = make_backup_task(storage_path=archive, source="uploaded")
        db_session.add(backup)
        await db_session.commit()

        done = wait_for_task(RestoreTaskDB, (await service.restore_backup(db_session, backup.id)).id)

        assert done.status == "failed"
        assert "Database type mismatch" in done.error
        assert await _count(UserDB) == 3
        assert not (Path(upload_dir) / "hijack.png").exists()

    async def test_zip_slip_rejected(self, service, db_session, upload_dir, backups_dir, temp_dir, wait_for_task):
        await _seed(db_session, upload_dir)
        archive = make_archive(Path(backups_dir) / "evil.zip", {
            "database_sqlite.sql": b"DROP TABLE users;",
            "uploads/ok.png": b"ok",
            "../evil.txt": b"pwned",
        })
        backup = make_backup_task(storage_path=archive, source="uploaded")
        db_session.add(backup)
        await db_session.commit()
        before = sorted(p.name for p in Path(upload_dir).rglob("*"))

        done = wait_for_task(RestoreTaskDB, (await service.restore_backup(db_session, backup.id)).id)

        assert done.status == "failed"
        assert "Zip slip attack detected" in done.error
        assert sorted(p.name for p in Path(upload_dir).rglob("*")) == before
        assert await _count(UserDB) == 3
        assert not (Path(temp_dir) / "evil.txt").exists()
        # Scratch directory is cleaned up
        assert list(Path(temp_dir).iterdir()) == []

    async def test_archive_without_database(self, service, db_session, backups_dir, wait_for_task):
        archive = make_archive(Path(backups_dir) / "files_only.zip", {"uploads/a.png": b"a"})
        backup = make_backup_task(storage_path=archive, source="uploaded")
        db_session.add(backup)
        await db_session.commit()

        done = wait_for_task(RestoreTaskDB, (await service.restore_backup(db_session, backup.id)).id)

        assert done.status == "failed"
        assert "No valid database backup" in done.error

    async def test_broken_sql_rolls_back(self, service, db_session, upload_dir, backups_dir, wait_for_task):
        await _seed(db_session, upload_dir)
        archive = make_archive(Path(backups_dir) / "broken.zip", {
            "database_sqlite.sql": b"INSERT INTO not_a_table VALUES (1);",
            "uploads/replacement.png": b"r",
        })
        backup = make_backup_task(storage_path=archive, source="uploaded")
        db_session.add(backup)
        await db_session.commit()

        done = wait_for_task(RestoreTaskDB, (await service.restore_backup(db_session, backup.id)).id)

        assert done.status == "failed"
        assert "rolled back" in done.error
        assert await _count(UserDB) == 3
        assert await _count(ImageDB) == 5
        # Files are only touched after a successful database import
        assert not (Path(upload_dir) / "replacement.png").exists()
        assert (Path(upload_dir) / "avatar.jpg").exists()


# ---------------------------------------------------------------------------
# Upload intake
# ---------------------------------------------------------------------------


class TestUploadBackup:
    async def test_upload_is_registered(self, service, db_session, backups_dir, temp_dir, wait_for_task):
        payload = b"PK\x05\x06" + b"\x00" * 18
        start = datetime.utcnow()

        task = await service.create_upload_backup_task(
            db_session, start, FakeUpload("my backup.zip", payload),
        )
        assert task.source == "uploaded"
        assert task.start_time == start

        done = wait_for_task(BackupTaskDB, task.id)
        assert done.status == "completed", done.error
        assert Path(done.storage_path).read_bytes() == payload
        assert Path(done.storage_path).parent == Path(backups_dir).resolve()
        assert done.size == len(payload)
        assert list(Path(temp_dir).iterdir()) == []

    async def test_too_large_is_rejected(self, service, db_session, temp_dir):
        service.settings = service.settings.model_copy(update={"max_upload_size": 10})

        with pytest.raises(UploadTooLargeError):
            await service.create_upload_backup_task(
                db_session, datetime.utcnow(), FakeUpload("big.zip", b"x" * 64),
            )

        assert await _count(BackupTaskDB) == 0
        assert list(Path(temp_dir).iterdir()) == []

    async def test_empty_upload_is_rejected(self, service, db_session, temp_dir):
        with pytest.raises(EmptyUploadError):
            await service.create_upload_backup_task(
                db_session, datetime.utcnow(), FakeUpload("empty.zip", b""),
            )

        assert await _count(BackupTaskDB) == 0
        assert list(Path(temp_dir).iterdir()) == []

    async def test_read_failure_removes_task(self, service, db_session):
        class BrokenUpload(FakeUpload):
            async def read(self, size: int = -1) -> bytes:
                raise OSError("connection reset")

        with pytest.raises(UploadStagingError, match="connection reset"):
            await service.create_upload_backup_task(
                db_session, datetime.utcnow(), BrokenUpload("x.zip", b""),
            )
        assert await _count(BackupTaskDB) == 0

    @pytest.mark.parametrize("raw, expected", [
        ("backup.zip", "backup.zip"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\backup.zip", "backup.zip"),
        ("", "backup.zip"),
        (None, "backup.zip"),
        ("..", "backup.zip"),
    ])
    def test_sanitize_upload_name(self, raw, expected):
        assert _sanitize_upload_name(raw) == expected


# ---------------------------------------------------------------------------
# Queries and deletion
# ---------------------------------------------------------------------------


class TestQueriesAndDeletion:
    async def test_lists_are_newest_first(self, service, db_session):
        older = make_backup_task(created_at=datetime(2024, 1, 1))
        newer = make_backup_task(created_at=datetime(2024, 6, 1))
        db_session.add_all([older, newer])
        await db_session.flush()
        db_session.add_all([
            make_restore_task(older.id, created_at=datetime(2024, 2, 1)),
            make_restore_task(newer.id, created_at=datetime(2024, 7, 1)),
        ])
        await db_session.commit()

        backups = await service.get_backup_list(db_session)
        assert [b.id for b in backups] == [newer.id, older.id]

        records = await service.get_restore_records(db_session)
        assert [r.backup_task.id for r in records] == [newer.id, older.id]

    async def test_download_path_requires_completed(self, service, db_session, backups_dir):
        archive = make_archive(Path(backups_dir) / "a.zip", {"database_sqlite.sql": b""})
        pending = make_backup_task(status="pending", storage_path=archive)
        completed = make_backup_task(storage_path=archive)
        db_session.add_all([pending, completed])
        await db_session.commit()

        with pytest.raises(BackupNotFoundError):
            await service.get_download_path(db_session, pending.id)
        assert await service.get_download_path(db_session, completed.id) == Path(archive)

    async def test_delete_backup_cascades(self, service, db_session, backups_dir):
        archive = make_archive(Path(backups_dir) / "a.zip", {"database_sqlite.sql": b""})
        backup = make_backup_task(storage_path=archive)
        other = make_backup_task()
        db_session.add_all([backup, other])
        await db_session.flush()
        db_session.add_all([
            make_restore_task(backup.id),
            make_restore_task(backup.id, status="failed"),
            make_restore_task(other.id),
        ])
        await db_session.commit()

        await service.delete_backup(db_session, backup.id)

        assert not Path(archive).exists()
        assert await _count(BackupTaskDB) == 1
        assert await _count(RestoreTaskDB) == 1

    async def test_delete_backup_with_missing_file(self, service, db_session, backups_dir):
        backup = make_backup_task(storage_path=str(Path(backups_dir) / "already-gone.zip"))
        db_session.add(backup)
        await db_session.commit()

        await service.delete_backup(db_session, backup.id)
        assert await _count(BackupTaskDB) == 0

    async def test_delete_restore_keeps_backup(self, service, db_session):
        backup = make_backup_task()
        db_session.add(backup)
        await db_session.flush()
        restore = make_restore_task(backup.id)
        db_session.add(restore)
        await db_session.commit()

        await service.delete_restore_task(db_session, restore.id)

        assert await _count(RestoreTaskDB) == 0
        assert await _count(BackupTaskDB) == 1

    async def test_delete_unknown(self, service, db_session):
        with pytest.raises(BackupNotFoundError):
            await service.delete_backup(db_session, "missing")
        with pytest.raises(RestoreTaskNotFoundError):
            await service.delete_restore_task(db_session, "missing")
