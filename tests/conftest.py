"""
Root test configuration.

Sets up:
- A throwaway SQLite database and uploads/backups/temp directories
- Fresh tables and empty directories per test
- AsyncClient for FastAPI testing (ASGITransport does not run the lifespan)
- A helper that waits for background backup/restore tasks to finish
"""
import os
import shutil
import tempfile
import time

# Set env vars before any app imports
_TEST_ROOT = tempfile.mkdtemp(prefix="imgvault_test_")
UPLOAD_DIR = os.path.join(_TEST_ROOT, "uploads")
BACKUPS_DIR = os.path.join(_TEST_ROOT, "backup")
TEMP_DIR = os.path.join(_TEST_ROOT, "temp")

os.environ["CONFIG_DIR"] = _TEST_ROOT
os.environ["DATABASE_TYPE"] = "sqlite"
os.environ["SQLITE_PATH"] = os.path.join(_TEST_ROOT, "imgvault_test.db")
os.environ["DATABASE_URL"] = ""
os.environ["UPLOAD_DIR"] = UPLOAD_DIR
os.environ["BACKUPS_DIR"] = BACKUPS_DIR
os.environ["TEMP_DIR"] = TEMP_DIR
os.environ.pop("AUTH_PASSWORD", None)

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from imgvault.db.database import AsyncSessionLocal, Base, SyncSessionLocal, sync_engine
from imgvault.db import models  # noqa: F401 - register models with Base
from imgvault.main import create_app


@pytest.fixture(autouse=True)
def _fresh_state():
    """Recreate all tables and empty the working directories."""
    Base.metadata.drop_all(sync_engine)
    Base.metadata.create_all(sync_engine)
    for path in (UPLOAD_DIR, BACKUPS_DIR, TEMP_DIR):
        shutil.rmtree(path, ignore_errors=True)
        os.makedirs(path)
    yield


@pytest.fixture
def upload_dir():
    return UPLOAD_DIR


@pytest.fixture
def backups_dir():
    return BACKUPS_DIR


@pytest.fixture
def temp_dir():
    return TEMP_DIR


@pytest_asyncio.fixture()
async def db_session():
    """Session on the same database the background workers use."""
    session = AsyncSessionLocal()
    try:
        yield session
    finally:
        await session.close()


@pytest_asyncio.fixture()
async def app():
    return create_app()


@pytest_asyncio.fixture()
async def client(app):
    """Provide an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def wait_for_task():
    """Return a function that polls a task row until it is completed or failed."""

    def _wait(model, task_id: str, timeout: float = 15.0):
        deadline = time.monotonic() + timeout
        while True:
            with SyncSessionLocal() as session:
                task = session.get(model, task_id)
                if task is not None and task.status in ("completed", "failed"):
                    return task
            if time.monotonic() > deadline:
                status = task.status if task is not None else "missing"
                raise AssertionError(f"{model.__tablename__} {task_id} still {status} after {timeout}s")
            time.sleep(0.05)

    return _wait
