"""
Database connection management for imgvault.

Uses SQLAlchemy 2.0: an async engine for request handlers and a sync
engine for background workers running in threads. Both point at the same
database, either an embedded SQLite file or a MySQL server.
"""

from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import create_engine, event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session
from sqlalchemy.pool import NullPool

from imgvault.config import settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_kwargs(url: str) -> dict:
    if _is_sqlite(url):
        return {}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 3600,
        "pool_pre_ping": True,  # Verify connections before use
    }


def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


_sync_db_url = settings.effective_database_url
_async_db_url = settings.effective_async_database_url

if _is_sqlite(_sync_db_url):
    Path(settings.sqlite_path).resolve().parent.mkdir(parents=True, exist_ok=True)

# Async engine. SQLite connections are not pooled so that sessions never
# outlive the event loop that opened them.
engine = create_async_engine(
    _async_db_url,
    echo=settings.database_echo,
    **({"poolclass": NullPool} if _is_sqlite(_async_db_url) else _engine_kwargs(_async_db_url)),
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Sync engine and session factory (for backup/restore workers running in threads)
sync_engine = create_engine(
    _sync_db_url,
    echo=settings.database_echo,
    **_engine_kwargs(_sync_db_url),
)
SyncSessionLocal = sessionmaker(
    sync_engine,
    class_=Session,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

if _is_sqlite(_sync_db_url):
    event.listen(sync_engine, "connect", _set_sqlite_pragma)
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage in FastAPI:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """
    Initialize database tables.

    This creates all tables defined in the ORM models.
    Should be called on application startup.
    """
    # Import models to ensure they are registered with Base
    from imgvault.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
