import logging
import os
import uuid
from pathlib import Path
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from issuecache.config import Settings
from issuecache.core.errors import StorageError
from issuecache.models import Base


logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    """SQLite ships with foreign keys off; comments rely on ON DELETE CASCADE."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def ensure_database_directory(database_url: str) -> None:
    """
    Create the parent directory of a file-backed SQLite database and check
    that a file can be written there.

    Raises:
        StorageError: If the directory cannot be created or is not writable.
    """
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return
    database = url.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return

    directory = Path(database).expanduser().parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot create database directory {directory}: {e}") from e

    write_test = directory / f".issuecache-write-test-{uuid.uuid4().hex}"
    try:
        write_test.touch()
    except OSError as e:
        raise StorageError(f"Database directory {directory} is not writable: {e}") from e
    os.remove(write_test)
    logger.debug(f"Database directory {directory} is writable")


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the cache database."""
    ensure_database_directory(settings.database_url)
    engine = create_async_engine(
        settings.database_url,
        echo=settings.log_level.upper() == "DEBUG",
        future=True,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting database sessions."""
    session_maker: async_sessionmaker[AsyncSession] = request.app.state.session_maker
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
