"""Database engine, SQLite setup and schema creation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from collection_sync.models.base import Base

if TYPE_CHECKING:
    from collection_sync.config import Settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


def sqlite_file_path(database_url: str) -> Path | None:
    """Return the database file of a SQLite URL, or None for other backends and :memory:."""
    if not database_url.startswith("sqlite") or "///" not in database_url:
        return None
    path = database_url.split("///", 1)[1]
    if not path or path == ":memory:":
        return None
    return Path(path)


def _enable_sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
    # Sync runs and API requests share the file; wait for locks instead of failing.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create the async engine and session factory.

    For a file-backed SQLite database the parent directory is created first.
    """
    db_file = sqlite_file_path(settings.database_url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(settings.database_url, echo=settings.debug)
    if db_file is not None:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ready")
