"""Database engine and session configuration for the local SQLite store."""

import os
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from perfwatch.core.config import settings

# Milliseconds SQLite waits on a locked database before raising "database is locked"
busy_timeout_ms = int(os.getenv("DATABASE_BUSY_TIMEOUT_MS", "5000"))


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    # WAL lets readers (API queries) run while the collector writes
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
    cursor.close()


def create_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create the async engine, making sure the database directory exists."""
    url = make_url(database_url or settings.DATABASE_URL)
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        url,
        echo=settings.DEBUG if echo is None else echo,
        pool_pre_ping=True,
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
