"""
Async SQLite access for the source and channel tables
"""
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from epg_indexer.config import settings
from epg_indexer.models import Base

logger = logging.getLogger(__name__)

# Initialized in init_db() during startup
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() during startup.")
    return _session_factory


async def get_db() -> AsyncIterator[AsyncSession]:
    """Database dependency for FastAPI; routes commit explicitly"""
    async with get_session_factory()() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session wrapped in a transaction that commits on success and rolls back on error"""
    async with get_session_factory()() as session:
        async with session.begin():
            yield session


def _enable_wal(dbapi_conn, _) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


async def init_db(database_path: str | None = None) -> None:
    """Create the engine, the session factory and any missing tables"""
    global _engine, _session_factory

    database_path = database_path or settings.database_path
    logger.info(f"Initializing database at {database_path}")

    _engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        connect_args={"timeout": 30},
    )
    event.listen(_engine.sync_engine, "connect", _enable_wal)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)
    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Dispose the engine on shutdown"""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None
