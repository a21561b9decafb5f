"""Database engine configuration.

Uses SQLModel with async SQLite by default. The database URL comes from
``Settings.database_url`` (``RALLOC_DATABASE_URL``); the engine and session
factory are built explicitly and injected into the ledger.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from ralloc.db.migrations import migrate_ledger
from ralloc.logging import get_logger

logger = get_logger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async database engine for the ledger."""
    return create_async_engine(database_url, echo=echo, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> int:
    """Create all tables and bring the ledger schema up to date.

    Call this on application startup.

    Returns:
        The ledger schema version after migration.
    """
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        version = await conn.run_sync(migrate_ledger)
    logger.info("ledger_schema_ready", schema_version=version)
    return version


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session that commits on success and rolls back on error.

    Usage:
        async with session_scope(factory) as session:
            result = await session.execute(select(Model))
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
