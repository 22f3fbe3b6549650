"""Async engine and session management for the transaction store."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

ASYNC_DRIVERS = {
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def normalize_database_url(db_url: str) -> str:
    """Rewrite sync driver schemes to their async counterparts."""
    for scheme, async_scheme in ASYNC_DRIVERS.items():
        if db_url.startswith(scheme):
            return async_scheme + db_url[len(scheme):]
    return db_url


def engine_options(url: str, echo: bool = False) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # in-memory databases live as long as their single connection
        return {"echo": echo, "connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"echo": echo, "pool_pre_ping": True}


def create_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(database_url)
    return sa_create_async_engine(url, **engine_options(url, echo))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


class DatabaseManager:
    """
    Owns the engine and session factory behind a TransactionStore.

    Example:
        database = DatabaseManager(settings.database_url)
        await database.initialize()
        orchestrator.store = TransactionStore(database.session_factory)
        ...
        await database.shutdown()
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = normalize_database_url(database_url)
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")
        return self._session_factory

    async def initialize(self, create_tables: bool = True) -> None:
        if self._engine is not None:
            return
        backend = self.database_url.split(":", 1)[0]
        logger.info(f"Opening transaction database ({backend})")
        self._engine = create_async_engine(self.database_url, self.echo)
        self._session_factory = create_session_factory(self._engine)

        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(models.Base.metadata.create_all)

    async def shutdown(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Transaction database closed")
