"""Database engine and transactional sessions for the read-model store.

Each projected event and each checkpoint write runs in its own session from
`DatabaseManager.get_async_session`, which commits on exit and rolls back on
error.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from stake_event_indexer.storage.models import Base

logger = logging.getLogger(__name__)


def async_database_url(database_url: str) -> str:
    """Return `database_url` with an async driver (asyncpg for PostgreSQL)."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseManager:
    """Owns the async engine used by repositories and the checkpoint store.

    Example:
        ```python
        db = DatabaseManager("postgresql+asyncpg://indexer@localhost/stake")
        async with db.get_async_session() as session:
            count = await ContractEventRepository(session).count()
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = async_database_url(database_url)
        if self.database_url != database_url:
            logger.warning("DATABASE_URL uses a sync driver; connecting with asyncpg instead")

        self._engine_kwargs: dict[str, Any] = {"echo": echo}
        # SQLite (tests, local runs) does not take a sized pool.
        if make_url(self.database_url).get_backend_name() != "sqlite":
            self._engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow)

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """The async engine, created on first use."""
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_kwargs)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on error."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        """Create all tables from the models.

        For tests and local development; deployments run the Alembic migrations.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Read-model schema created")

    async def dispose_async(self) -> None:
        """Close pooled connections. The manager can be reused afterwards."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections disposed")
