import contextlib
from typing import AsyncIterator

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from statcrawl.main.logging import get_logger

logger = get_logger(__name__)


class DatabaseNotInitializedError(RuntimeError):
    def __init__(self):
        super().__init__("DatabaseSessionManager is not initialized")


class DatabaseSessionManager:
    """Process-wide async engine shared by the locker and the repositories.

    Sessions never autobegin; every unit of work goes through ``transaction()``
    (or ``session()`` + ``session.begin()``) and commits on exit.
    """

    def __init__(self):
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def init(self, url: str, pool_size: int = 10, max_overflow: int = 5) -> None:
        if self._engine is not None:
            logger.debug("Database already initialized, skipping reinitialization")
            return

        self._engine = create_async_engine(
            url, pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True
        )
        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            autobegin=False,
            expire_on_commit=False,
        )
        logger.debug("Database engine created", extra={"pool_size": pool_size})

    async def close(self) -> None:
        if self._engine is None:
            logger.debug("DatabaseSessionManager already closed or not initialized")
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.debug("DatabaseSessionManager closed")

    @contextlib.asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        if self._engine is None:
            raise DatabaseNotInitializedError()

        async with self._engine.begin() as connection:
            yield connection

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise DatabaseNotInitializedError()

        session = self._sessionmaker()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """A session inside one transaction, committed when the block exits cleanly."""
        async with self.session() as session, session.begin():
            yield session

    async def ping(self) -> None:
        """Round-trip ``SELECT 1``; raises if the database is unreachable."""
        async with self.connect() as connection:
            await connection.execute(sa.text("SELECT 1"))


sessionmanager = DatabaseSessionManager()
