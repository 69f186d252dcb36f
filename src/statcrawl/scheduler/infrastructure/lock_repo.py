from __future__ import annotations

from datetime import timedelta

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from statcrawl.database.database import DatabaseSessionManager, sessionmanager
from statcrawl.database.tables.scheduler_lock_table import SchedulerLocks
from statcrawl.main.exceptions import LockStoreError
from statcrawl.main.logging import get_logger
from statcrawl.scheduler.domain.lock import Lock

logger = get_logger(__name__)


class PostgresLocker:
    """Job locks stored as rows in ``scheduler_locks``.

    Acquisition is a single upsert whose conflict branch only fires when the
    existing row has expired, so two instances can never both see a row
    affected for the same job.
    """

    def __init__(self, session_manager: DatabaseSessionManager = sessionmanager):
        self.session_manager = session_manager

    async def try_acquire(self, job_name: str, ttl: timedelta, owner_id: str) -> bool:
        now = sa.func.now()
        stmt = pg_insert(SchedulerLocks).values(
            job_name=job_name,
            locked_at=now,
            locked_until=now + ttl,
            instance_id=owner_id,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SchedulerLocks.job_name],
            set_={
                "locked_at": stmt.excluded.locked_at,
                "locked_until": stmt.excluded.locked_until,
                "instance_id": stmt.excluded.instance_id,
            },
            where=SchedulerLocks.locked_until < sa.func.now(),
        )

        try:
            async with self.session_manager.transaction() as session:
                result = await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise LockStoreError("acquire", job_name, exc) from exc

        acquired = result.rowcount > 0
        logger.debug(
            "Lock acquire attempt",
            extra={"job_name": job_name, "owner_id": owner_id, "acquired": acquired},
        )
        return acquired

    async def release(self, job_name: str, owner_id: str) -> None:
        stmt = sa.delete(SchedulerLocks).where(
            SchedulerLocks.job_name == job_name,
            SchedulerLocks.instance_id == owner_id,
        )
        try:
            async with self.session_manager.transaction() as session:
                await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise LockStoreError("release", job_name, exc) from exc

    async def release_all(self, owner_id: str) -> None:
        stmt = sa.delete(SchedulerLocks).where(SchedulerLocks.instance_id == owner_id)
        try:
            async with self.session_manager.transaction() as session:
                result = await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise LockStoreError("release_all", None, exc) from exc

        logger.info(
            "Released all locks for instance",
            extra={"owner_id": owner_id, "released": result.rowcount},
        )

    async def get(self, job_name: str) -> Lock | None:
        stmt = sa.select(SchedulerLocks).where(SchedulerLocks.job_name == job_name)
        try:
            async with self.session_manager.transaction() as session:
                row = await session.scalar(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise LockStoreError("get", job_name, exc) from exc

        if row is None:
            return None
        return Lock(
            job_name=row.job_name,
            locked_at=row.locked_at,
            locked_until=row.locked_until,
            instance_id=row.instance_id,
        )
