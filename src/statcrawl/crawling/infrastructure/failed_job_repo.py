from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert

from statcrawl.crawling.domain.failed_job import (
    DEFAULT_MAX_RETRIES,
    FailedJob,
    FailedJobStats,
    backoff,
    truncate_error,
)
from statcrawl.database.database import DatabaseSessionManager, sessionmanager
from statcrawl.database.tables.failed_job_table import FailedParsingJobs
from statcrawl.main.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailedJobRepository:
    """Persistence for failed parsing jobs awaiting retry.

    Each method opens its own short transaction so the repository can be
    shared by the retry worker and crawl jobs running concurrently.
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager = sessionmanager,
        clock: Callable[[], datetime] = _utcnow,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.session_manager = session_manager
        self.clock = clock
        self.max_retries = max_retries

    async def create(
        self,
        job_type: str,
        source: str,
        external_id: str,
        *,
        url: Optional[str] = None,
        error_message: Optional[str] = None,
        max_retries: Optional[int] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> bool:
        """Insert a failed job unless one with the same identity already exists.

        Returns:
            True if a new row was inserted.
        """
        stmt = (
            pg_insert(FailedParsingJobs)
            .values(
                job_type=job_type,
                source=source,
                external_id=external_id,
                url=url,
                error_message=truncate_error(error_message),
                retry_count=0,
                max_retries=max_retries if max_retries is not None else self.max_retries,
                next_retry_at=next_retry_at or self.clock() + backoff(0),
            )
            .on_conflict_do_nothing(
                index_elements=[
                    FailedParsingJobs.job_type,
                    FailedParsingJobs.source,
                    FailedParsingJobs.external_id,
                ]
            )
        )
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def save_error(
        self,
        job_type: str,
        source: str,
        external_id: str,
        url: Optional[str],
        error: BaseException | str,
    ) -> bool:
        inserted = await self.create(
            job_type,
            source,
            external_id,
            url=url,
            error_message=str(error),
        )
        logger.info(
            "Failed job saved" if inserted else "Failed job already queued",
            extra={"job_type": job_type, "source": source, "external_id": external_id},
        )
        return inserted

    async def get_pending_retries(self, limit: int = 100) -> list[FailedJob]:
        """Due rows that still have retry budget, oldest due first."""
        stmt = (
            sa.select(FailedParsingJobs)
            .where(
                FailedParsingJobs.next_retry_at <= self.clock(),
                FailedParsingJobs.retry_count < FailedParsingJobs.max_retries,
            )
            .order_by(FailedParsingJobs.next_retry_at, FailedParsingJobs.created_at)
            .limit(limit)
        )
        async with self.session_manager.transaction() as session:
            rows = await session.scalars(stmt)
            return [FailedJob.model_validate(row) for row in rows]

    async def increment_retry(
        self, job_id: UUID, next_retry_at: datetime, error_message: Optional[str]
    ) -> bool:
        stmt = (
            sa.update(FailedParsingJobs)
            .where(FailedParsingJobs.id == job_id)
            .values(
                retry_count=FailedParsingJobs.retry_count + 1,
                next_retry_at=next_retry_at,
                error_message=truncate_error(error_message),
                updated_at=sa.func.now(),
            )
        )
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def delete(self, job_id: UUID) -> bool:
        stmt = sa.delete(FailedParsingJobs).where(FailedParsingJobs.id == job_id)
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def mark_as_dead(self, job_id: UUID) -> bool:
        """Exhaust the retry budget so the due-query never returns the row again."""
        stmt = (
            sa.update(FailedParsingJobs)
            .where(FailedParsingJobs.id == job_id)
            .values(retry_count=FailedParsingJobs.max_retries, updated_at=sa.func.now())
        )
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def get(self, job_id: UUID) -> Optional[FailedJob]:
        stmt = sa.select(FailedParsingJobs).where(FailedParsingJobs.id == job_id)
        async with self.session_manager.transaction() as session:
            row = await session.scalar(stmt)
            return FailedJob.model_validate(row) if row is not None else None

    async def exists(self, job_type: str, source: str, external_id: str) -> bool:
        stmt = sa.select(
            sa.exists().where(
                FailedParsingJobs.job_type == job_type,
                FailedParsingJobs.source == source,
                FailedParsingJobs.external_id == external_id,
            )
        )
        async with self.session_manager.transaction() as session:
            return bool(await session.scalar(stmt))

    async def get_by_source(self, source: str, limit: int = 100) -> list[FailedJob]:
        stmt = (
            sa.select(FailedParsingJobs)
            .where(FailedParsingJobs.source == source)
            .order_by(FailedParsingJobs.created_at.desc())
            .limit(limit)
        )
        async with self.session_manager.transaction() as session:
            rows = await session.scalars(stmt)
            return [FailedJob.model_validate(row) for row in rows]

    async def count_pending(self) -> int:
        stmt = sa.select(sa.func.count()).where(
            FailedParsingJobs.retry_count < FailedParsingJobs.max_retries
        )
        async with self.session_manager.transaction() as session:
            return int(await session.scalar(stmt) or 0)

    async def count_dead(self) -> int:
        stmt = sa.select(sa.func.count()).where(
            FailedParsingJobs.retry_count >= FailedParsingJobs.max_retries
        )
        async with self.session_manager.transaction() as session:
            return int(await session.scalar(stmt) or 0)

    async def stats(self) -> FailedJobStats:
        return FailedJobStats(pending=await self.count_pending(), dead=await self.count_dead())

    async def cleanup_old(self, older_than: timedelta) -> int:
        """Delete rows created before ``now - older_than``, whatever their state."""
        cutoff = self.clock() - older_than
        stmt = sa.delete(FailedParsingJobs).where(FailedParsingJobs.created_at < cutoff)
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount
