"""Replays failed parsing jobs whose backoff has elapsed.

Rows move Pending -> (in flight) -> deleted on success, or back to Pending with
retry_count + 1 on failure. A row whose retry_count reaches max_retries is no
longer selected and stays as a dead letter until cleanup purges it by age.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Protocol
from uuid import UUID

from statcrawl.crawling.domain.failed_job import FailedJob, FailedJobStats, backoff
from statcrawl.main.logging import get_logger
from statcrawl.main.run_context import deadline_passed

if TYPE_CHECKING:
    from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics

logger = get_logger(__name__)

RetryHandler = Callable[[FailedJob], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailedJobStore(Protocol):
    async def get_pending_retries(self, limit: int = 100) -> list[FailedJob]: ...

    async def increment_retry(
        self, job_id: UUID, next_retry_at: datetime, error_message: Optional[str]
    ) -> bool: ...

    async def delete(self, job_id: UUID) -> bool: ...

    async def cleanup_old(self, older_than: timedelta) -> int: ...

    async def stats(self) -> FailedJobStats: ...


@dataclass
class RetryReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class RetryWorker:
    def __init__(
        self,
        repo: FailedJobStore,
        *,
        batch_size: int = 100,
        metrics: Optional["SchedulerMetrics"] = None,
        shutdown: Optional[asyncio.Event] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repo = repo
        self.batch_size = batch_size
        self.metrics = metrics
        self.shutdown = shutdown
        self.clock = clock
        self._handlers: dict[str, RetryHandler] = {}

    def register_handler(self, job_type: str, handler: RetryHandler) -> None:
        self._handlers[job_type] = handler

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    async def process(self) -> RetryReport:
        """Run one sweep over due failed jobs."""
        jobs = await self.repo.get_pending_retries(limit=self.batch_size)
        report = RetryReport()
        if not jobs:
            logger.debug("No failed jobs due for retry")
            return report

        logger.info("Processing failed job retries", extra={"due": len(jobs)})

        for job in jobs:
            if self.shutdown is not None and self.shutdown.is_set():
                logger.info("Shutdown requested, stopping retry sweep")
                break
            if deadline_passed():
                logger.info("Job deadline passed, leaving remaining retries for the next sweep")
                break

            handler = self._handlers.get(job.job_type)
            if handler is None:
                report.skipped += 1
                logger.warning(
                    "No retry handler for job type, skipping",
                    extra={"job_type": job.job_type, "failed_job_id": str(job.id)},
                )
                continue

            report.processed += 1
            try:
                await handler(job)
            except Exception as exc:
                report.failed += 1
                next_retry_at = self.clock() + backoff(job.retry_count + 1)
                await self.repo.increment_retry(job.id, next_retry_at, str(exc))
                logger.warning(
                    "Retry failed",
                    extra={
                        "failed_job_id": str(job.id),
                        "job_type": job.job_type,
                        "external_id": job.external_id,
                        "retry_count": job.retry_count + 1,
                        "max_retries": job.max_retries,
                        "next_retry_at": next_retry_at.isoformat(),
                        "error": str(exc),
                    },
                )
                continue

            await self.repo.delete(job.id)
            report.succeeded += 1
            logger.info(
                "Retry succeeded",
                extra={
                    "failed_job_id": str(job.id),
                    "job_type": job.job_type,
                    "external_id": job.external_id,
                },
            )

        logger.info(
            "Retry sweep finished",
            extra={
                "processed": report.processed,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "skipped": report.skipped,
            },
        )
        return report

    async def stats(self) -> FailedJobStats:
        stats = await self.repo.stats()
        if self.metrics is not None:
            self.metrics.set_dead_letters(stats.dead)
        return stats

    async def run(self) -> None:
        """Scheduler entry point: one sweep, then refresh the dead-letter gauge."""
        await self.process()
        stats = await self.stats()
        if stats.dead:
            logger.warning(
                "Failed jobs exhausted their retries",
                extra={"dead": stats.dead, "pending": stats.pending},
            )

    async def cleanup(self, older_than: timedelta) -> int:
        deleted = await self.repo.cleanup_old(older_than)
        logger.info(
            "Cleaned up old failed jobs",
            extra={"deleted": deleted, "older_than_days": older_than.days},
        )
        return deleted
