from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from statcrawl.crawling.application.executor import BoundedTaskExecutor
from statcrawl.crawling.application.fetch_retry import fetch_with_retry
from statcrawl.crawling.domain.collaborators import EntityWriter, Parser, StaleEntitySelector
from statcrawl.crawling.domain.failed_job import FailedJob
from statcrawl.crawling.domain.stale_entity import StaleEntity, TaskKind
from statcrawl.main.logging import get_logger

if TYPE_CHECKING:
    from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics

logger = get_logger(__name__)


class FailedJobSink(Protocol):
    async def save_error(
        self,
        job_type: str,
        source: str,
        external_id: str,
        url: Optional[str],
        error: BaseException | str,
    ) -> bool: ...


def default_identifier(entity: StaleEntity) -> str:
    return entity.url or entity.id


@dataclass
class StaleCrawlReport:
    selected: int = 0
    processed: int = 0
    failed: int = 0
    records_saved: int = 0


class StaleCrawlJob:
    """Re-crawl the most stale entities of one source for one task kind.

    One run: select a capped, priority-ordered batch, fan it out over a bounded
    executor, persist every parsed item, stamp the entity as processed, and
    queue a failed job for each entity that did not make it.
    """

    def __init__(
        self,
        name: str,
        source: str,
        task_kind: TaskKind,
        *,
        selector: StaleEntitySelector,
        parser: Parser,
        writer: EntityWriter,
        failed_jobs: FailedJobSink,
        metrics: "SchedulerMetrics",
        record_type: str,
        worker_count: int = 4,
        task_timeout: Optional[float] = None,
        max_batch_size: Optional[int] = None,
        shutdown: Optional[asyncio.Event] = None,
        fetch_attempts: int = 3,
        fetch_delay_seconds: float = 2.0,
        identifier: Callable[[StaleEntity], str] = default_identifier,
    ):
        self.name = name
        self.source = source
        self.task_kind = task_kind
        self.selector = selector
        self.parser = parser
        self.writer = writer
        self.failed_jobs = failed_jobs
        self.metrics = metrics
        self.record_type = record_type
        self.worker_count = worker_count
        self.task_timeout = task_timeout
        self.max_batch_size = max_batch_size
        self.shutdown = shutdown
        self.fetch_attempts = fetch_attempts
        self.fetch_delay_seconds = fetch_delay_seconds
        self.identifier = identifier

    @property
    def job_type(self) -> str:
        return self.name

    async def run(self) -> StaleCrawlReport:
        entities = await self.selector.select_stale_by_priority(
            self.task_kind, self.source, limit=self.max_batch_size
        )
        report = StaleCrawlReport(selected=len(entities))
        if not entities:
            logger.info(
                "Nothing stale to crawl",
                extra={"source": self.source, "task_kind": self.task_kind.value},
            )
            return report

        logger.info(
            "Crawling stale entities",
            extra={
                "source": self.source,
                "task_kind": self.task_kind.value,
                "count": len(entities),
            },
        )

        executor: BoundedTaskExecutor[StaleEntity, int] = BoundedTaskExecutor(
            f"{self.name}.entities",
            self.worker_count,
            self._process_entity,
            task_timeout=self.task_timeout,
            key=lambda entity: entity.id,
            shutdown=self.shutdown,
            metrics=self.metrics,
        )
        for result in await executor.run(entities):
            if result.ok:
                report.processed += 1
                report.records_saved += result.output or 0
                continue

            report.failed += 1
            if result.cancelled:
                continue
            await self.failed_jobs.save_error(
                self.job_type,
                self.source,
                result.payload.id,
                result.payload.url,
                result.error,
            )

        self.metrics.record_entities_processed(self.source, report.processed)
        self.metrics.record_records_saved(self.record_type, report.records_saved)
        logger.info(
            "Stale crawl finished",
            extra={
                "source": self.source,
                "task_kind": self.task_kind.value,
                "processed": report.processed,
                "failed": report.failed,
                "records_saved": report.records_saved,
            },
        )
        return report

    async def _crawl(self, entity_id: str, identifier: str) -> int:
        items = await fetch_with_retry(
            lambda: self.parser.parse(identifier),
            attempts=self.fetch_attempts,
            delay_seconds=self.fetch_delay_seconds,
        )
        for item in items:
            await self.writer.upsert_entity(self.record_type, item)
        await self.selector.mark_processed(entity_id, self.task_kind)
        return len(items)

    async def _process_entity(self, entity: StaleEntity) -> int:
        return await self._crawl(entity.id, self.identifier(entity))

    async def retry(self, failed_job: FailedJob) -> None:
        """Retry handler for failed jobs of this job's type."""
        saved = await self._crawl(
            failed_job.external_id, failed_job.url or failed_job.external_id
        )
        self.metrics.record_records_saved(self.record_type, saved)
