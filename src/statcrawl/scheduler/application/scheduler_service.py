"""Cron-driven job runner with cross-instance mutual exclusion.

Every firing goes through the same wrapper: take the job lock (TTL = job
timeout), run the handler with a job deadline bound to the timeout, release the
lock and record duration and outcome. The handler is never cancelled: when the
deadline fires its executors stop taking work and it returns early. Losing the
lock race is a normal skip.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from statcrawl.main.exceptions import LockStoreError
from statcrawl.main.logging import get_logger
from statcrawl.main.run_context import job_deadline, run_context
from statcrawl.scheduler.domain.job_config import JobConfig, SchedulerConfig
from statcrawl.scheduler.domain.lock import Locker
from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics

logger = get_logger(__name__)

JobHandler = Callable[[], Awaitable[None]]


class JobOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"
    LOCK_FAILED = "lock_failed"
    NO_HANDLER = "no_handler"


class SchedulerService:
    def __init__(
        self,
        config: SchedulerConfig,
        locker: Locker,
        instance_id: str,
        metrics: Optional[SchedulerMetrics] = None,
        timezone: str = "UTC",
    ):
        self.config = config
        self.locker = locker
        self.instance_id = instance_id
        self.metrics = metrics or SchedulerMetrics()
        self.timezone = timezone
        self._handlers: dict[str, JobHandler] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()
        self._stopping = False

    def register_handler(self, job_name: str, handler: JobHandler) -> None:
        if job_name in self._handlers:
            logger.warning("Replacing handler", extra={"job_name": job_name})
        self._handlers[job_name] = handler

    def get_handlers(self) -> dict[str, JobHandler]:
        return dict(self._handlers)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def scheduled_jobs(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    async def start(self) -> None:
        """Schedule every enabled job that has a handler and start the cron driver."""
        if self.running:
            raise RuntimeError("scheduler already started")

        self._stopping = False
        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        scheduled: list[JobConfig] = []
        for job in self.config.enabled_jobs_ordered():
            if job.name not in self._handlers:
                logger.warning(
                    "No handler registered for enabled job, skipping",
                    extra={"job_name": job.name},
                )
                continue

            self._scheduler.add_job(
                self.trigger,
                trigger=CronTrigger.from_crontab(job.cron, timezone=self.timezone),
                args=[job.name],
                id=job.name,
                name=job.name,
                # A second overlapping tick reaches the lock and is skipped there.
                max_instances=2,
                coalesce=True,
                misfire_grace_time=60,
            )
            scheduled.append(job)
            logger.info(
                "Job scheduled",
                extra={
                    "job_name": job.name,
                    "cron": job.cron,
                    "timeout_seconds": job.timeout.total_seconds(),
                },
            )

        self._scheduler.start()
        logger.info(
            "Scheduler started",
            extra={"instance_id": self.instance_id, "jobs": len(scheduled)},
        )

        if self.config.run_immediately:
            for job in scheduled:
                task = asyncio.create_task(
                    self.trigger(job.name), name=f"run-immediately-{job.name}"
                )
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop firing, wait for running jobs, then release this instance's locks."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        pending = [task for task in self._in_flight if not task.done()]
        if pending:
            logger.info("Waiting for running jobs to finish", extra={"running": len(pending)})
            _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        try:
            await self.locker.release_all(self.instance_id)
        except LockStoreError as exc:
            logger.error(
                "Failed to release locks on shutdown",
                extra={"instance_id": self.instance_id, "error": str(exc)},
            )
        logger.info("Scheduler stopped", extra={"instance_id": self.instance_id})

    async def trigger(self, job_name: str) -> JobOutcome:
        """Run one locked, time-bounded invocation of ``job_name`` now."""
        job = self.config.get_job(job_name)
        handler = self._handlers.get(job_name)
        if job is None or handler is None:
            logger.warning("Cannot trigger unknown job", extra={"job_name": job_name})
            return JobOutcome.NO_HANDLER
        if self._stopping:
            logger.info("Scheduler is stopping, not starting job", extra={"job_name": job_name})
            return JobOutcome.SKIPPED

        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            with run_context(
                job_name=job_name, run_id=uuid.uuid4().hex[:12], instance_id=self.instance_id
            ):
                return await self._run_locked(job, handler)
        finally:
            if task is not None:
                self._in_flight.discard(task)

    async def _run_locked(self, job: JobConfig, handler: JobHandler) -> JobOutcome:
        try:
            acquired = await self.locker.try_acquire(job.name, job.timeout, self.instance_id)
        except LockStoreError as exc:
            logger.error("Failed to acquire job lock", extra={"error": str(exc)})
            self.metrics.record_error(job.name, "lock_failed")
            return JobOutcome.LOCK_FAILED

        if not acquired:
            logger.info("Job is already running elsewhere, skipping this tick")
            return JobOutcome.SKIPPED

        try:
            return await self._invoke(job, handler, timeout=job.timeout.total_seconds())
        finally:
            try:
                await self.locker.release(job.name, self.instance_id)
            except LockStoreError as exc:
                logger.error("Failed to release job lock", extra={"error": str(exc)})
                self.metrics.record_error(job.name, "lock_release_failed")

    async def _invoke(
        self, job: JobConfig, handler: JobHandler, timeout: Optional[float]
    ) -> JobOutcome:
        logger.info("Job started")
        started = time.monotonic()
        with job_deadline(timeout) as deadline:
            try:
                await handler()
            except Exception as exc:
                duration = time.monotonic() - started
                logger.exception("Job failed", extra={"error": str(exc)})
                self.metrics.record_job(job.name, "failure", duration)
                self.metrics.record_error(job.name, "job_failed")
                return JobOutcome.FAILED

        duration = time.monotonic() - started
        if deadline.is_set():
            logger.error(
                "Job ran past its timeout",
                extra={"timeout_seconds": timeout, "duration_seconds": round(duration, 3)},
            )
            self.metrics.record_job(job.name, "failure", duration)
            self.metrics.record_error(job.name, "timeout")
            return JobOutcome.TIMEOUT

        self.metrics.record_job(job.name, "success", duration)
        logger.info("Job completed", extra={"duration_seconds": round(duration, 3)})
        return JobOutcome.SUCCESS

    async def run_once(self) -> dict[str, JobOutcome]:
        """Run every enabled job once, in configured order, without cron or locks.

        Failures are logged and the pass moves on to the next job.
        """
        outcomes: dict[str, JobOutcome] = {}
        for job in self.config.enabled_jobs_ordered():
            handler = self._handlers.get(job.name)
            if handler is None:
                logger.warning("No handler registered, skipping", extra={"job_name": job.name})
                outcomes[job.name] = JobOutcome.NO_HANDLER
                continue

            with run_context(
                job_name=job.name, run_id=uuid.uuid4().hex[:12], instance_id=self.instance_id
            ):
                outcomes[job.name] = await self._invoke(job, handler, timeout=None)

        logger.info(
            "Run-once pass finished",
            extra={"results": {name: outcome.value for name, outcome in outcomes.items()}},
        )
        return outcomes
