"""Process wiring: settings -> locker, repositories, scheduler, plugins."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import signal
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from statcrawl.crawling.application.domain_crawl import DomainCrawler
from statcrawl.crawling.application.stale_crawl_job import StaleCrawlJob
from statcrawl.crawling.domain.collaborators import DomainSource, EntityWriter, Parser
from statcrawl.crawling.domain.stale_entity import TaskKind
from statcrawl.crawling.infrastructure.failed_job_repo import FailedJobRepository
from statcrawl.crawling.infrastructure.stale_entity_repo import StaleEntityRepository
from statcrawl.database.database import sessionmanager
from statcrawl.main.config import Settings
from statcrawl.main.exceptions import ConfigurationError
from statcrawl.main.logging import get_logger
from statcrawl.redis.connection import create_redis_client
from statcrawl.scheduler.application.retry_worker import RetryWorker
from statcrawl.scheduler.application.scheduler_service import JobHandler, SchedulerService
from statcrawl.scheduler.domain.job_config import SchedulerConfig
from statcrawl.scheduler.domain.lock import Locker
from statcrawl.scheduler.infrastructure.lock_repo import PostgresLocker
from statcrawl.scheduler.infrastructure.memory_locker import InMemoryLocker
from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics
from statcrawl.scheduler.infrastructure.redis_locker import RedisLocker

logger = get_logger(__name__)

RETRY_WORKER_JOB = "retry_worker"
CLEANUP_JOB = "failed_jobs_cleanup"


@dataclass
class SchedulerContext:
    """Everything a handler plugin needs to build and register its jobs."""

    settings: Settings
    config: SchedulerConfig
    scheduler: SchedulerService
    metrics: SchedulerMetrics
    shutdown: asyncio.Event
    failed_jobs: FailedJobRepository
    stale_entities: StaleEntityRepository
    retry_worker: RetryWorker

    def register_handler(self, job_name: str, handler: JobHandler) -> None:
        self.scheduler.register_handler(job_name, handler)

    def max_batch_size(self, job_name: str) -> Optional[int]:
        job = self.config.get_job(job_name)
        return job.max_batch_size if job is not None else None

    def stale_crawl_job(
        self,
        job_name: str,
        source: str,
        task_kind: TaskKind,
        *,
        parser: Parser,
        writer: EntityWriter,
        record_type: str,
        worker_count: int | None = None,
    ) -> StaleCrawlJob:
        """Build a stale crawl job from settings and register it and its retry handler."""
        settings = self.settings
        job = StaleCrawlJob(
            job_name,
            source,
            task_kind,
            selector=self.stale_entities,
            parser=parser,
            writer=writer,
            failed_jobs=self.failed_jobs,
            metrics=self.metrics,
            record_type=record_type,
            worker_count=worker_count or settings.tournament_workers,
            task_timeout=settings.task_timeout_seconds,
            max_batch_size=self.max_batch_size(job_name),
            shutdown=self.shutdown,
            fetch_attempts=settings.fetch_retry_attempts,
            fetch_delay_seconds=settings.fetch_retry_delay_seconds,
        )
        self.register_handler(job_name, job.run)
        self.retry_worker.register_handler(job.job_type, job.retry)
        return job

    def domain_crawler(
        self,
        job_name: str,
        source: DomainSource,
        domains: list[str],
        *,
        writer: EntityWriter,
        record_type: str,
        source_name: str,
    ) -> DomainCrawler:
        """Build a domain crawler over ``domains`` and register it as ``job_name``."""
        settings = self.settings
        crawler = DomainCrawler(
            job_name,
            source,
            writer,
            self.failed_jobs,
            self.metrics,
            record_type=record_type,
            source_name=source_name,
            domain_workers=settings.domain_workers,
            tournament_workers=settings.tournament_workers,
            team_workers=settings.team_workers,
            task_timeout=settings.task_timeout_seconds,
            tournament_timeout=settings.tournament_task_timeout_seconds,
            domain_timeout=settings.domain_task_timeout_seconds,
            shutdown=self.shutdown,
            fetch_attempts=settings.fetch_retry_attempts,
            fetch_delay_seconds=settings.fetch_retry_delay_seconds,
        )

        async def crawl_all() -> None:
            await crawler.crawl(domains)

        self.register_handler(job_name, crawl_all)
        self.retry_worker.register_handler(crawler.job_type, crawler.retry)
        return crawler


def build_locker(settings: Settings) -> Locker:
    match settings.lock_backend:
        case "postgres":
            return PostgresLocker(sessionmanager)
        case "redis":
            return RedisLocker(create_redis_client(settings), key_prefix=settings.lock_key_prefix)
        case "memory":
            return InMemoryLocker()
        case _:
            raise ConfigurationError(f"unknown lock backend: {settings.lock_backend}")


async def load_plugins(context: SchedulerContext, plugins: list[str]) -> None:
    """Import ``module:function`` plugins and let each register its handlers."""
    for spec in plugins:
        module_name, _, attr = spec.partition(":")
        if not module_name or not attr:
            raise ConfigurationError(f"handler plugin must look like 'module:function', got {spec!r}")
        try:
            register = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as exc:
            raise ConfigurationError(f"cannot load handler plugin {spec!r}: {exc}") from exc

        outcome = register(context)
        if inspect.isawaitable(outcome):
            await outcome
        logger.info("Handler plugin loaded", extra={"plugin": spec})


def register_builtin_handlers(context: SchedulerContext) -> None:
    retention = timedelta(days=context.settings.failed_job_retention_days)

    async def cleanup() -> None:
        await context.retry_worker.cleanup(retention)

    context.register_handler(RETRY_WORKER_JOB, context.retry_worker.run)
    context.register_handler(CLEANUP_JOB, cleanup)


async def build_context(settings: Settings, shutdown: asyncio.Event) -> SchedulerContext:
    """Load job config, connect the store and assemble the scheduler.

    Raises on any startup problem; callers treat that as fatal.
    """
    config = SchedulerConfig.load(settings.scheduler_config_path)

    sessionmanager.init(settings.database_url)
    await sessionmanager.ping()

    locker = build_locker(settings)
    if isinstance(locker, RedisLocker):
        await locker.ping()

    metrics = SchedulerMetrics()
    scheduler = SchedulerService(
        config,
        locker,
        settings.instance_id,
        metrics=metrics,
        timezone=settings.scheduler_timezone,
    )
    failed_jobs = FailedJobRepository(sessionmanager, max_retries=settings.failed_job_max_retries)
    context = SchedulerContext(
        settings=settings,
        config=config,
        scheduler=scheduler,
        metrics=metrics,
        shutdown=shutdown,
        failed_jobs=failed_jobs,
        stale_entities=StaleEntityRepository(sessionmanager),
        retry_worker=RetryWorker(
            failed_jobs,
            batch_size=settings.retry_batch_size,
            metrics=metrics,
            shutdown=shutdown,
        ),
    )
    register_builtin_handlers(context)
    await load_plugins(context, settings.handler_plugins)
    return context


def install_signal_handlers(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Not supported on this platform's event loop
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown.set))


async def run_scheduler(settings: Settings, run_once: bool = False) -> None:
    shutdown = asyncio.Event()
    install_signal_handlers(shutdown)

    try:
        context = await build_context(settings, shutdown)
        scheduler = context.scheduler

        if run_once:
            logger.info("Running all enabled jobs once")
            await scheduler.run_once()
            return

        if context.config.bootstrap_mode and not await context.stale_entities.has_data():
            logger.info("No crawled data yet, running a bootstrap pass before scheduling")
            await scheduler.run_once()

        await scheduler.start()
        await shutdown.wait()
        logger.info("Shutdown signal received")
        await scheduler.stop()
    finally:
        await sessionmanager.close()
