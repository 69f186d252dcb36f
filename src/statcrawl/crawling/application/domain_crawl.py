"""Full crawl of upstream domains: domain -> season -> tournament -> team.

Domains, tournaments within a season, and teams within a tournament each run
on their own bounded executor. Seasons of one domain are walked in order,
newest first. A shared ``Deduplicator`` lets mirrored domains skip work
another domain already did.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from statcrawl.crawling.application.dedup import Deduplicator
from statcrawl.crawling.application.executor import BoundedTaskExecutor
from statcrawl.crawling.application.fetch_retry import fetch_with_retry
from statcrawl.crawling.application.stale_crawl_job import FailedJobSink
from statcrawl.crawling.domain.collaborators import DomainSource, EntityWriter
from statcrawl.crawling.domain.failed_job import FailedJob
from statcrawl.main.logging import get_logger
from statcrawl.main.run_context import deadline_passed

if TYPE_CHECKING:
    from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics

logger = get_logger(__name__)

_ID_SEPARATOR = "|"


@dataclass(frozen=True)
class TeamRef:
    domain: str
    tournament_id: str
    team_id: str

    @property
    def external_id(self) -> str:
        return _ID_SEPARATOR.join((self.domain, self.tournament_id, self.team_id))

    def __post_init__(self) -> None:
        # Parsed from the right, so only the domain may contain the separator.
        for value in (self.tournament_id, self.team_id):
            if _ID_SEPARATOR in value:
                raise ValueError(f"team reference part {value!r} contains {_ID_SEPARATOR!r}")

    @classmethod
    def from_external_id(cls, external_id: str) -> "TeamRef":
        domain, tournament_id, team_id = external_id.rsplit(_ID_SEPARATOR, 2)
        return cls(domain=domain, tournament_id=tournament_id, team_id=team_id)


@dataclass
class DomainCrawlReport:
    domains_crawled: int = 0
    domains_skipped: int = 0
    domains_failed: int = 0
    tournaments: int = 0
    tournaments_skipped: int = 0
    tournaments_failed: int = 0
    teams_ok: int = 0
    teams_failed: int = 0
    records_saved: int = 0
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def add(self, **counts: int) -> None:
        async with self._lock:
            for name, value in counts.items():
                setattr(self, name, getattr(self, name) + value)


class DomainCrawler:
    def __init__(
        self,
        name: str,
        source: DomainSource,
        writer: EntityWriter,
        failed_jobs: FailedJobSink,
        metrics: "SchedulerMetrics",
        *,
        record_type: str = "player",
        source_name: str = "domain",
        domain_workers: int = 2,
        tournament_workers: int = 4,
        team_workers: int = 8,
        task_timeout: Optional[float] = None,
        tournament_timeout: Optional[float] = None,
        domain_timeout: Optional[float] = None,
        shutdown: Optional[asyncio.Event] = None,
        fetch_attempts: int = 3,
        fetch_delay_seconds: float = 2.0,
    ):
        self.name = name
        self.source = source
        self.writer = writer
        self.failed_jobs = failed_jobs
        self.metrics = metrics
        self.record_type = record_type
        self.source_name = source_name
        self.domain_workers = domain_workers
        self.tournament_workers = tournament_workers
        self.team_workers = team_workers
        self.task_timeout = task_timeout
        self.tournament_timeout = tournament_timeout
        self.domain_timeout = domain_timeout
        self.shutdown = shutdown
        self.fetch_attempts = fetch_attempts
        self.fetch_delay_seconds = fetch_delay_seconds

    @property
    def job_type(self) -> str:
        return f"{self.name}.team"

    def _executor(self, pool: str, workers: int, process, key, timeout=None) -> BoundedTaskExecutor:
        return BoundedTaskExecutor(
            f"{self.name}.{pool}",
            workers,
            process,
            task_timeout=timeout,
            key=key,
            shutdown=self.shutdown,
            metrics=self.metrics,
        )

    async def crawl(self, domains: list[str], dedup: Optional[Deduplicator] = None) -> DomainCrawlReport:
        """Crawl every domain. Pass a ``Deduplicator`` to share seen ids across calls."""
        dedup = dedup or Deduplicator(self.name)
        report = DomainCrawlReport()

        async def crawl_domain(domain: str) -> None:
            await self._crawl_domain(domain, dedup, report)

        executor = self._executor(
            "domains", self.domain_workers, crawl_domain, key=str, timeout=self.domain_timeout
        )
        for result in await executor.run(domains):
            if not result.ok:
                await report.add(domains_failed=1)
                logger.error(
                    "Domain crawl failed",
                    extra={"domain": result.key, "error": str(result.error)},
                )

        self.metrics.record_records_saved(self.record_type, report.records_saved)
        self.metrics.record_entities_processed(self.source_name, report.tournaments)
        logger.info(
            "Domain crawl finished",
            extra={
                "domains_crawled": report.domains_crawled,
                "domains_skipped": report.domains_skipped,
                "tournaments": report.tournaments,
                "tournaments_failed": report.tournaments_failed,
                "teams_ok": report.teams_ok,
                "teams_failed": report.teams_failed,
                "records_saved": report.records_saved,
            },
        )
        return report

    async def _sample_domain(self, domain: str, dedup: Deduplicator) -> tuple[bool, list[str]]:
        """Sample the newest season; the domain is a duplicate only if all of it was crawled.

        Returns the verdict together with the season list so the crawl reuses it.
        """
        seasons = await self._fetch(lambda: self.source.list_seasons(domain))
        if not seasons:
            return False, []
        sample = await self._fetch(lambda: self.source.list_tournaments(domain, seasons[0]))
        return dedup.is_duplicate_domain(sample), seasons

    async def _crawl_domain(
        self, domain: str, dedup: Deduplicator, report: DomainCrawlReport
    ) -> None:
        duplicate, seasons = await self._sample_domain(domain, dedup)
        if duplicate:
            logger.info("Domain mirrors an already crawled one, skipping", extra={"domain": domain})
            await report.add(domains_skipped=1)
            return

        for season in seasons:
            if self.shutdown is not None and self.shutdown.is_set():
                return
            if deadline_passed():
                logger.info("Job deadline passed, stopping domain", extra={"domain": domain})
                return
            await self._crawl_season(domain, season, dedup, report)
        await report.add(domains_crawled=1)

    async def _crawl_season(
        self, domain: str, season: str, dedup: Deduplicator, report: DomainCrawlReport
    ) -> None:
        tournaments = await self._fetch(lambda: self.source.list_tournaments(domain, season))
        fresh = [t for t in tournaments if not dedup.check_and_mark(t)]
        await report.add(tournaments_skipped=len(tournaments) - len(fresh))
        if not fresh:
            return

        async def crawl_tournament(tournament_id: str) -> None:
            await self._crawl_tournament(domain, tournament_id, report)

        executor = self._executor(
            "tournaments",
            self.tournament_workers,
            crawl_tournament,
            key=str,
            timeout=self.tournament_timeout,
        )
        for result in await executor.run(fresh):
            if not result.ok:
                await report.add(tournaments_failed=1)
                logger.warning(
                    "Tournament crawl failed",
                    extra={"domain": domain, "tournament_id": result.key, "error": str(result.error)},
                )

    async def _crawl_tournament(
        self, domain: str, tournament_id: str, report: DomainCrawlReport
    ) -> None:
        teams = await self._fetch(lambda: self.source.list_teams(domain, tournament_id))
        refs: list[TeamRef] = []
        rejected = 0
        for team_id in teams:
            try:
                refs.append(TeamRef(domain, tournament_id, team_id))
            except ValueError as exc:
                rejected += 1
                logger.warning(
                    "Unusable team id, skipping",
                    extra={"domain": domain, "tournament_id": tournament_id, "error": str(exc)},
                )

        executor = self._executor(
            "teams",
            self.team_workers,
            self._crawl_team,
            key=lambda ref: ref.external_id,
            timeout=self.task_timeout,
        )
        ok = saved = 0
        failed = rejected
        for result in await executor.run(refs):
            if result.ok:
                ok += 1
                saved += result.output or 0
                continue
            failed += 1
            if not result.cancelled:
                await self.failed_jobs.save_error(
                    self.job_type, self.source_name, result.key, None, result.error
                )

        await report.add(tournaments=1, teams_ok=ok, teams_failed=failed, records_saved=saved)

    async def _crawl_team(self, ref: TeamRef) -> int:
        items = await self._fetch(
            lambda: self.source.crawl_team(ref.domain, ref.tournament_id, ref.team_id)
        )
        for item in items:
            await self.writer.upsert_entity(self.record_type, item)
        return len(items)

    async def retry(self, failed_job: FailedJob) -> None:
        """Retry handler for a single failed team."""
        saved = await self._crawl_team(TeamRef.from_external_id(failed_job.external_id))
        self.metrics.record_records_saved(self.record_type, saved)

    async def _fetch(self, call):
        return await fetch_with_retry(
            call, attempts=self.fetch_attempts, delay_seconds=self.fetch_delay_seconds
        )
