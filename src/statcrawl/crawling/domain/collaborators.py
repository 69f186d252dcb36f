"""Interfaces the orchestration core calls into.

Site parsers and the crawled-record schema live outside this package; they
plug in by satisfying these protocols.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from statcrawl.crawling.domain.stale_entity import StaleEntity, TaskKind

Item = Mapping[str, Any]


@runtime_checkable
class Parser(Protocol):
    """Fetch and parse one identifier (a URL, a tournament id, ...)."""

    async def parse(self, identifier: str) -> Sequence[Item]: ...


@runtime_checkable
class EntityWriter(Protocol):
    """Idempotent persistence of crawled records: calling twice has the same effect."""

    async def upsert_entity(self, record_type: str, item: Item) -> None: ...


@runtime_checkable
class StaleEntitySelector(Protocol):
    async def select_stale_by_priority(
        self, task_kind: TaskKind, source: Optional[str] = None, limit: Optional[int] = None
    ) -> list[StaleEntity]: ...

    async def mark_processed(self, entity_id: str, task_kind: TaskKind) -> None: ...


@runtime_checkable
class DomainSource(Protocol):
    """Listing side of a site: seasons, their tournaments and their teams.

    Seasons are returned newest first.
    """

    async def list_seasons(self, domain: str) -> Sequence[str]: ...

    async def list_tournaments(self, domain: str, season: str) -> Sequence[str]: ...

    async def list_teams(self, domain: str, tournament_id: str) -> Sequence[str]: ...

    async def crawl_team(self, domain: str, tournament_id: str, team_id: str) -> Sequence[Item]: ...
