from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert

from statcrawl.crawling.domain.priority import Tier, TierBoundaries
from statcrawl.crawling.domain.stale_entity import StaleEntity, TaskKind
from statcrawl.database.database import DatabaseSessionManager, sessionmanager
from statcrawl.database.tables.tournament_table import Tournaments
from statcrawl.main.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_stale_query(
    task_kind: TaskKind,
    now: datetime,
    source: Optional[str] = None,
    limit: Optional[int] = None,
) -> sa.Select:
    """Entities due for ``task_kind``, most urgent first.

    Tier filters mirror ``priority.classify``; a marker exactly on a boundary
    falls into the older tier.
    """
    last = getattr(Tournaments, task_kind.column)
    end = Tournaments.end_date
    bounds = TierBoundaries.at(now)

    active = sa.or_(Tournaments.is_ended.is_(False), end.is_(None))
    ended = sa.and_(Tournaments.is_ended.is_(True), end.is_not(None))

    def stale(tier: Tier):
        return sa.or_(last.is_(None), last < now - tier.rescan_interval)

    due = sa.or_(
        sa.and_(active, stale(Tier.ACTIVE)),
        sa.and_(ended, end > bounds.recent, stale(Tier.RECENT)),
        sa.and_(ended, end <= bounds.recent, end > bounds.medium, stale(Tier.MEDIUM)),
        sa.and_(ended, end <= bounds.medium, end > bounds.old, stale(Tier.OLD)),
        sa.and_(ended, end <= bounds.old, stale(Tier.ARCHIVE)),
    )

    rank = sa.case(
        (active, Tier.ACTIVE.rank),
        (end > bounds.recent, Tier.RECENT.rank),
        (end > bounds.medium, Tier.MEDIUM.rank),
        (end > bounds.old, Tier.OLD.rank),
        else_=Tier.ARCHIVE.rank,
    )

    stmt = sa.select(Tournaments).where(due)
    if source is not None:
        stmt = stmt.where(Tournaments.source == source)
    stmt = stmt.order_by(rank, last.asc().nulls_first(), Tournaments.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


class StaleEntityRepository:
    def __init__(
        self,
        session_manager: DatabaseSessionManager = sessionmanager,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_manager = session_manager
        self.clock = clock

    async def select_stale_by_priority(
        self,
        task_kind: TaskKind,
        source: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[StaleEntity]:
        stmt = build_stale_query(task_kind, self.clock(), source=source, limit=limit)
        async with self.session_manager.transaction() as session:
            rows = await session.scalars(stmt)
            entities = [StaleEntity.model_validate(row) for row in rows]

        logger.debug(
            "Selected stale entities",
            extra={"task_kind": task_kind.value, "source": source, "count": len(entities)},
        )
        return entities

    async def get_never_processed(
        self, task_kind: TaskKind, source: Optional[str] = None, limit: Optional[int] = None
    ) -> list[StaleEntity]:
        last = getattr(Tournaments, task_kind.column)
        stmt = sa.select(Tournaments).where(last.is_(None)).order_by(Tournaments.id)
        if source is not None:
            stmt = stmt.where(Tournaments.source == source)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_manager.transaction() as session:
            rows = await session.scalars(stmt)
            return [StaleEntity.model_validate(row) for row in rows]

    async def mark_processed(
        self, entity_id: str, task_kind: TaskKind, at: Optional[datetime] = None
    ) -> bool:
        stmt = (
            sa.update(Tournaments)
            .where(Tournaments.id == entity_id)
            .values({task_kind.column: at or self.clock(), "updated_at": sa.func.now()})
        )
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def has_data(self, source: Optional[str] = None) -> bool:
        stmt = sa.select(Tournaments.id).limit(1)
        if source is not None:
            stmt = stmt.where(Tournaments.source == source)
        async with self.session_manager.transaction() as session:
            return (await session.scalar(stmt)) is not None

    async def upsert(self, entities: Iterable[StaleEntity]) -> int:
        """Insert discovered entities or refresh their descriptive fields.

        Processing timestamps are never overwritten here.
        """
        rows = [
            entity.model_dump(
                include={"id", "source", "name", "url", "is_ended", "end_date"}
            )
            for entity in entities
        ]
        if not rows:
            return 0

        stmt = pg_insert(Tournaments).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Tournaments.id],
            set_={
                "name": stmt.excluded.name,
                "url": stmt.excluded.url,
                "is_ended": stmt.excluded.is_ended,
                "end_date": stmt.excluded.end_date,
                "updated_at": sa.func.now(),
            },
        )
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount
