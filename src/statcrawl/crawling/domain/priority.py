"""Staleness tiers for re-crawling.

A tier is derived from whether an entity has ended and how long ago. Each tier
has a re-scan interval; an entity is due when it was never processed or its
last pass is older than that interval. Month boundaries are calendar months,
and a marker exactly on a boundary belongs to the older tier.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence, TypeVar

from dateutil.relativedelta import relativedelta


class Tier(enum.Enum):
    ACTIVE = "active"
    RECENT = "recent"
    MEDIUM = "medium"
    OLD = "old"
    ARCHIVE = "archive"

    @property
    def rank(self) -> int:
        return TIER_RANK[self]

    @property
    def rescan_interval(self) -> timedelta:
        return RESCAN_INTERVALS[self]


TIER_RANK = {
    Tier.ACTIVE: 1,
    Tier.RECENT: 2,
    Tier.MEDIUM: 3,
    Tier.OLD: 4,
    Tier.ARCHIVE: 5,
}

RESCAN_INTERVALS = {
    Tier.ACTIVE: timedelta(hours=4),
    Tier.RECENT: timedelta(days=1),
    Tier.MEDIUM: timedelta(days=14),
    Tier.OLD: timedelta(days=30),
    Tier.ARCHIVE: timedelta(days=180),
}


@dataclass(frozen=True)
class TierBoundaries:
    """End-marker thresholds relative to a fixed ``now``."""

    now: datetime
    recent: datetime
    medium: datetime
    old: datetime

    @classmethod
    def at(cls, now: datetime) -> "TierBoundaries":
        return cls(
            now=now,
            recent=now - relativedelta(months=1),
            medium=now - relativedelta(months=6),
            old=now - relativedelta(years=1),
        )


def classify(ended: bool, end_marker: Optional[datetime], now: datetime) -> Tier:
    if not ended or end_marker is None:
        return Tier.ACTIVE

    bounds = TierBoundaries.at(now)
    if end_marker > bounds.recent:
        return Tier.RECENT
    if end_marker > bounds.medium:
        return Tier.MEDIUM
    if end_marker > bounds.old:
        return Tier.OLD
    return Tier.ARCHIVE


def is_due(tier: Tier, last_processed_at: Optional[datetime], now: datetime) -> bool:
    if last_processed_at is None:
        return True
    return last_processed_at < now - tier.rescan_interval


def priority_key(tier: Tier, last_processed_at: Optional[datetime]) -> tuple:
    """Sort key: tier rank first, never-processed before anything, then oldest pass."""
    if last_processed_at is None:
        return (tier.rank, 0, 0.0)
    return (tier.rank, 1, last_processed_at.timestamp())


E = TypeVar("E")


def select_stale(
    entities: Iterable[E],
    *,
    now: datetime,
    ended_of,
    end_marker_of,
    last_processed_of,
    limit: Optional[int] = None,
) -> list[E]:
    """In-memory selection with the same filter, ordering and cap as the SQL query."""
    due: list[tuple[tuple, E]] = []
    for entity in entities:
        tier = classify(ended_of(entity), end_marker_of(entity), now)
        last = last_processed_of(entity)
        if is_due(tier, last, now):
            due.append((priority_key(tier, last), entity))

    due.sort(key=lambda pair: pair[0])
    ordered: Sequence[E] = [entity for _, entity in due]
    if limit is not None:
        ordered = ordered[:limit]
    return list(ordered)
