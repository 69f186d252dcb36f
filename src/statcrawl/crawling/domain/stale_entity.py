from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from statcrawl.crawling.domain.priority import Tier, classify, is_due


class TaskKind(str, enum.Enum):
    """What a pass over a stale entity refreshes; each kind has its own timestamp."""

    PLAYERS = "players"
    STATS = "stats"

    @property
    def column(self) -> str:
        return f"last_{self.value}_parsed_at"


class StaleEntity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source: str
    name: Optional[str] = None
    url: Optional[str] = None
    is_ended: bool = False
    end_date: Optional[datetime] = None
    last_players_parsed_at: Optional[datetime] = None
    last_stats_parsed_at: Optional[datetime] = None

    def tier(self, now: datetime) -> Tier:
        return classify(self.is_ended, self.end_date, now)

    def last_processed_at(self, kind: TaskKind) -> Optional[datetime]:
        return getattr(self, kind.column)

    def is_due(self, kind: TaskKind, now: datetime) -> bool:
        return is_due(self.tier(now), self.last_processed_at(kind), now)
