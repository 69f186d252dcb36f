from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

DEFAULT_MAX_RETRIES = 3
MAX_ERROR_LENGTH = 512

# Delay before the next attempt, indexed by retry_count.
BACKOFF_SCHEDULE = (
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
)
BACKOFF_CEILING = timedelta(hours=24)


def backoff(retry_count: int) -> timedelta:
    if retry_count < 0:
        retry_count = 0
    if retry_count < len(BACKOFF_SCHEDULE):
        return BACKOFF_SCHEDULE[retry_count]
    return BACKOFF_CEILING


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_LENGTH]


class FailedJob(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    source: str
    external_id: str
    url: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    next_retry_at: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def is_dead(self) -> bool:
        return self.retry_count >= self.max_retries

    def is_due(self, now: datetime) -> bool:
        return not self.is_dead and self.next_retry_at <= now


class FailedJobStats(BaseModel):
    pending: int
    dead: int
