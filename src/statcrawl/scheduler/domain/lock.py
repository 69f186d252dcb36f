"""Job lock contract shared by every lock backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Lock:
    job_name: str
    locked_at: datetime
    locked_until: datetime
    instance_id: str

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.locked_until > (now or datetime.now(timezone.utc))


@runtime_checkable
class Locker(Protocol):
    """Whole-job mutual exclusion across scheduler instances.

    ``try_acquire`` returns False on contention. Backend failures raise
    ``LockStoreError`` so callers can tell the two apart.
    """

    async def try_acquire(self, job_name: str, ttl: timedelta, owner_id: str) -> bool: ...

    async def release(self, job_name: str, owner_id: str) -> None: ...

    async def release_all(self, owner_id: str) -> None: ...

    async def get(self, job_name: str) -> Lock | None: ...
