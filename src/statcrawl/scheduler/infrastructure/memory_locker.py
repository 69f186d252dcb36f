from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from statcrawl.scheduler.domain.lock import Lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryLocker:
    """Process-local locker for single-instance deployments and run-once tooling.

    Gives the same contract as the shared backends, but only between
    schedulers that share this object.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._locks: dict[str, Lock] = {}
        self._mutex = asyncio.Lock()

    async def try_acquire(self, job_name: str, ttl: timedelta, owner_id: str) -> bool:
        async with self._mutex:
            now = self._clock()
            current = self._locks.get(job_name)
            if current is not None and current.is_valid(now):
                return False
            self._locks[job_name] = Lock(
                job_name=job_name,
                locked_at=now,
                locked_until=now + ttl,
                instance_id=owner_id,
            )
            return True

    async def release(self, job_name: str, owner_id: str) -> None:
        async with self._mutex:
            current = self._locks.get(job_name)
            if current is not None and current.instance_id == owner_id:
                del self._locks[job_name]

    async def release_all(self, owner_id: str) -> None:
        async with self._mutex:
            for job_name in [n for n, lock in self._locks.items() if lock.instance_id == owner_id]:
                del self._locks[job_name]

    async def get(self, job_name: str) -> Lock | None:
        return self._locks.get(job_name)
