"""Job locks held as Redis keys with a TTL.

Uses atomic SET NX PX for acquisition and owner-checked Lua scripts for
release, so a late release can never delete another instance's lock.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from statcrawl.main.exceptions import LockStoreError
from statcrawl.main.logging import get_logger
from statcrawl.redis.lua_scripts import LuaScripts
from statcrawl.scheduler.domain.lock import Lock

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)


class RedisLocker:
    """Redis-backed job locker.

    Args:
        redis_client: Async Redis connection (``decode_responses=True``).
        key_prefix: Prefix for lock keys and owner index sets.
    """

    def __init__(self, redis_client: aioredis.Redis, key_prefix: str = "scheduler:lock") -> None:
        self._redis = redis_client
        self._prefix = key_prefix

    def lock_key(self, job_name: str) -> str:
        return f"{self._prefix}:{job_name}"

    def owner_key(self, owner_id: str) -> str:
        return f"{self._prefix}:owner:{owner_id}"

    async def ping(self) -> None:
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise LockStoreError("ping", None, exc) from exc

    async def try_acquire(self, job_name: str, ttl: timedelta, owner_id: str) -> bool:
        ttl_ms = max(1, math.ceil(ttl.total_seconds() * 1000))
        try:
            return await LuaScripts.acquire_lock(
                self._redis,
                self.lock_key(job_name),
                self.owner_key(owner_id),
                owner_id,
                ttl_ms,
            )
        except RedisError as exc:
            raise LockStoreError("acquire", job_name, exc) from exc

    async def release(self, job_name: str, owner_id: str) -> None:
        try:
            released = await LuaScripts.release_lock(
                self._redis,
                self.lock_key(job_name),
                self.owner_key(owner_id),
                owner_id,
            )
        except RedisError as exc:
            raise LockStoreError("release", job_name, exc) from exc

        if not released:
            logger.debug(
                "Lock was no longer owned at release",
                extra={"job_name": job_name, "owner_id": owner_id},
            )

    async def release_all(self, owner_id: str) -> None:
        try:
            released = await LuaScripts.release_all_locks(
                self._redis, self.owner_key(owner_id), owner_id
            )
        except RedisError as exc:
            raise LockStoreError("release_all", None, exc) from exc

        logger.info(
            "Released all locks for instance",
            extra={"owner_id": owner_id, "released": released},
        )

    async def get(self, job_name: str) -> Lock | None:
        key = self.lock_key(job_name)
        try:
            owner = await self._redis.get(key)
            pttl = await self._redis.pttl(key)
        except RedisError as exc:
            raise LockStoreError("get", job_name, exc) from exc

        if owner is None or pttl is None or pttl < 0:
            return None
        if isinstance(owner, bytes):
            owner = owner.decode("utf-8")

        # Redis keeps no acquisition time; report the lookup time instead.
        now = datetime.now(timezone.utc)
        return Lock(
            job_name=job_name,
            locked_at=now,
            locked_until=now + timedelta(milliseconds=pttl),
            instance_id=owner,
        )
