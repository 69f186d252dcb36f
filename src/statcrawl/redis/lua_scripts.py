"""Lua scripts for atomic job-lock operations in Redis.

Every script completes entirely or not at all, so ownership checks and the
owner index never drift apart.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from redis.asyncio import Redis


class LuaScripts:
    """Container for the job-lock scripts and typed helpers to run them."""

    ACQUIRE_LOCK: str = (
        # Take a job lock if free and record it in the owner's index.
        #
        # KEYS[1]: lock key (e.g., scheduler:lock:junior_stats)
        # KEYS[2]: owner index set (e.g., scheduler:lock:owner:ab12cd34)
        # ARGV[1]: owner id
        # ARGV[2]: ttl (milliseconds)
        #
        # Returns:
        #   1: Lock acquired
        #   0: Lock held by someone (including the caller) and not yet expired
        "local ok = redis.call('SET', KEYS[1], ARGV[1], 'NX', 'PX', tonumber(ARGV[2]))\n"
        "if not ok then\n"
        "  return 0\n"
        "end\n"
        "redis.call('SADD', KEYS[2], KEYS[1])\n"
        "local index_ttl = redis.call('PTTL', KEYS[2])\n"
        "if index_ttl < tonumber(ARGV[2]) then\n"
        "  redis.call('PEXPIRE', KEYS[2], tonumber(ARGV[2]))\n"
        "end\n"
        "return 1\n"
    )

    RELEASE_LOCK: str = (
        # Release a job lock if owned by caller.
        #
        # KEYS[1]: lock key
        # KEYS[2]: owner index set
        # ARGV[1]: expected owner
        #
        # Returns:
        #   1: Lock released
        #   0: Lock not owned by caller or doesn't exist
        #
        # INVARIANT: Only the actual lock owner can release.
        "redis.call('SREM', KEYS[2], KEYS[1])\n"
        "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
        "  return redis.call('DEL', KEYS[1])\n"
        "end\n"
        "return 0\n"
    )

    RELEASE_ALL_LOCKS: str = (
        # Release every lock in the owner's index that the owner still holds.
        #
        # KEYS[1]: owner index set
        # ARGV[1]: owner id
        #
        # Returns: number of locks deleted
        "local released = 0\n"
        "for _, key in ipairs(redis.call('SMEMBERS', KEYS[1])) do\n"
        "  if redis.call('GET', key) == ARGV[1] then\n"
        "    released = released + redis.call('DEL', key)\n"
        "  end\n"
        "end\n"
        "redis.call('DEL', KEYS[1])\n"
        "return released\n"
    )

    @staticmethod
    async def acquire_lock(
        redis: "Redis",
        lock_key: str,
        owner_key: str,
        owner_id: str,
        ttl_ms: int,
    ) -> bool:
        result = await redis.eval(
            LuaScripts.ACQUIRE_LOCK, 2, lock_key, owner_key, owner_id, str(ttl_ms)
        )
        return int(result) == 1

    @staticmethod
    async def release_lock(
        redis: "Redis",
        lock_key: str,
        owner_key: str,
        owner_id: str,
    ) -> bool:
        """Release a lock if owned by caller.

        Returns:
            True if lock was released, False if not owned
        """
        result = await redis.eval(LuaScripts.RELEASE_LOCK, 2, lock_key, owner_key, owner_id)
        return int(result) == 1

    @staticmethod
    async def release_all_locks(redis: "Redis", owner_key: str, owner_id: str) -> int:
        result = await redis.eval(LuaScripts.RELEASE_ALL_LOCKS, 1, owner_key, owner_id)
        return int(result) if result else 0
