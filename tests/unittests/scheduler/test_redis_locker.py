"""Unit tests for the Redis job locker against an in-memory Redis stub."""

import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from statcrawl.main.exceptions import LockStoreError
from statcrawl.redis.lua_scripts import LuaScripts
from statcrawl.scheduler.infrastructure.redis_locker import RedisLocker


class FakeRedis:
    """Minimal async Redis stub that interprets the lock scripts."""

    def __init__(self):
        self.now_ms = 0
        self._values: dict[str, str] = {}
        self._expiry: dict[str, int] = {}
        self._sets: dict[str, set[str]] = {}

    def advance(self, ms: int):
        self.now_ms += ms

    def _alive(self, key: str) -> bool:
        expiry = self._expiry.get(key)
        if expiry is not None and expiry <= self.now_ms:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return False
        return key in self._values

    async def eval(self, script: str, num_keys: int, *args):
        keys, argv = args[:num_keys], args[num_keys:]
        if script == LuaScripts.ACQUIRE_LOCK:
            lock_key, owner_key = keys
            owner, ttl_ms = argv
            if self._alive(lock_key):
                return 0
            self._values[lock_key] = owner
            self._expiry[lock_key] = self.now_ms + int(ttl_ms)
            self._sets.setdefault(owner_key, set()).add(lock_key)
            return 1
        if script == LuaScripts.RELEASE_LOCK:
            lock_key, owner_key = keys
            self._sets.get(owner_key, set()).discard(lock_key)
            if self._alive(lock_key) and self._values[lock_key] == argv[0]:
                del self._values[lock_key]
                self._expiry.pop(lock_key, None)
                return 1
            return 0
        if script == LuaScripts.RELEASE_ALL_LOCKS:
            (owner_key,) = keys
            released = 0
            for lock_key in self._sets.pop(owner_key, set()):
                if self._alive(lock_key) and self._values[lock_key] == argv[0]:
                    del self._values[lock_key]
                    self._expiry.pop(lock_key, None)
                    released += 1
            return released
        raise AssertionError("unexpected script")

    async def get(self, key: str):
        return self._values.get(key) if self._alive(key) else None

    async def pttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        return self._expiry[key] - self.now_ms

    async def ping(self) -> bool:
        return True


class BrokenRedis:
    async def eval(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def ping(self):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def locker(redis) -> RedisLocker:
    return RedisLocker(redis, key_prefix="test:lock")


class TestTryAcquire:
    @pytest.mark.asyncio
    async def test_only_one_of_many_owners_wins(self, locker):
        results = await asyncio.gather(
            *(locker.try_acquire("junior_stats", timedelta(minutes=1), f"o{i}") for i in range(10))
        )

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_expired_lock_is_reclaimable(self, locker, redis):
        assert await locker.try_acquire("job", timedelta(seconds=5), "a") is True
        redis.advance(5_001)

        assert await locker.try_acquire("job", timedelta(seconds=5), "b") is True

    @pytest.mark.asyncio
    async def test_backend_error_raises_lock_store_error(self):
        locker = RedisLocker(BrokenRedis())

        with pytest.raises(LockStoreError):
            await locker.try_acquire("job", timedelta(seconds=5), "a")

    def test_key_layout(self, locker):
        assert locker.lock_key("junior_stats") == "test:lock:junior_stats"
        assert locker.owner_key("ab12cd34") == "test:lock:owner:ab12cd34"


class TestRelease:
    @pytest.mark.asyncio
    async def test_non_owner_cannot_release(self, locker):
        await locker.try_acquire("job", timedelta(minutes=1), "a")

        await locker.release("job", "b")

        assert (await locker.get("job")).instance_id == "a"

    @pytest.mark.asyncio
    async def test_owner_release_frees_lock(self, locker):
        await locker.try_acquire("job", timedelta(minutes=1), "a")

        await locker.release("job", "a")

        assert await locker.get("job") is None
        assert await locker.try_acquire("job", timedelta(minutes=1), "b") is True

    @pytest.mark.asyncio
    async def test_release_all_frees_only_owned_locks(self, locker):
        await locker.try_acquire("one", timedelta(minutes=1), "a")
        await locker.try_acquire("two", timedelta(minutes=1), "a")
        await locker.try_acquire("three", timedelta(minutes=1), "b")

        await locker.release_all("a")

        assert await locker.get("one") is None
        assert await locker.get("two") is None
        assert (await locker.get("three")).instance_id == "b"


class TestGet:
    @pytest.mark.asyncio
    async def test_reports_remaining_ttl(self, locker):
        await locker.try_acquire("job", timedelta(seconds=30), "a")

        lock = await locker.get("job")

        assert lock.instance_id == "a"
        assert lock.locked_until - lock.locked_at == timedelta(seconds=30)
        assert lock.is_valid(lock.locked_at)

    @pytest.mark.asyncio
    async def test_ping_failure_raises(self):
        with pytest.raises(LockStoreError):
            await RedisLocker(BrokenRedis()).ping()
