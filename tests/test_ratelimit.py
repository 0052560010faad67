"""Tests for the shared KV store and the fixed-window rate limiter."""

import asyncio

import pytest
import pytest_asyncio
import redis.asyncio as redis
from limits import RateLimitItemPerSecond

from bashitix.errors import TooManyRequests
from bashitix.model.kv import (
    RedisKVStore, SqlKVStore, SqlWindowStorage, new_rate_storage, new_store,
)
from bashitix.ratelimit import NAMESPACE, RateLimiter
from tests.conftest import skip_if_no_redis


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sql_kv(db, clock) -> SqlKVStore:
    return SqlKVStore(db=db, clock=clock)


@pytest.fixture
def windows(db, clock) -> SqlWindowStorage:
    return SqlWindowStorage(db=db, clock=clock)


class TestSqlKV:
    @pytest.mark.asyncio
    async def test_set_get_expire(self, sql_kv, clock):
        await sql_kv.set("k", "v", 10)
        assert await sql_kv.get("k") == "v"
        clock.now += 11
        assert await sql_kv.get("k") is None
        assert await sql_kv.purge_expired() == 1

    @pytest.mark.asyncio
    async def test_delete(self, sql_kv):
        await sql_kv.set("k", "v", 10)
        await sql_kv.delete("k")
        assert await sql_kv.get("k") is None


class TestSqlWindowStorage:
    @pytest.mark.asyncio
    async def test_incr_resets_after_expiry(self, windows, clock):
        assert await windows.incr("ratelimit/w", 60) == 1
        assert await windows.incr("ratelimit/w", 60) == 2
        assert await windows.get("ratelimit/w") == 2
        assert await windows.get_expiry("ratelimit/w") == clock.now + 60
        clock.now += 61
        assert await windows.get("ratelimit/w") == 0
        assert await windows.incr("ratelimit/w", 60) == 1

    @pytest.mark.asyncio
    async def test_incr_by_amount(self, windows):
        assert await windows.incr("ratelimit/a", 60, amount=3) == 3
        assert await windows.incr("ratelimit/a", 60, amount=2) == 5

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_counted(self, windows):
        counts = await asyncio.gather(
            *(windows.incr("ratelimit/c", 60) for _ in range(8))
        )
        assert sorted(counts) == list(range(1, 9))

    @pytest.mark.asyncio
    async def test_clear_and_reset(self, windows, sql_kv):
        await windows.incr("ratelimit/x", 60)
        await windows.incr("ratelimit/y", 60)
        await sql_kv.set("verify:t1", "{}", 60)
        await windows.clear("ratelimit/x")
        assert await windows.get("ratelimit/x") == 0
        assert await windows.reset() == 1
        # other kv entries are left alone
        assert await sql_kv.get("verify:t1") == "{}"

    @pytest.mark.asyncio
    async def test_check(self, windows):
        assert await windows.check() is True


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_login_limit(self, windows):
        limiter = RateLimiter(windows)
        for _ in range(5):
            await limiter.check("login", "1.2.3.4", 5, 60)
        with pytest.raises(TooManyRequests):
            await limiter.check("login", "1.2.3.4", 5, 60)
        # other clients have their own window
        await limiter.check("login", "5.6.7.8", 5, 60)

    @pytest.mark.asyncio
    async def test_window_expiry_allows_again(self, windows, clock):
        limiter = RateLimiter(windows)
        for _ in range(3):
            assert await limiter.allow("register", "ip", 3, 300)
        assert not await limiter.allow("register", "ip", 3, 300)
        clock.now += 301
        assert await limiter.allow("register", "ip", 3, 300)

    @pytest.mark.asyncio
    async def test_actions_are_counted_apart(self, windows):
        limiter = RateLimiter(windows)
        assert await limiter.allow("register", "ip", 1, 300)
        assert await limiter.allow("login", "ip", 1, 60)
        assert not await limiter.allow("register", "ip", 1, 300)


class TestFactory:
    def test_unknown_backend(self):
        with pytest.raises(RuntimeError):
            new_store("memcached")
        with pytest.raises(RuntimeError):
            new_rate_storage("memcached")

    def test_sql_requires_db(self):
        with pytest.raises(RuntimeError):
            new_store("sql")
        with pytest.raises(RuntimeError):
            new_rate_storage("sql")

    def test_redis_requires_url(self):
        with pytest.raises(RuntimeError):
            new_rate_storage("redis")


@pytest_asyncio.fixture
async def redis_kv():
    skip_if_no_redis()
    r = redis.from_url("redis://127.0.0.1:6379", decode_responses=True)
    store = RedisKVStore(r=r)
    await r.delete("test:kv:k")
    yield store
    await r.delete("test:kv:k")
    await r.aclose()


class TestRedisKV:
    @pytest.mark.asyncio
    async def test_set_get(self, redis_kv):
        await redis_kv.set("test:kv:k", "v", 10)
        assert await redis_kv.get("test:kv:k") == "v"
        ttl = await redis_kv.r.ttl("test:kv:k")
        assert 0 < ttl <= 10


class TestRedisRateLimiter:
    @pytest.mark.asyncio
    async def test_limit_shared_through_redis(self):
        skip_if_no_redis()
        storage = new_rate_storage(
            "redis", redis_url="redis://127.0.0.1:6379"
        )
        item = RateLimitItemPerSecond(2, 60, namespace=NAMESPACE)
        first, second = RateLimiter(storage), RateLimiter(storage)
        await first.strategy.clear(item, "test-login", "10.0.0.1")

        assert await first.allow("test-login", "10.0.0.1", 2, 60)
        assert await second.allow("test-login", "10.0.0.1", 2, 60)
        with pytest.raises(TooManyRequests):
            await first.check("test-login", "10.0.0.1", 2, 60)
        await first.strategy.clear(item, "test-login", "10.0.0.1")
