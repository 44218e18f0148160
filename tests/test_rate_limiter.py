import threading
from unittest.mock import AsyncMock, patch

import pytest

from app.services.rate_limiter import MemoryRateLimitStore, RedisRateLimitStore, WebhookRateLimiter


class FakeRedis:
    def __init__(self):
        self.counts = {}
        self.ttls = {}

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def ttl(self, key):
        return self.ttls.get(key, -1)


class BrokenRedis:
    async def incr(self, key):
        raise ConnectionError("redis down")


class FlakyExpireRedis(FakeRedis):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def expire(self, key, seconds):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("redis timeout")
        return await super().expire(key, seconds)


class TestMemoryRateLimitStore:
    def test_allows_up_to_limit_then_rejects(self):
        store = MemoryRateLimitStore()

        results = [store.hit("k", 3, 60, now=1000.0) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.count for r in results[:3]] == [1, 2, 3]
        assert results[3].count == 3
        assert results[3].retry_after == 60

    def test_rejection_does_not_increment(self):
        store = MemoryRateLimitStore()
        store.hit("k", 1, 60, now=1000.0)

        store.hit("k", 1, 60, now=1001.0)
        result = store.hit("k", 1, 60, now=1002.0)

        assert result.allowed is False
        assert result.count == 1
        assert result.retry_after == 58

    def test_window_resets_after_expiry(self):
        store = MemoryRateLimitStore()
        store.hit("k", 1, 60, now=1000.0)
        assert store.hit("k", 1, 60, now=1059.0).allowed is False

        result = store.hit("k", 1, 60, now=1060.0)

        assert result.allowed is True
        assert result.count == 1

    def test_window_is_fixed_not_sliding(self):
        store = MemoryRateLimitStore()
        store.hit("k", 2, 60, now=1000.0)
        store.hit("k", 2, 60, now=1059.0)

        assert store.hit("k", 2, 60, now=1061.0).allowed is True
        assert store.hit("k", 2, 60, now=1062.0).allowed is True
        assert store.hit("k", 2, 60, now=1063.0).allowed is False

    def test_keys_are_independent(self):
        store = MemoryRateLimitStore()
        store.hit("a", 1, 60, now=1000.0)

        assert store.hit("b", 1, 60, now=1000.0).allowed is True
        assert store.hit("a", 1, 60, now=1000.0).allowed is False

    def test_retry_after_is_at_least_one_second(self):
        store = MemoryRateLimitStore()
        store.hit("k", 1, 60, now=1000.0)

        assert store.hit("k", 1, 60, now=1059.9).retry_after == 1

    def test_concurrent_hits_admit_exactly_limit(self):
        store = MemoryRateLimitStore()
        limit = 25
        admitted = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(10):
                if store.hit("shared", limit, 60, now=1000.0).allowed:
                    admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(admitted) == limit

    def test_expired_windows_are_purged(self):
        store = MemoryRateLimitStore()
        with patch("app.services.rate_limiter._PURGE_THRESHOLD", 3):
            for i in range(3):
                store.hit(f"k{i}", 1, 10, now=1000.0)
            store.hit("fresh", 1, 10, now=2000.0)

        assert set(store._windows) == {"fresh"}

    def test_purge_runs_safely_alongside_new_windows(self):
        store = MemoryRateLimitStore()
        errors = []
        barrier = threading.Barrier(8)

        def worker(worker_id):
            barrier.wait()
            try:
                for i in range(300):
                    store.hit(f"w{worker_id}-{i}", 1, 1, now=1000.0 + i)
            except RuntimeError as exc:
                errors.append(exc)

        with patch("app.services.rate_limiter._PURGE_THRESHOLD", 10):
            threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert errors == []

    def test_reset(self):
        store = MemoryRateLimitStore()
        store.hit("k", 1, 60, now=1000.0)

        store.reset()

        assert store.hit("k", 1, 60, now=1000.0).allowed is True


class TestRedisRateLimitStore:
    @pytest.mark.asyncio
    async def test_sets_expiry_on_first_hit(self):
        fake = FakeRedis()
        store = RedisRateLimitStore(fake)

        result = await store.hit("k", 2, 30)

        assert result.allowed is True
        assert result.count == 1
        assert fake.ttls == {"k": 30}

    @pytest.mark.asyncio
    async def test_rejects_over_limit_with_ttl(self):
        fake = FakeRedis()
        store = RedisRateLimitStore(fake)
        await store.hit("k", 2, 30)
        await store.hit("k", 2, 30)

        result = await store.hit("k", 2, 30)

        assert result.allowed is False
        assert result.count == 3
        assert result.retry_after == 30

    @pytest.mark.asyncio
    async def test_retry_after_falls_back_to_window_without_ttl(self):
        redis_client = AsyncMock()
        redis_client.incr.return_value = 5
        redis_client.ttl.return_value = -1
        store = RedisRateLimitStore(redis_client)

        result = await store.hit("k", 2, 45)

        assert result.allowed is False
        assert result.retry_after == 45
        redis_client.expire.assert_awaited_once_with("k", 45)

    @pytest.mark.asyncio
    async def test_rejection_within_ttl_does_not_touch_expiry(self):
        fake = FakeRedis()
        store = RedisRateLimitStore(fake)
        await store.hit("k", 1, 30)
        fake.ttls["k"] = 12

        result = await store.hit("k", 1, 30)

        assert result.retry_after == 12
        assert fake.ttls == {"k": 12}


class TestWebhookRateLimiter:
    @pytest.mark.asyncio
    async def test_uses_memory_without_redis(self):
        limiter = WebhookRateLimiter()

        results = [await limiter.hit("k", 2, 60) for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]

    @pytest.mark.asyncio
    async def test_uses_redis_client(self):
        fake = FakeRedis()
        limiter = WebhookRateLimiter(redis_client=fake)

        await limiter.hit("k", 2, 60)

        assert fake.counts == {"k": 1}
        assert limiter.memory._windows == {}

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_when_redis_fails(self):
        limiter = WebhookRateLimiter(redis_client=BrokenRedis())

        first = await limiter.hit("k", 1, 60)
        second = await limiter.hit("k", 1, 60)

        assert first.allowed is True
        assert second.allowed is False

    @pytest.mark.asyncio
    async def test_warns_once_on_redis_failure(self):
        limiter = WebhookRateLimiter(redis_client=BrokenRedis())

        with patch("app.services.rate_limiter.logger") as mock_logger:
            await limiter.hit("k", 5, 60)
            await limiter.hit("k", 5, 60)

        assert mock_logger.warning.call_count == 1

    @pytest.mark.asyncio
    async def test_key_without_ttl_gets_expiry_on_rejection(self):
        fake = FlakyExpireRedis(failures=1)
        limiter = WebhookRateLimiter(redis_client=fake)

        first = await limiter.hit("k", 2, 60)
        second = await limiter.hit("k", 2, 60)
        third = await limiter.hit("k", 2, 60)

        assert first.allowed is True
        assert second.allowed is True
        assert third.allowed is False
        assert third.retry_after == 60
        assert fake.ttls == {"k": 60}

        # key expires in redis
        fake.counts.pop("k")
        fake.ttls.pop("k")
        after = await limiter.hit("k", 2, 60)

        assert after.allowed is True
        assert after.count == 1
