"""Fixed-window rate limiting for inbound webhooks.

Counters live in Redis when ``REDIS_URL`` is configured, otherwise in process.
Windows are fixed (not sliding): a burst straddling a window boundary can pass
up to twice the limit.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis_async

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("rate_limiter")

_PURGE_THRESHOLD = 5000


@dataclass
class RateLimitResult:
    allowed: bool
    count: int
    retry_after: Optional[int] = None


class MemoryRateLimitStore:
    """In-process counters; check-and-increment is atomic per key."""

    def __init__(self) -> None:
        self._windows: dict[str, dict] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _purge_expired(self, now_ts: float) -> None:
        with self._registry_lock:
            if len(self._windows) < _PURGE_THRESHOLD:
                return
            # windows are created under per-key locks only, so iterate a snapshot
            expired = [key for key, item in list(self._windows.items()) if item["expires_at"] <= now_ts]
            for key in expired:
                lock = self._locks.get(key)
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                self._windows.pop(key, None)
                self._locks.pop(key, None)
                if lock is not None:
                    lock.release()

    def hit(self, key: str, max_requests: int, window_seconds: int, now: Optional[float] = None) -> RateLimitResult:
        now_ts = time.time() if now is None else now
        self._purge_expired(now_ts)

        while True:
            lock = self._lock_for(key)
            with lock:
                # A purge may have dropped this lock between lookup and acquire.
                if self._locks.get(key) is lock:
                    return self._hit_locked(key, max_requests, window_seconds, now_ts)

    def _hit_locked(self, key: str, max_requests: int, window_seconds: int, now_ts: float) -> RateLimitResult:
        window = self._windows.get(key)
        if not window or window["expires_at"] <= now_ts:
            window = {"count": 0, "expires_at": now_ts + window_seconds}
            self._windows[key] = window

        if window["count"] >= max_requests:
            retry_after = max(1, int(window["expires_at"] - now_ts))
            return RateLimitResult(allowed=False, count=window["count"], retry_after=retry_after)

        window["count"] += 1
        return RateLimitResult(allowed=True, count=window["count"])

    def reset(self) -> None:
        with self._registry_lock:
            self._windows.clear()
            self._locks.clear()


class RedisRateLimitStore:
    """Redis counters: INCR is the atomic check, EXPIRE is set on window creation.

    A key left without a TTL (EXPIRE failed after INCR) gets one on its next
    rejection, so the window still closes.
    """

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> RateLimitResult:
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, window_seconds)
        if count > max_requests:
            ttl = await self._redis.ttl(key)
            if ttl == -1:
                await self._redis.expire(key, window_seconds)
            retry_after = ttl if ttl and ttl > 0 else window_seconds
            return RateLimitResult(allowed=False, count=count, retry_after=retry_after)
        return RateLimitResult(allowed=True, count=count)


class WebhookRateLimiter:
    def __init__(self, redis_client=None, memory_store: Optional[MemoryRateLimitStore] = None) -> None:
        self._redis_client = redis_client
        self._redis_url: Optional[str] = None
        self._redis_cached = None
        self.memory = memory_store or MemoryRateLimitStore()
        self._redis_warned = False

    def _get_redis(self):
        if self._redis_client is not None:
            return self._redis_client
        redis_url = settings.redis_url
        if not redis_url:
            return None
        if self._redis_url != redis_url:
            self._redis_url = redis_url
            timeout = settings.redis_socket_timeout_seconds
            self._redis_cached = redis_async.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=timeout,
                socket_timeout=timeout,
            )
        return self._redis_cached

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> RateLimitResult:
        redis_client = self._get_redis()
        if redis_client is None:
            return self.memory.hit(key, max_requests, window_seconds)

        try:
            return await RedisRateLimitStore(redis_client).hit(key, max_requests, window_seconds)
        except Exception as exc:
            if not self._redis_warned:
                logger.warning(
                    "Webhook rate limit redis unavailable, using in-process counters",
                    extra={"context": {"key": key, "error": str(exc)}},
                )
                self._redis_warned = True
            return self.memory.hit(key, max_requests, window_seconds)


webhook_rate_limiter = WebhookRateLimiter()
