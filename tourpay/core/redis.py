"""
Redis connection management and shared rate-limit counters

Rate-limit windows live in Redis rather than process memory so any number
of stateless API instances enforce the same per-user limits.
"""

import redis.asyncio as redis
from redis.commands.core import AsyncScript
from typing import Optional, Tuple
import asyncio
import enum
import logging
import time
import uuid

from tourpay.config import settings

logger = logging.getLogger(__name__)


class CircuitBreakerOpenError(Exception):
    """Raised when calls are short-circuited"""


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops hammering an unavailable Redis.

    After `failure_threshold` consecutive failures calls are refused for
    `recovery_timeout` seconds, then up to `half_open_max_calls` trial calls
    decide whether to close again.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0, half_open_max_calls: int = 3):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.trial_calls = 0
        self._lock = asyncio.Lock()

    async def _admit(self):
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if time.monotonic() - self.opened_at < self.recovery_timeout:
                    raise CircuitBreakerOpenError("Circuit breaker is open")
                self.state = CircuitState.HALF_OPEN
                self.trial_calls = 0

            if self.state == CircuitState.HALF_OPEN:
                if self.trial_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError("Half-open call limit exceeded")
                self.trial_calls += 1

    async def _record(self, ok: bool):
        async with self._lock:
            if ok:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                return

            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning("Redis circuit opened", extra={"failures": self.failure_count})
                self.state = CircuitState.OPEN
                self.opened_at = time.monotonic()

    async def call(self, func, *args, **kwargs):
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record(False)
            raise
        await self._record(True)
        return result


# Sliding window over a sorted set of request timestamps (ms).
# Returns {limited, count}; a request is only recorded when admitted.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2]) * 1000
local now_ms = tonumber(ARGV[3])

redis.call("ZREMRANGEBYSCORE", key, 0, now_ms - window_ms)
local count = redis.call("ZCARD", key)
if count >= limit then
    return {1, count}
end

redis.call("ZADD", key, now_ms, ARGV[4])
redis.call("PEXPIRE", key, window_ms + 1000)
return {0, count + 1}
"""


class RedisManager:
    """
    Owns the Redis client and the rate-limit script
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.client: Optional[redis.Redis] = None
        self.circuit_breaker = CircuitBreaker()
        self._sliding_window: Optional[AsyncScript] = None

    async def connect(self):
        """Open the pool and fail fast if Redis does not answer"""
        self.client = redis.from_url(
            self.url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True
        )
        self._sliding_window = self.client.register_script(SLIDING_WINDOW_SCRIPT)
        try:
            await self.client.ping()
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise
        logger.info("Redis connection established")

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None
            self._sliding_window = None
            logger.info("Redis connection closed")

    async def get_client(self) -> redis.Redis:
        if not self.client:
            await self.connect()
        return self.client

    async def is_rate_limited(self, key: str, limit: int, window: int = 60) -> Tuple[bool, int]:
        """
        Count one request against `key` and report whether it is over `limit`
        within the last `window` seconds.

        Fails open: when Redis is unreachable the request is allowed.
        """
        try:
            await self.get_client()
            limited, count = await self.circuit_breaker.call(self._count_request, f"rate:{key}", limit, window)
        except Exception as e:
            logger.error(f"Rate limit check failed for {key}: {e}")
            return False, 0
        return bool(limited), int(count)

    async def _count_request(self, rate_key: str, limit: int, window: int):
        seconds, micros = await self.client.time()
        now_ms = seconds * 1000 + micros // 1000
        return await self._sliding_window(keys=[rate_key], args=[limit, window, now_ms, uuid.uuid4().hex])


redis_manager = RedisManager()


async def init_redis():
    await redis_manager.connect()


async def close_redis():
    await redis_manager.close()
