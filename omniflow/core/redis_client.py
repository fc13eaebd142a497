"""
Redis Client: async singleton, plus the per-execution mutex built on it.

משתמש ב-REDIS_URL מהקונפיגורציה (ברירת מחדל: redis://localhost:6379/0).
"""
import asyncio
import secrets
import time
from urllib.parse import urlparse

import redis.asyncio as aioredis

from omniflow.core.config import settings
from omniflow.core.exceptions import ConcurrentExecutionError
from omniflow.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis: לקרוא ב-app shutdown ובסיום task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class ExecutionLock:
    """
    Per-(chatbot, conversation) mutex around a flow walk.

    SET NX EX with a random token; release deletes the key only while it still
    holds our token, so a lock that expired and was re-acquired by another
    worker is left alone.

    Usage:
        async with ExecutionLock(chatbot_id, conversation_id):
            ...
    """

    KEY_PREFIX = "flow_exec_lock"

    def __init__(
        self,
        chatbot_id: str,
        conversation_id: str,
        *,
        ttl_seconds: int | None = None,
        wait_seconds: float | None = None,
        poll_interval: float = 0.05,
    ):
        self.key = f"{self.KEY_PREFIX}:{chatbot_id}:{conversation_id}"
        self.ttl_seconds = ttl_seconds or settings.EXECUTION_LOCK_TTL_SECONDS
        self.wait_seconds = (
            settings.EXECUTION_LOCK_WAIT_SECONDS if wait_seconds is None else wait_seconds
        )
        self.poll_interval = poll_interval
        self._token = secrets.token_hex(16)
        self._held = False

    async def acquire(self) -> None:
        redis = await get_redis()
        deadline = time.monotonic() + self.wait_seconds
        while True:
            if await redis.set(self.key, self._token, nx=True, ex=self.ttl_seconds):
                self._held = True
                return
            if time.monotonic() >= deadline:
                logger.warning(
                    "Execution lock is busy",
                    extra_data={"key": self.key, "waited_seconds": self.wait_seconds},
                )
                raise ConcurrentExecutionError(self.key)
            await asyncio.sleep(self.poll_interval)

    async def release(self) -> None:
        if not self._held:
            return
        redis = await get_redis()
        if await redis.get(self.key) == self._token:
            await redis.delete(self.key)
        self._held = False

    async def __aenter__(self) -> "ExecutionLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
