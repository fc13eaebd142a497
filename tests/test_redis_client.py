"""
בדיקות ל-omniflow/core/redis_client.py: ה-mutex של executions
"""
import pytest

from omniflow.core.exceptions import ConcurrentExecutionError
from omniflow.core.redis_client import ExecutionLock, _mask_redis_url


class TestExecutionLock:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, fake_redis) -> None:
        lock = ExecutionLock("bot-1", "conv-1", ttl_seconds=30)

        async with lock:
            assert await fake_redis.get(lock.key) == lock._token
            assert fake_redis._ttls[lock.key] == 30

        assert await fake_redis.get(lock.key) is None

    @pytest.mark.asyncio
    async def test_busy_lock_raises_after_wait(self, fake_redis) -> None:
        holder = ExecutionLock("bot-1", "conv-1")
        await holder.acquire()

        contender = ExecutionLock("bot-1", "conv-1", wait_seconds=0.1, poll_interval=0.02)
        with pytest.raises(ConcurrentExecutionError):
            await contender.acquire()

        await holder.release()

    @pytest.mark.asyncio
    async def test_different_conversations_do_not_block(self, fake_redis) -> None:
        async with ExecutionLock("bot-1", "conv-1"):
            async with ExecutionLock("bot-1", "conv-2", wait_seconds=0):
                pass

    @pytest.mark.asyncio
    async def test_release_keeps_foreign_token(self, fake_redis) -> None:
        lock = ExecutionLock("bot-1", "conv-1")
        await lock.acquire()
        # הנעילה פגה ונתפסה ע"י worker אחר
        await fake_redis.set(lock.key, "someone-else")

        await lock.release()

        assert await fake_redis.get(lock.key) == "someone-else"


class TestMaskRedisUrl:
    @pytest.mark.unit
    def test_masks_password(self) -> None:
        assert _mask_redis_url("redis://:secret@cache:6379/0") == "redis://:****@cache:6379/0"

    @pytest.mark.unit
    def test_url_without_password_unchanged(self) -> None:
        assert _mask_redis_url("redis://localhost:6379/0") == "redis://localhost:6379/0"
