"""
Outbox Service - Transactional Outbox Pattern for outbound delivery

Send jobs are stored in the outbox table inside the caller's transaction,
so a job exists if and only if the message row it delivers was committed.
A periodic worker relays pending jobs to the external delivery task.
"""
from __future__ import annotations

from datetime import timedelta
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select

from omniflow.core.config import settings
from omniflow.db.database import generate_uuid, utcnow
from omniflow.db.models.outbox_message import OutboxMessage, OutboxStatus
from omniflow.domain.services.collaborators import SendQueue


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # האם 2**retry_count >= ceil(max/base): בלי לחשב את החזקה עצמה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


class OutboxService(SendQueue):
    """
    Outbound delivery queue backed by the outbox table.

    enqueue_send() only adds the row; committing is the caller's unit of work.
    The mark_* methods are used by the relay worker and commit themselves.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue_send(self, job: dict) -> OutboxMessage:
        message = OutboxMessage(
            id=generate_uuid(),
            tenant_id=job["tenantId"],
            conversation_id=job.get("conversationId"),
            channel_id=job.get("channelId"),
            message_id=job.get("messageId"),
            job_type="send_message",
            payload=job,
            status=OutboxStatus.PENDING.value,
            retry_count=0,
            max_retries=settings.OUTBOX_MAX_RETRIES,
        )
        self.db.add(message)
        return message

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending jobs whose backoff window (if any) has passed, oldest first"""
        now = utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == OutboxStatus.PENDING.value,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, outbox_id: str) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == outbox_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, outbox_id: str) -> None:
        message = await self._get(outbox_id)
        if message:
            message.status = OutboxStatus.PROCESSING.value
            await self.db.commit()

    async def mark_as_sent(self, outbox_id: str) -> None:
        message = await self._get(outbox_id)
        if message:
            message.status = OutboxStatus.SENT.value
            message.processed_at = utcnow()
            await self.db.commit()

    async def mark_as_failed(self, outbox_id: str, error: str) -> None:
        """Count the failure; reschedule with backoff or give up after max_retries"""
        message = await self._get(outbox_id)
        if not message:
            return

        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = OutboxStatus.FAILED.value
            message.processed_at = utcnow()
        else:
            message.status = OutboxStatus.PENDING.value
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)

        await self.db.commit()
