"""
Flow Timer Service - durable timers for delay nodes

Timers live in the flow_timers table and are claimed by a periodic worker,
so a pending delay survives a process restart.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.config import settings
from omniflow.core.logging import get_logger
from omniflow.db.database import generate_uuid, utcnow
from omniflow.db.models.flow_timer import FlowTimer, FlowTimerStatus

logger = get_logger(__name__)


class FlowTimerService:
    """
    schedule() and cancel_for_execution() only stage changes (the ledger write
    commits them). claim_due(), complete(), release() and cleanup() commit
    themselves.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def schedule(
        self,
        execution_id: str,
        node_id: str,
        due_at: datetime,
        expected_version: Optional[int] = None,
    ) -> FlowTimer:
        timer = FlowTimer(
            id=generate_uuid(),
            execution_id=execution_id,
            node_id=node_id,
            due_at=due_at,
            status=FlowTimerStatus.PENDING.value,
            expected_version=expected_version,
        )
        self.db.add(timer)
        return timer

    async def claim_due(self, limit: int = 100, now: Optional[datetime] = None) -> List[dict]:
        """
        Lease due pending timers and return them as plain dicts.

        A claimed timer stays pending under a lease until the poller calls
        complete() or release(). If the poller dies first, the lease runs out
        and the next poll claims the timer again. The lease filter on the
        UPDATE makes a timer claimable once even when two pollers overlap.
        """
        now = now or utcnow()
        claimable = (
            FlowTimer.status == FlowTimerStatus.PENDING.value,
            or_(FlowTimer.locked_until.is_(None), FlowTimer.locked_until <= now),
        )
        result = await self.db.execute(
            select(FlowTimer.id)
            .where(*claimable, FlowTimer.due_at <= now)
            .order_by(FlowTimer.due_at)
            .limit(limit)
        )
        candidate_ids = list(result.scalars().all())

        lease_until = now + timedelta(seconds=settings.FLOW_TIMER_LEASE_SECONDS)
        claimed: List[dict] = []
        for timer_id in candidate_ids:
            updated = await self.db.execute(
                update(FlowTimer)
                .where(FlowTimer.id == timer_id, *claimable)
                .values(locked_until=lease_until)
            )
            if updated.rowcount:
                row = (await self.db.execute(
                    select(FlowTimer.execution_id, FlowTimer.node_id, FlowTimer.expected_version)
                    .where(FlowTimer.id == timer_id)
                )).one()
                claimed.append({
                    "timer_id": timer_id,
                    "execution_id": row.execution_id,
                    "node_id": row.node_id,
                    "expected_version": row.expected_version,
                })
        await self.db.commit()
        return claimed

    async def complete(self, timer_id: str) -> bool:
        """Mark a claimed timer fired. A cancelled timer stays cancelled."""
        result = await self.db.execute(
            update(FlowTimer)
            .where(FlowTimer.id == timer_id, FlowTimer.status == FlowTimerStatus.PENDING.value)
            .values(status=FlowTimerStatus.FIRED.value, fired_at=utcnow(), locked_until=None)
        )
        await self.db.commit()
        return bool(result.rowcount)

    async def release(self, timer_id: str) -> bool:
        """Drop the lease so the next poll retries the timer"""
        result = await self.db.execute(
            update(FlowTimer)
            .where(FlowTimer.id == timer_id, FlowTimer.status == FlowTimerStatus.PENDING.value)
            .values(locked_until=None)
        )
        await self.db.commit()
        released = bool(result.rowcount)
        if released:
            logger.warning("Flow timer released for retry", extra_data={"timer_id": timer_id})
        return released

    async def cancel_for_execution(self, execution_id: str) -> int:
        """Cancel pending timers of one execution (not committed here)"""
        result = await self.db.execute(
            update(FlowTimer)
            .where(
                FlowTimer.execution_id == execution_id,
                FlowTimer.status == FlowTimerStatus.PENDING.value,
            )
            .values(status=FlowTimerStatus.CANCELLED.value)
        )
        return result.rowcount or 0

    async def cleanup(self, retention_days: int) -> int:
        """Delete fired/cancelled timers older than the retention window"""
        cutoff = utcnow() - timedelta(days=retention_days)
        result = await self.db.execute(
            delete(FlowTimer).where(
                FlowTimer.status.in_([FlowTimerStatus.FIRED.value, FlowTimerStatus.CANCELLED.value]),
                FlowTimer.created_at < cutoff,
            )
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Flow timers cleaned up", extra_data={"deleted": deleted})
        return deleted
