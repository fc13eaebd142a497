"""
Automation Log Service - read side of the automation audit log
"""
import math

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.db.models.automation import Automation, AutomationStatus
from omniflow.db.models.automation_log import AutomationExecutionLog, AutomationLogStatus


class AutomationLogService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_logs(
        self,
        automation_id: str,
        tenant_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        """Newest first, with a pagination block"""
        page = max(page, 1)
        limit = max(limit, 1)
        filters = (
            AutomationExecutionLog.automation_id == automation_id,
            AutomationExecutionLog.tenant_id == tenant_id,
        )

        result = await self.db.execute(
            select(AutomationExecutionLog)
            .where(*filters)
            .order_by(AutomationExecutionLog.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        rows = list(result.scalars().all())

        total = (await self.db.execute(
            select(func.count()).select_from(AutomationExecutionLog).where(*filters)
        )).scalar_one()

        return {
            "data": rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def stats(self, tenant_id: str) -> dict:
        automation_counts = (await self.db.execute(
            select(
                func.count(Automation.id),
                func.coalesce(
                    func.sum(case((Automation.status == AutomationStatus.ACTIVE.value, 1), else_=0)), 0
                ),
            ).where(Automation.tenant_id == tenant_id)
        )).one()

        def _count_status(status: AutomationLogStatus):
            return func.coalesce(
                func.sum(case((AutomationExecutionLog.status == status.value, 1), else_=0)), 0
            )

        execution_counts = (await self.db.execute(
            select(
                func.count(AutomationExecutionLog.id),
                _count_status(AutomationLogStatus.SUCCESS),
                _count_status(AutomationLogStatus.ERROR),
                _count_status(AutomationLogStatus.PARTIAL),
            ).where(AutomationExecutionLog.tenant_id == tenant_id)
        )).one()

        return {
            "total_automations": int(automation_counts[0]),
            "active_automations": int(automation_counts[1]),
            "total_executions": int(execution_counts[0]),
            "successful_executions": int(execution_counts[1]),
            "failed_executions": int(execution_counts[2]),
            "partial_executions": int(execution_counts[3]),
        }
