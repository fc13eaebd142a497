"""
Admin Endpoints: מצב executions של chatbots ולוגים של אוטומציות ללא גישה ישירה ל-DB.

1. צפייה ב-execution ואיפוס ידני של execution תקוע
2. לוג הרצות של אוטומציה (עם pagination)
3. סטטיסטיקות אוטומציות לפי tenant
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.api.dependencies.admin_auth import require_admin_api_key
from omniflow.db.database import get_db
from omniflow.state_machine.ledger import ExecutionLedger
from omniflow.state_machine.states import OPERATOR_STATUSES
from omniflow.domain.services.automation_log_service import AutomationLogService

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class ExecutionResponse(BaseModel):
    """מצב ledger של execution בודד"""
    id: str
    chatbot_id: str
    conversation_id: str
    contact_id: str
    tenant_id: str
    channel_id: str | None
    current_node_id: str | None
    status: str
    version: int
    variables: dict[str, Any]
    message_history: list[dict]
    error: str | None


class ForceStatusRequest(BaseModel):
    """בקשה לסיום ידני של execution"""
    status: str
    error: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        allowed = {s.value for s in OPERATOR_STATUSES}
        if v not in allowed:
            raise ValueError(f"status חייב להיות אחד מ: {', '.join(sorted(allowed))}")
        return v


class AutomationLogResponse(BaseModel):
    """רשומת הרצה בודדת של אוטומציה"""
    id: str
    automation_id: str
    tenant_id: str
    triggered_by: dict[str, Any] | None
    actions_executed: list[dict] | None
    status: str
    error_message: str | None
    duration_ms: int | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AutomationLogPageResponse(BaseModel):
    data: list[AutomationLogResponse]
    pagination: PaginationResponse


class AutomationStatsResponse(BaseModel):
    """סטטיסטיקות אוטומציות של tenant"""
    total_automations: int = 0
    active_automations: int = 0
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    partial_executions: int = 0


# ─── 1. Executions ───────────────────────────────────────────────────────────

@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionResponse,
    summary="מצב execution של chatbot",
    responses={404: {"description": "execution לא נמצא"}, **_AUTH_RESPONSES},
)
async def get_execution(
    execution_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> ExecutionResponse:
    ctx = await ExecutionLedger(db).load(execution_id)
    return ExecutionResponse(**ctx.to_dict())


@router.post(
    "/executions/{execution_id}/force-status",
    response_model=ExecutionResponse,
    summary="סיום ידני של execution תקוע",
    description=(
        "מעביר execution לסטטוס סופי (completed / error), מעלה את ה-version "
        "ומבטל טיימרים ממתינים. walk שרץ במקביל יכשל בכתיבה הבאה שלו."
    ),
    responses={404: {"description": "execution לא נמצא"}, **_AUTH_RESPONSES},
)
async def force_execution_status(
    execution_id: str,
    request: ForceStatusRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> ExecutionResponse:
    ctx = await ExecutionLedger(db).force_status(execution_id, request.status, request.error)
    return ExecutionResponse(**ctx.to_dict())


# ─── 2. Automation logs ──────────────────────────────────────────────────────

@router.get(
    "/automations/stats",
    response_model=AutomationStatsResponse,
    summary="סטטיסטיקות אוטומציות",
    responses=_AUTH_RESPONSES,
)
async def get_automation_stats(
    tenant_id: str = Query(..., description="מזהה tenant"),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> AutomationStatsResponse:
    stats = await AutomationLogService(db).stats(tenant_id)
    return AutomationStatsResponse(**stats)


@router.get(
    "/automations/{automation_id}/logs",
    response_model=AutomationLogPageResponse,
    summary="לוג הרצות של אוטומציה",
    description="הרצות מהחדשה לישנה, עם pagination.",
    responses=_AUTH_RESPONSES,
)
async def get_automation_logs(
    automation_id: str,
    tenant_id: str = Query(..., description="מזהה tenant"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> AutomationLogPageResponse:
    result = await AutomationLogService(db).list_logs(
        automation_id, tenant_id, page=page, limit=limit
    )
    return AutomationLogPageResponse(
        data=[AutomationLogResponse.model_validate(row) for row in result["data"]],
        pagination=PaginationResponse(**result["pagination"]),
    )
