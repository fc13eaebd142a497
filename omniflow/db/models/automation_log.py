"""
Automation Execution Log - append-only audit of every firing attempt
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, ForeignKey

from omniflow.db.database import Base, generate_uuid, utcnow


class AutomationLogStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class AutomationExecutionLog(Base):
    """One row per firing. Never updated or deleted by the engine."""

    __tablename__ = "automation_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    automation_id = Column(String(36), ForeignKey("automations.id"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)

    # snapshot של ה-context שהפעיל את האוטומציה
    triggered_by = Column(JSON, nullable=False, default=dict)
    # [{"action": "add_tag", "status": "success"}, {"action": ..., "status": "error", "error": ...}]
    actions_executed = Column(JSON, nullable=False, default=list)

    status = Column(String(20), nullable=False, default=AutomationLogStatus.SUCCESS.value)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
