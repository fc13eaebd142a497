"""
Flow Timer Model - durable resumption timers for delay nodes

A paused execution is resumed by a periodic worker scanning due rows, so
pending delays survive process restarts.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index

from omniflow.db.database import Base, generate_uuid, utcnow


class FlowTimerStatus(str, enum.Enum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class FlowTimer(Base):
    """Scheduled resume of one execution at one delay node"""

    __tablename__ = "flow_timers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    execution_id = Column(String(36), ForeignKey("chatbot_executions.id"), nullable=False, index=True)
    node_id = Column(String(36), nullable=False)
    due_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=FlowTimerStatus.PENDING.value)
    # גרסת ה-ledger בזמן התזמון: לזיהוי טיימרים שהתיישנו
    expected_version = Column(Integer, nullable=True)

    # lease של poller שלקח את ה-timer; pending עם lease שפג ניתן ללקיחה מחדש
    locked_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    fired_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_flow_timers_status_due", "status", "due_at"),
    )
