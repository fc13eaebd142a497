"""
Outbox Message Model - Transactional Outbox Pattern

Outbound send jobs are written in the same transaction as the message row and
relayed to the delivery worker by a periodic task.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON

from omniflow.db.database import Base, generate_uuid, utcnow


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Pending delivery jobs with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    conversation_id = Column(String(36), nullable=True)
    channel_id = Column(String(36), nullable=True)
    message_id = Column(String(36), nullable=True)  # השורה ב-messages שהעבודה מוסרת

    job_type = Column(String(50), nullable=False, default="send_message")
    payload = Column(JSON, nullable=False)

    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
