"""
Chatbot Execution Model - the execution ledger

One row per (chatbot, conversation): where that conversation is in the flow,
its accumulated variables and message history.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, ForeignKey, Index, UniqueConstraint

from omniflow.db.database import Base, generate_uuid, utcnow


class ExecutionStatus(str, enum.Enum):
    RUNNING = "running"
    WAITING = "waiting"  # ממתין לתשובת משתמש
    PAUSED = "paused"  # ממתין לטיימר של delay node
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = (
    ExecutionStatus.RUNNING.value,
    ExecutionStatus.WAITING.value,
    ExecutionStatus.PAUSED.value,
)
TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.ERROR.value,
)


class ChatbotExecution(Base):
    """Resumable state of one chatbot running against one conversation"""

    __tablename__ = "chatbot_executions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    chatbot_id = Column(String(36), ForeignKey("chatbots.id"), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False)
    tenant_id = Column(String(36), nullable=False, index=True)
    # נשמר כדי שחידוש אחרי restart לא יצטרך לשחזר את הערוץ מהשיחה
    channel_id = Column(String(36), nullable=True)

    current_node_id = Column(String(36), ForeignKey("flow_nodes.id"), nullable=True)
    variables = Column(JSON, nullable=False, default=dict)
    # [{"role": "user" | "bot", "content": ..., "timestamp": ...}]
    message_history = Column(JSON, nullable=False, default=list)

    status = Column(String(20), nullable=False, default=ExecutionStatus.RUNNING.value)
    # optimistic concurrency token: כל כתיבה מותנית בגרסה הצפויה ומעלה אותה
    version = Column(Integer, nullable=False, default=1)
    error = Column(Text, nullable=True)

    started_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("chatbot_id", "conversation_id", name="uq_chatbot_executions_chatbot_conversation"),
        Index("ix_chatbot_executions_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
