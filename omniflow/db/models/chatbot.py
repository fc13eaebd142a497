"""
Chatbot Flow Graph - chatbots, nodes and directed edges
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Boolean, ForeignKey

from omniflow.db.database import Base, generate_uuid, utcnow


class ChatbotTriggerType(str, enum.Enum):
    KEYWORD = "keyword"
    ALWAYS = "always"
    SCHEDULE = "schedule"


class FlowNodeType(str, enum.Enum):
    START = "start"
    MESSAGE = "message"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"
    END = "end"


class Chatbot(Base):
    """Flow definition, optionally bound to one channel"""

    __tablename__ = "chatbots"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    channel_id = Column(String(36), ForeignKey("channels.id"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)

    trigger_type = Column(String(20), nullable=False, default=ChatbotTriggerType.KEYWORD.value)
    trigger_config = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FlowNode(Base):
    """Graph node. ``config`` is a type-specific parameter bag."""

    __tablename__ = "flow_nodes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    chatbot_id = Column(String(36), ForeignKey("chatbots.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    name = Column(String(200), nullable=True)
    config = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FlowEdge(Base):
    """Directed edge. An empty/absent ``condition`` marks the fallback edge."""

    __tablename__ = "flow_edges"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    chatbot_id = Column(String(36), ForeignKey("chatbots.id"), nullable=False, index=True)
    source_id = Column(String(36), ForeignKey("flow_nodes.id"), nullable=False, index=True)
    target_id = Column(String(36), ForeignKey("flow_nodes.id"), nullable=False)
    label = Column(String(200), nullable=True)
    # {"field": "_lastUserMessage", "operator": "equals", "value": "1"}
    condition = Column(JSON, nullable=True)
    # סדר הערכה של קשתות יוצאות מאותו צומת
    position = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
