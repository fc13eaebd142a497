"""
Automation Model - tenant rules fired by domain events
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index

from omniflow.db.database import Base, generate_uuid, utcnow


class AutomationTriggerType(str, enum.Enum):
    MESSAGE_RECEIVED = "message_received"
    CONVERSATION_OPENED = "conversation_opened"
    CONVERSATION_RESOLVED = "conversation_resolved"
    CONTACT_CREATED = "contact_created"
    DEAL_CREATED = "deal_created"
    DEAL_STAGE_CHANGED = "deal_stage_changed"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    SCHEDULED = "scheduled"


class AutomationStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class Automation(Base):
    """Trigger + ordered conditions + ordered actions"""

    __tablename__ = "automations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    trigger_type = Column(String(40), nullable=False)
    # מבנה חופשי: המשמעות תלויה ב-trigger_type (keywords, channelIds, tagIds...)
    trigger_config = Column(JSON, nullable=False, default=dict)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)

    status = Column(String(20), nullable=False, default=AutomationStatus.DRAFT.value)
    # סדר הרצה: ערך נמוך רץ קודם
    priority = Column(Integer, nullable=False, default=0)

    run_count = Column(Integer, nullable=False, default=0)
    last_run_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_automations_tenant_trigger_status", "tenant_id", "trigger_type", "status"),
    )
