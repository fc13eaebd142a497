"""
CRM Collaborator Models

Channels, contacts, conversations, messages, tags, deals and notifications.
CRUD for these lives in other services; the engines only read routing data
and perform the narrow mutations their actions need.
"""
import enum
from sqlalchemy import Column, String, DateTime, JSON, Text, ForeignKey, UniqueConstraint

from omniflow.db.database import Base, generate_uuid, utcnow


class ChannelType(str, enum.Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    MESSENGER = "messenger"
    TELEGRAM = "telegram"
    EMAIL = "email"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageSendStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Channel(Base):
    __tablename__ = "channels"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    type = Column(String(30), nullable=False)
    # "evolution" ל-WhatsApp לא רשמי, "meta" ל-Cloud API
    provider = Column(String(30), nullable=True)
    external_id = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    company = Column(String(200), nullable=True)
    external_id = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    channel_id = Column(String(36), ForeignKey("channels.id"), nullable=False)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False)
    assigned_user_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="open")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(String(20), nullable=False, default=MessageDirection.OUTBOUND.value)
    content = Column(Text, nullable=True)
    media_url = Column(String(1000), nullable=True)
    status = Column(String(20), nullable=False, default=MessageSendStatus.PENDING.value)
    # "automation" / "chatbot" / "agent"
    sent_by = Column(String(20), nullable=True)
    extra = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(100), nullable=False)


class ContactTag(Base):
    __tablename__ = "contact_tags"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    tag_id = Column(String(36), ForeignKey("tags.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("contact_id", "tag_id", name="uq_contact_tags_contact_tag"),
    )


class Deal(Base):
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=True)
    pipeline_id = Column(String(36), nullable=True)
    stage_id = Column(String(36), nullable=True)
    title = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
