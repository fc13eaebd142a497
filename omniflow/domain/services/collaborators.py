"""
Collaborator Gateways: Dependency Inversion.

The engines depend only on these narrow interfaces. The Sql* defaults read
and mutate the CRM tables through the caller's session and never commit;
the engine that owns the unit of work decides when to commit or roll back.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.circuit_breaker import get_webhook_circuit_breaker
from omniflow.core.config import settings
from omniflow.core.exceptions import ActionError, WebhookCallError
from omniflow.core.logging import get_logger
from omniflow.db.database import generate_uuid, utcnow
from omniflow.db.models.crm import (
    Channel,
    Contact,
    ContactTag,
    Conversation,
    Deal,
    Message,
    MessageDirection,
    MessageSendStatus,
    Notification,
    Tag,
)

logger = get_logger(__name__)


def resolve_channel_type(channel: Any) -> str:
    """
    סוג הערוץ לתור השליחה:
    whatsapp + evolution → whatsapp_unofficial, whatsapp אחר → whatsapp_official
    """
    channel_type = getattr(channel, "type", None)
    if channel_type == "whatsapp":
        if getattr(channel, "provider", None) == "evolution":
            return "whatsapp_unofficial"
        return "whatsapp_official"
    return channel_type


# ── ממשקים ──


class ConversationDirectory(ABC):
    """Tenant-scoped read access to routing data, plus conversation assignment"""

    @abstractmethod
    async def find_conversation(self, conversation_id: str, tenant_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_channel(self, channel_id: str, tenant_id: str) -> Optional[Channel]:
        ...

    @abstractmethod
    async def find_contact(self, contact_id: str, tenant_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def assign_user(self, conversation_id: str, tenant_id: str, user_id: str) -> None:
        ...


class MessageStore(ABC):
    @abstractmethod
    async def create(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        media_url: Optional[str] = None,
        sent_by: str = "bot",
    ) -> Message:
        """Persist an outbound message row with status pending"""


class SendQueue(ABC):
    @abstractmethod
    async def enqueue_send(self, job: dict) -> Any:
        """
        Hand a send job to outbound delivery. At-least-once; the caller does
        not wait for delivery confirmation.
        """


class TagService(ABC):
    @abstractmethod
    async def add_tag(self, tenant_id: str, contact_id: str, tag_id: str) -> None:
        ...

    @abstractmethod
    async def remove_tag(self, tenant_id: str, contact_id: str, tag_id: str) -> None:
        ...


class DealService(ABC):
    @abstractmethod
    async def move_stage(self, tenant_id: str, deal_id: str, stage_id: str) -> None:
        ...


class NotificationService(ABC):
    @abstractmethod
    async def create(
        self,
        tenant_id: str,
        user_id: str,
        title: str,
        body: str = "",
        data: Optional[dict] = None,
    ) -> Any:
        """Fire-and-forget in-app notification"""


class WebhookClient(ABC):
    @abstractmethod
    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Optional[dict[str, str]] = None,
        payload: Optional[dict] = None,
    ) -> int:
        """
        Perform one outbound HTTP call. No retry.

        Returns:
            HTTP status code

        Raises:
            WebhookCallError: transport error or non-2xx response
            CircuitBreakerOpenError: destination host is failing
        """


# ── מימושי SQL ──


class SqlConversationDirectory(ConversationDirectory):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_conversation(self, conversation_id: str, tenant_id: str) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.id == conversation_id,
                Conversation.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_channel(self, channel_id: str, tenant_id: str) -> Optional[Channel]:
        result = await self.db.execute(
            select(Channel).where(Channel.id == channel_id, Channel.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def find_contact(self, contact_id: str, tenant_id: str) -> Optional[Contact]:
        result = await self.db.execute(
            select(Contact).where(Contact.id == contact_id, Contact.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def assign_user(self, conversation_id: str, tenant_id: str, user_id: str) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
            .values(assigned_user_id=user_id, updated_at=utcnow())
        )


class SqlMessageStore(MessageStore):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        media_url: Optional[str] = None,
        sent_by: str = "bot",
    ) -> Message:
        message = Message(
            id=generate_uuid(),
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=MessageDirection.OUTBOUND.value,
            content=content,
            media_url=media_url,
            status=MessageSendStatus.PENDING.value,
            sent_by=sent_by,
        )
        self.db.add(message)
        return message


class SqlTagService(TagService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_tag(self, tenant_id: str, contact_id: str, tag_id: str) -> None:
        tag_result = await self.db.execute(
            select(Tag.id).where(Tag.id == tag_id, Tag.tenant_id == tenant_id)
        )
        if tag_result.scalar_one_or_none() is None:
            raise ActionError("add_tag", f"Tag not found: {tag_id}", details={"tag_id": tag_id})

        # כבר מתויג: no-op
        existing = await self.db.execute(
            select(ContactTag.id).where(
                ContactTag.contact_id == contact_id,
                ContactTag.tag_id == tag_id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return
        self.db.add(ContactTag(id=generate_uuid(), contact_id=contact_id, tag_id=tag_id))

    async def remove_tag(self, tenant_id: str, contact_id: str, tag_id: str) -> None:
        await self.db.execute(
            delete(ContactTag).where(
                ContactTag.contact_id == contact_id,
                ContactTag.tag_id == tag_id,
            )
        )


class SqlDealService(DealService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def move_stage(self, tenant_id: str, deal_id: str, stage_id: str) -> None:
        result = await self.db.execute(
            update(Deal)
            .where(Deal.id == deal_id, Deal.tenant_id == tenant_id)
            .values(stage_id=stage_id, updated_at=utcnow())
        )
        if result.rowcount == 0:
            raise ActionError("move_deal_stage", f"Deal not found: {deal_id}", details={"deal_id": deal_id})


class SqlNotificationService(NotificationService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        tenant_id: str,
        user_id: str,
        title: str,
        body: str = "",
        data: Optional[dict] = None,
    ) -> Notification:
        notification = Notification(
            id=generate_uuid(),
            tenant_id=tenant_id,
            user_id=user_id,
            title=title,
            body=body,
            data=data,
        )
        self.db.add(notification)
        return notification


# ── HTTP ──


class HttpWebhookClient(WebhookClient):
    """httpx client with a per-host circuit breaker"""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.WEBHOOK_ACTION_TIMEOUT_SECONDS

    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Optional[dict[str, str]] = None,
        payload: Optional[dict] = None,
    ) -> int:
        host = urlparse(url).hostname or url
        circuit_breaker = get_webhook_circuit_breaker(host)
        request_headers = {"Content-Type": "application/json", **(headers or {})}

        async def _send() -> int:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(
                        method.upper(),
                        url,
                        json=payload,
                        headers=request_headers,
                    )
            except httpx.HTTPError as e:
                raise WebhookCallError(url, f"{type(e).__name__}: {e}") from e
            if not 200 <= response.status_code < 300:
                raise WebhookCallError.from_response(url, response)
            return response.status_code

        status_code = await circuit_breaker.execute(_send)
        logger.debug(
            "Webhook call succeeded",
            extra_data={"host": host, "method": method.upper(), "status_code": status_code},
        )
        return status_code
