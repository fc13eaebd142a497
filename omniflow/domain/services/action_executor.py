"""
Action Executor - performs one action's side effect

Dispatch is a closed table keyed by the typed action class; an action type
outside the table is rejected when the payload is parsed, before it reaches
here. Handlers never decide control flow: they either return or raise.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.config import settings
from omniflow.core.exceptions import ActionError, MissingContextError
from omniflow.core.logging import get_logger
from omniflow.db.models.crm import Message
from omniflow.domain.actions import (
    Action,
    AddTagAction,
    AssignUserAction,
    CallWebhookAction,
    CreateNotificationAction,
    MoveDealStageAction,
    RemoveTagAction,
    SendMessageAction,
    SetVariableAction,
    SynchronousDelayAction,
    parse_action,
)
from omniflow.domain.services.collaborators import (
    ConversationDirectory,
    DealService,
    HttpWebhookClient,
    MessageStore,
    NotificationService,
    SendQueue,
    SqlConversationDirectory,
    SqlDealService,
    SqlMessageStore,
    SqlNotificationService,
    SqlTagService,
    TagService,
    WebhookClient,
    resolve_channel_type,
)
from omniflow.domain.services.outbox_service import OutboxService
from omniflow.domain.triggers import TriggerContext

logger = get_logger(__name__)


class ActionSource(str, Enum):
    AUTOMATION = "automation"
    CHATBOT = "chatbot"


@dataclass
class ActionContext:
    """What an action may touch: the tenant plus whichever records the event carries"""
    tenant_id: str
    source: ActionSource = ActionSource.AUTOMATION
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    channel_id: Optional[str] = None
    deal_id: Optional[str] = None
    user_id: Optional[str] = None
    # חי ומשותף עם ה-ExecutionContext של flow: set_variable כותב לכאן
    variables: dict[str, Any] = field(default_factory=dict)
    trigger_snapshot: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_trigger(cls, context: TriggerContext) -> "ActionContext":
        return cls(
            tenant_id=context.tenant_id,
            source=ActionSource.AUTOMATION,
            conversation_id=context.conversation_id,
            contact_id=context.contact_id,
            channel_id=context.channel_id,
            deal_id=context.deal_id,
            user_id=context.user_id,
            trigger_snapshot=context.snapshot(),
        )

    def webhook_payload(self) -> dict[str, Any]:
        if self.source == ActionSource.CHATBOT:
            return {
                "conversationId": self.conversation_id,
                "contactId": self.contact_id,
                "variables": self.variables,
            }
        return {
            "trigger": "automation",
            "context": self.trigger_snapshot,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ActionExecutor:
    """Executes typed actions against the injected collaborators"""

    def __init__(
        self,
        directory: ConversationDirectory,
        messages: MessageStore,
        send_queue: SendQueue,
        tags: TagService,
        deals: DealService,
        notifications: NotificationService,
        webhooks: WebhookClient,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.directory = directory
        self.messages = messages
        self.send_queue = send_queue
        self.tags = tags
        self.deals = deals
        self.notifications = notifications
        self.webhooks = webhooks
        self._sleep = sleep
        self._handlers: dict[type, Callable[[Any, ActionContext], Awaitable[None]]] = {
            SendMessageAction: self._handle_send_message,
            AddTagAction: self._handle_add_tag,
            RemoveTagAction: self._handle_remove_tag,
            AssignUserAction: self._handle_assign_user,
            MoveDealStageAction: self._handle_move_deal_stage,
            CreateNotificationAction: self._handle_create_notification,
            CallWebhookAction: self._handle_call_webhook,
            SynchronousDelayAction: self._handle_wait,
            SetVariableAction: self._handle_set_variable,
        }

    @classmethod
    def for_session(
        cls,
        db: AsyncSession,
        *,
        webhooks: Optional[WebhookClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "ActionExecutor":
        """SQL-backed collaborators sharing one session"""
        return cls(
            directory=SqlConversationDirectory(db),
            messages=SqlMessageStore(db),
            send_queue=OutboxService(db),
            tags=SqlTagService(db),
            deals=SqlDealService(db),
            notifications=SqlNotificationService(db),
            webhooks=webhooks or HttpWebhookClient(),
            sleep=sleep,
        )

    async def execute(self, action: Action | dict, context: ActionContext) -> None:
        """
        Raises:
            InvalidActionError: payload does not parse into a known action
            ActionError: the side effect failed
        """
        action = parse_action(action)
        logger.debug(
            "Executing action",
            extra_data={"action": action.type, "source": context.source.value},
        )
        handler = self._handlers[type(action)]
        await handler(action, context)

    # ── send path (משותף ל-send_message ול-message node) ──

    async def send_message(
        self,
        context: ActionContext,
        content: str,
        media_url: Optional[str] = None,
    ) -> Message:
        """
        Persist a pending outbound message and enqueue its delivery job.

        Raises:
            MissingContextError: no conversation in the context
            ActionError: conversation or channel cannot be resolved
        """
        if not context.conversation_id:
            raise MissingContextError("send_message", "conversation")

        conversation = await self.directory.find_conversation(
            context.conversation_id, context.tenant_id
        )
        if conversation is None:
            raise ActionError(
                "send_message",
                f"Conversation not found: {context.conversation_id}",
                details={"conversation_id": context.conversation_id},
            )

        channel = await self.directory.find_channel(conversation.channel_id, context.tenant_id)
        if channel is None:
            raise ActionError(
                "send_message",
                f"Channel not found: {conversation.channel_id}",
                details={"channel_id": conversation.channel_id},
            )

        message = await self.messages.create(
            tenant_id=context.tenant_id,
            conversation_id=context.conversation_id,
            content=content,
            media_url=media_url,
            sent_by=context.source.value,
        )

        contact = await self.directory.find_contact(conversation.contact_id, context.tenant_id)
        message_type = "image" if media_url else "text"
        payload: dict[str, Any] = {"type": message_type, "content": content}
        if media_url:
            payload["mediaUrl"] = media_url

        await self.send_queue.enqueue_send({
            "tenantId": context.tenant_id,
            "conversationId": context.conversation_id,
            "channelId": conversation.channel_id,
            "channelType": resolve_channel_type(channel),
            "messageId": message.id,
            "message": payload,
            "recipientPhone": getattr(contact, "phone", None) or None,
            "recipientExternalId": getattr(contact, "external_id", None) or None,
        })
        return message

    async def _sleep_capped(self, seconds: float, action_type: str) -> None:
        cap = settings.AUTOMATION_WAIT_MAX_SECONDS
        if seconds > cap:
            logger.warning(
                "Synchronous wait capped",
                extra_data={"action": action_type, "requested_seconds": seconds, "cap_seconds": cap},
            )
            seconds = cap
        if seconds > 0:
            await self._sleep(seconds)

    # ── handlers ──

    async def _handle_send_message(self, action: SendMessageAction, context: ActionContext) -> None:
        if action.delay > 0:
            await self._sleep_capped(action.delay, action.type)
        await self.send_message(context, action.content, action.media_url)

    async def _handle_add_tag(self, action: AddTagAction, context: ActionContext) -> None:
        if not context.contact_id:
            raise MissingContextError(action.type, "contact")
        await self.tags.add_tag(context.tenant_id, context.contact_id, action.tag_id)

    async def _handle_remove_tag(self, action: RemoveTagAction, context: ActionContext) -> None:
        if not context.contact_id:
            raise MissingContextError(action.type, "contact")
        await self.tags.remove_tag(context.tenant_id, context.contact_id, action.tag_id)

    async def _handle_assign_user(self, action: AssignUserAction, context: ActionContext) -> None:
        if not context.conversation_id:
            raise MissingContextError(action.type, "conversation")
        await self.directory.assign_user(context.conversation_id, context.tenant_id, action.user_id)

    async def _handle_move_deal_stage(self, action: MoveDealStageAction, context: ActionContext) -> None:
        if not context.deal_id:
            raise MissingContextError(action.type, "deal")
        await self.deals.move_stage(context.tenant_id, context.deal_id, action.stage_id)

    async def _handle_create_notification(
        self, action: CreateNotificationAction, context: ActionContext
    ) -> None:
        user_id = action.user_id or context.user_id
        if not user_id:
            raise MissingContextError(action.type, "user")
        data = {"type": context.source.value}
        if context.conversation_id:
            data["link"] = f"/inbox?conversation={context.conversation_id}"
        await self.notifications.create(
            tenant_id=context.tenant_id,
            user_id=user_id,
            title=action.title,
            body=action.body,
            data=data,
        )

    async def _handle_call_webhook(self, action: CallWebhookAction, context: ActionContext) -> None:
        await self.webhooks.call(
            action.url,
            method=action.method,
            headers=action.headers,
            payload=context.webhook_payload(),
        )

    async def _handle_wait(self, action: SynchronousDelayAction, context: ActionContext) -> None:
        await self._sleep_capped(action.seconds, action.type)

    async def _handle_set_variable(self, action: SetVariableAction, context: ActionContext) -> None:
        context.variables[action.variable] = action.value
