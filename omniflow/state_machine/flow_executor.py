"""
Flow Execution Engine

Walks a chatbot's node/edge graph for one conversation until a node
suspends: ``waiting`` for the user's reply or ``paused`` on a durable timer.
Walks are serialised per (chatbot, conversation) by ExecutionLock and every
ledger write is version-checked.
"""
from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.config import settings
from omniflow.core.exceptions import (
    ActionError,
    ConcurrentExecutionError,
    ExecutionNotFoundError,
    ExternalServiceException,
    FlowDefinitionError,
    FlowStepLimitError,
    LedgerPersistenceError,
)
from omniflow.core.logging import get_logger, set_subject_id
from omniflow.core.redis_client import ExecutionLock
from omniflow.db.database import utcnow
from omniflow.db.models.chatbot import Chatbot, ChatbotTriggerType, FlowNodeType
from omniflow.db.models.chatbot_execution import ExecutionStatus
from omniflow.domain.actions import CallWebhookAction, parse_node_action, to_seconds
from omniflow.domain.conditions import LAST_USER_MESSAGE
from omniflow.domain.interpolation import build_interpolation_context, interpolate_template
from omniflow.domain.services.action_executor import ActionContext, ActionExecutor, ActionSource
from omniflow.domain.services.collaborators import SqlConversationDirectory
from omniflow.domain.services.flow_timer_service import FlowTimerService
from omniflow.domain.triggers import InboundMessage, matches_keywords
from omniflow.state_machine.graph import FlowGraph, NodeSpec
from omniflow.state_machine.ledger import ExecutionContext, ExecutionLedger

logger = get_logger(__name__)

# ערך החזרה של handler שהשעה את ה-execution (waiting / paused)
_SUSPENDED = object()

# delay == -1 או חסר ב-message node → ממתינים לתשובה
_AWAIT_REPLY = -1

NodeHandler = Callable[[ExecutionContext, FlowGraph, NodeSpec], Awaitable[Any]]


class ResumeOutcome(str, Enum):
    """Result of one delay timer firing"""
    RESUMED = "resumed"
    # ה-execution כבר לא ממתין לטיימר הזה: אפשר לסגור את הטיימר
    STALE = "stale"
    # כשלון זמני (נעילה תפוסה, כתיבה ל-ledger): הטיימר צריך לחזור לתור
    ABORTED = "aborted"


class FlowExecutor:
    def __init__(
        self,
        db: AsyncSession,
        action_executor: Optional[ActionExecutor] = None,
        *,
        lock_factory: Callable[[str, str], Any] = ExecutionLock,
    ):
        self.db = db
        self.ledger = ExecutionLedger(db)
        self.timers = FlowTimerService(db)
        self.actions = action_executor or ActionExecutor.for_session(db)
        self.directory = SqlConversationDirectory(db)
        self._lock_factory = lock_factory
        self._node_handlers: dict[str, NodeHandler] = {
            FlowNodeType.START.value: self._handle_start,
            FlowNodeType.MESSAGE.value: self._handle_message,
            FlowNodeType.CONDITION.value: self._handle_condition,
            FlowNodeType.ACTION.value: self._handle_action,
            FlowNodeType.DELAY.value: self._handle_delay,
            FlowNodeType.END.value: self._handle_end,
        }

    # ── trigger discovery ──

    async def find_triggered_chatbots(
        self,
        channel_id: str,
        tenant_id: str,
        message_content: str,
    ) -> list[dict]:
        """Active chatbots on the channel whose trigger accepts the message"""
        result = await self.db.execute(
            select(Chatbot)
            .where(
                Chatbot.tenant_id == tenant_id,
                Chatbot.channel_id == channel_id,
                Chatbot.is_active.is_(True),
            )
            .order_by(Chatbot.created_at)
        )
        triggered = []
        for chatbot in result.scalars().all():
            config = chatbot.trigger_config or {}
            if chatbot.trigger_type == ChatbotTriggerType.ALWAYS.value:
                matched = True
            elif chatbot.trigger_type == ChatbotTriggerType.KEYWORD.value:
                matched = matches_keywords(
                    message_content, config.get("keywords") or [], config.get("matchMode")
                )
            else:
                matched = False
            if matched:
                triggered.append({
                    "id": chatbot.id,
                    "trigger_type": chatbot.trigger_type,
                    "trigger_config": dict(config),
                })
        return triggered

    async def get_active_execution(self, conversation_id: str) -> Optional[ExecutionContext]:
        """Execution of the conversation that is waiting for a user reply"""
        return await self.ledger.find_active_for_conversation(
            conversation_id, statuses=[ExecutionStatus.WAITING.value]
        )

    # ── entry points ──

    async def start_execution(
        self,
        chatbot_id: str,
        conversation_id: str,
        contact_id: str,
        tenant_id: str,
        channel_id: Optional[str],
        trigger_message: str,
    ) -> Optional[ExecutionContext]:
        """
        Replace any execution of (chatbot, conversation) with a fresh one and
        walk from the start node. Returns the ledger state after the walk, or
        None if nothing could be started.
        """
        try:
            async with self._lock_factory(chatbot_id, conversation_id):
                graph = await FlowGraph.load(self.db, chatbot_id)
                try:
                    start = graph.start_node
                except FlowDefinitionError as e:
                    logger.error(
                        "Cannot start flow",
                        extra_data={"chatbot_id": chatbot_id, "error": e.message},
                    )
                    return None

                contact = await self.directory.find_contact(contact_id, tenant_id)
                seed = build_interpolation_context(contact=contact)
                ctx = await self.ledger.upsert_fresh(
                    chatbot_id=chatbot_id,
                    conversation_id=conversation_id,
                    contact_id=contact_id,
                    tenant_id=tenant_id,
                    channel_id=channel_id,
                    start_node_id=start.id,
                    variables=seed,
                    trigger_message=trigger_message,
                )
                set_subject_id(ctx.execution_id)
                # טיימרים של ה-execution הקודם על אותה שורה כבר לא רלוונטיים
                await self.timers.cancel_for_execution(ctx.execution_id)

                logger.info(
                    "Flow execution started",
                    extra_data={
                        "execution_id": ctx.execution_id,
                        "chatbot_id": chatbot_id,
                        "conversation_id": conversation_id,
                        "version": ctx.version,
                    },
                )
                await self._walk_guarded(ctx, graph, lambda: start)
                return ctx
        except (ConcurrentExecutionError, LedgerPersistenceError) as e:
            logger.error(
                "Flow start aborted",
                extra_data={"chatbot_id": chatbot_id, "conversation_id": conversation_id, "error": e.message},
            )
            return None

    async def continue_execution(
        self,
        context: ExecutionContext,
        user_message: str,
    ) -> Optional[ExecutionContext]:
        """
        Resume a waiting execution from the node that suspended it, with the
        reply recorded in history and in ``_lastUserMessage``.
        """
        try:
            async with self._lock_factory(context.chatbot_id, context.conversation_id):
                ctx = await self.ledger.load(context.execution_id)
                set_subject_id(ctx.execution_id)
                if ctx.status != ExecutionStatus.WAITING.value or not ctx.current_node_id:
                    logger.warning(
                        "Execution is not waiting for input",
                        extra_data={"execution_id": ctx.execution_id, "status": ctx.status},
                    )
                    return ctx

                ctx.add_history("user", user_message)
                ctx.variables[LAST_USER_MESSAGE] = user_message
                await self.ledger.save(ctx, status=ExecutionStatus.RUNNING)

                logger.info(
                    "Flow execution continued",
                    extra_data={"execution_id": ctx.execution_id, "node_id": ctx.current_node_id},
                )
                graph = await FlowGraph.load(self.db, ctx.chatbot_id)
                suspended_at = ctx.current_node_id
                await self._walk_guarded(
                    ctx, graph, lambda: graph.next_node(suspended_at, ctx.variables)
                )
                return ctx
        except (ConcurrentExecutionError, LedgerPersistenceError, ExecutionNotFoundError) as e:
            logger.error(
                "Flow continue aborted",
                extra_data={"execution_id": context.execution_id, "error": e.message},
            )
            return None

    async def resume_after_delay(
        self,
        execution_id: str,
        node_id: str,
        expected_version: Optional[int] = None,
    ) -> ResumeOutcome:
        """
        Timer callback for a delay node. A no-op (STALE) unless the execution
        is still paused at that node and at the version the timer was armed
        for. ABORTED means nothing was decided and the timer must be retried.
        """
        try:
            ctx = await self.ledger.load(execution_id)
            async with self._lock_factory(ctx.chatbot_id, ctx.conversation_id):
                ctx = await self.ledger.load(execution_id)
                set_subject_id(execution_id)
                stale = (
                    ctx.status != ExecutionStatus.PAUSED.value
                    or ctx.current_node_id != node_id
                    or (expected_version is not None and ctx.version != expected_version)
                )
                if stale:
                    logger.info(
                        "Delay timer ignored",
                        extra_data={
                            "execution_id": execution_id,
                            "node_id": node_id,
                            "status": ctx.status,
                            "current_node_id": ctx.current_node_id,
                        },
                    )
                    return ResumeOutcome.STALE

                await self.ledger.save(ctx, status=ExecutionStatus.RUNNING)
                logger.info(
                    "Flow execution resumed after delay",
                    extra_data={"execution_id": execution_id, "node_id": node_id},
                )
                graph = await FlowGraph.load(self.db, ctx.chatbot_id)
                await self._walk_guarded(ctx, graph, lambda: graph.next_node(node_id, ctx.variables))
                return ResumeOutcome.RESUMED
        except ExecutionNotFoundError:
            logger.warning("Delay timer for missing execution", extra_data={"execution_id": execution_id})
            return ResumeOutcome.STALE
        except (ConcurrentExecutionError, LedgerPersistenceError) as e:
            logger.error(
                "Flow resume aborted",
                extra_data={"execution_id": execution_id, "error": e.message},
            )
            return ResumeOutcome.ABORTED

    async def route_inbound_message(self, event: InboundMessage | dict) -> dict:
        """
        Start-vs-continue decision for one inbound message.

        A waiting execution is continued. A running or paused one is busy and
        the message is not fed to the flow. A running row untouched for longer
        than the lock TTL belongs to a dead worker and does not block a new
        start. Otherwise the first triggered chatbot is started.
        """
        if not isinstance(event, InboundMessage):
            event = InboundMessage.model_validate(event)

        active = await self.ledger.find_active_for_conversation(event.conversation_id)
        if active is not None and _is_abandoned(active):
            logger.warning(
                "Abandoned running execution ignored",
                extra_data={"execution_id": active.execution_id, "updated_at": str(active.updated_at)},
            )
            active = None
        if active is not None:
            if active.status == ExecutionStatus.WAITING.value:
                ctx = await self.continue_execution(active, event.content)
                return _route_result("continued", ctx)
            logger.info(
                "Inbound message ignored: execution busy",
                extra_data={"execution_id": active.execution_id, "status": active.status},
            )
            return _route_result("busy", active)

        chatbots = await self.find_triggered_chatbots(
            event.channel_id, event.tenant_id, event.content
        )
        if not chatbots:
            return _route_result("none", None)

        ctx = await self.start_execution(
            chatbots[0]["id"],
            event.conversation_id,
            event.contact_id,
            event.tenant_id,
            event.channel_id,
            event.content,
        )
        return _route_result("started", ctx)

    # ── walk ──

    async def _walk_guarded(
        self,
        ctx: ExecutionContext,
        graph: FlowGraph,
        first_node: Callable[[], Optional[NodeSpec]],
    ) -> None:
        """
        Handler failures mark the execution ``error``. Ledger write failures
        propagate: without durable state the walk must not continue.
        """
        try:
            await self._walk(ctx, graph, first_node())
        except (ConcurrentExecutionError, LedgerPersistenceError):
            raise
        except Exception as e:
            await self._safe_rollback()
            logger.error(
                "Flow node failed",
                extra_data={
                    "execution_id": ctx.execution_id,
                    "node_id": ctx.current_node_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            await self.ledger.save(ctx, status=ExecutionStatus.ERROR, error=str(e))

    async def _walk(self, ctx: ExecutionContext, graph: FlowGraph, node: Optional[NodeSpec]) -> None:
        steps = 0
        while node is not None:
            steps += 1
            if steps > settings.FLOW_MAX_STEPS:
                raise FlowStepLimitError(ctx.execution_id, settings.FLOW_MAX_STEPS)

            handler = self._node_handlers.get(node.type)
            if handler is None:
                raise FlowDefinitionError(graph.chatbot_id, f"unknown node type '{node.type}'")

            logger.debug(
                "Executing flow node",
                extra_data={"execution_id": ctx.execution_id, "node_id": node.id, "node_type": node.type},
            )
            outcome = await handler(ctx, graph, node)
            if outcome is _SUSPENDED:
                return
            if outcome is None:
                break

            await self.ledger.save(ctx, status=ExecutionStatus.RUNNING, current_node_id=outcome.id)
            node = outcome

        await self.ledger.save(ctx, status=ExecutionStatus.COMPLETED)
        logger.info(
            "Flow execution completed",
            extra_data={"execution_id": ctx.execution_id, "node_id": ctx.current_node_id},
        )

    def _action_context(self, ctx: ExecutionContext) -> ActionContext:
        return ActionContext(
            tenant_id=ctx.tenant_id,
            source=ActionSource.CHATBOT,
            conversation_id=ctx.conversation_id,
            contact_id=ctx.contact_id,
            channel_id=ctx.channel_id,
            variables=ctx.variables,
        )

    # ── node handlers ──
    # מחזירים את הצומת הבא, None לסיום, או _SUSPENDED

    async def _handle_start(self, ctx, graph, node):
        return graph.next_node(node.id, ctx.variables)

    async def _handle_message(self, ctx, graph, node):
        config = node.config
        text = interpolate_template(config.get("text"), ctx.variables)
        try:
            await self.actions.send_message(self._action_context(ctx), text, config.get("mediaUrl"))
        except ActionError as e:
            # ערוץ/שיחה חסרים: ההודעה לא נשלחת והזרימה ממשיכה
            logger.warning(
                "Flow message not sent",
                extra_data={"execution_id": ctx.execution_id, "node_id": node.id, "error": e.message},
            )
            return graph.next_node(node.id, ctx.variables)

        ctx.add_history("bot", text)

        delay = config.get("delay")
        if delay is None or delay == _AWAIT_REPLY:
            await self.ledger.save(ctx, status=ExecutionStatus.WAITING, current_node_id=node.id)
            logger.info(
                "Flow execution waiting for reply",
                extra_data={"execution_id": ctx.execution_id, "node_id": node.id},
            )
            return _SUSPENDED
        return graph.next_node(node.id, ctx.variables)

    async def _handle_condition(self, ctx, graph, node):
        return graph.next_node(node.id, ctx.variables)

    async def _handle_action(self, ctx, graph, node):
        action = parse_node_action(node.config)
        if isinstance(action, CallWebhookAction):
            try:
                await self.actions.execute(action, self._action_context(ctx))
            except ExternalServiceException as e:
                logger.warning(
                    "Flow webhook failed",
                    extra_data={"execution_id": ctx.execution_id, "node_id": node.id, "error": e.message},
                )
        else:
            await self.actions.execute(action, self._action_context(ctx))
        return graph.next_node(node.id, ctx.variables)

    async def _handle_delay(self, ctx, graph, node):
        config = node.config
        seconds = max(to_seconds(config.get("delay") or 1, config.get("unit")), 1.0)
        due_at = utcnow() + timedelta(seconds=seconds)
        # הטיימר נכתב באותה טרנזקציה של מעבר ל-paused
        await self.timers.schedule(
            ctx.execution_id, node.id, due_at, expected_version=ctx.version + 1
        )
        await self.ledger.save(ctx, status=ExecutionStatus.PAUSED, current_node_id=node.id)
        logger.info(
            "Flow execution paused",
            extra_data={
                "execution_id": ctx.execution_id,
                "node_id": node.id,
                "delay_seconds": seconds,
                "due_at": due_at.isoformat(),
            },
        )
        return _SUSPENDED

    async def _handle_end(self, ctx, graph, node):
        return None

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback failed", extra_data={"error": str(e)})


def _is_abandoned(ctx: ExecutionContext) -> bool:
    """running בלי עדכון יותר מ-TTL של הנעילה: ה-worker שהריץ אותו מת"""
    if ctx.status != ExecutionStatus.RUNNING.value or ctx.updated_at is None:
        return False
    stale_after = timedelta(seconds=settings.EXECUTION_LOCK_TTL_SECONDS)
    return utcnow() - ctx.updated_at > stale_after


def _route_result(action: str, ctx: Optional[ExecutionContext]) -> dict:
    return {
        "action": action,
        "execution_id": ctx.execution_id if ctx else None,
        "status": ctx.status if ctx else None,
    }
