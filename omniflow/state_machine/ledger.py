"""
Execution Ledger - the only writer of chatbot_executions

Every write after the initial upsert is a compare-and-swap on ``version``:
a writer that read version N may only store version N+1, so two workers
racing on the same execution cannot both win.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.config import settings
from omniflow.core.exceptions import (
    ConcurrentExecutionError,
    ExecutionNotFoundError,
    InvalidStatusChangeError,
    LedgerPersistenceError,
)
from omniflow.core.logging import get_logger
from omniflow.db.compat import upsert_insert
from omniflow.db.database import generate_uuid, utcnow
from omniflow.db.models.chatbot_execution import (
    ACTIVE_STATUSES,
    ChatbotExecution,
    ExecutionStatus,
)
from omniflow.domain.services.flow_timer_service import FlowTimerService
from omniflow.state_machine.states import OPERATOR_STATUSES, is_valid_transition

logger = get_logger(__name__)

_UNSET: Any = object()


def history_entry(role: str, content: str) -> dict:
    return {
        "role": role,
        "content": content,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@dataclass
class ExecutionContext:
    """In-memory copy of one ledger row, carried through a walk"""
    execution_id: str
    chatbot_id: str
    conversation_id: str
    contact_id: str
    tenant_id: str
    channel_id: Optional[str]
    current_node_id: Optional[str]
    status: str
    version: int
    variables: dict[str, Any] = field(default_factory=dict)
    message_history: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: ChatbotExecution) -> "ExecutionContext":
        return cls(
            execution_id=row.id,
            chatbot_id=row.chatbot_id,
            conversation_id=row.conversation_id,
            contact_id=row.contact_id,
            tenant_id=row.tenant_id,
            channel_id=row.channel_id,
            current_node_id=row.current_node_id,
            status=row.status,
            version=row.version,
            # עותקים חדשים: SQLAlchemy לא מזהה שינוי in-place ב-JSON
            variables=dict(row.variables or {}),
            message_history=list(row.message_history or []),
            error=row.error,
            updated_at=row.updated_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.ERROR.value)

    def add_history(self, role: str, content: str) -> None:
        self.message_history.append(history_entry(role, content))

    def to_dict(self) -> dict:
        return {
            "id": self.execution_id,
            "chatbot_id": self.chatbot_id,
            "conversation_id": self.conversation_id,
            "contact_id": self.contact_id,
            "tenant_id": self.tenant_id,
            "channel_id": self.channel_id,
            "current_node_id": self.current_node_id,
            "status": self.status,
            "version": self.version,
            "variables": self.variables,
            "message_history": self.message_history,
            "error": self.error,
        }


class ExecutionLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _select_one(self, *criteria) -> Optional[ChatbotExecution]:
        result = await self.db.execute(
            select(ChatbotExecution)
            .where(*criteria)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_fresh(
        self,
        *,
        chatbot_id: str,
        conversation_id: str,
        contact_id: str,
        tenant_id: str,
        channel_id: Optional[str],
        start_node_id: str,
        variables: Optional[dict] = None,
        trigger_message: str = "",
    ) -> ExecutionContext:
        """
        Insert, or atomically replace, the (chatbot, conversation) row with a
        fresh running execution positioned at the start node.

        Raises:
            LedgerPersistenceError: the write failed
        """
        now = utcnow()
        fresh = {
            "contact_id": contact_id,
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "current_node_id": start_node_id,
            "variables": dict(variables or {}),
            "message_history": [history_entry("user", trigger_message)],
            "status": ExecutionStatus.RUNNING.value,
            "error": None,
            "started_at": now,
            "updated_at": now,
            "completed_at": None,
        }
        table = ChatbotExecution.__table__
        stmt = upsert_insert(self.db, table).values(
            id=generate_uuid(),
            chatbot_id=chatbot_id,
            conversation_id=conversation_id,
            version=1,
            **fresh,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.chatbot_id, table.c.conversation_id],
            set_={**fresh, "version": table.c.version + 1},
        )

        try:
            await self.db.execute(stmt)
            row = await self._select_one(
                ChatbotExecution.chatbot_id == chatbot_id,
                ChatbotExecution.conversation_id == conversation_id,
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise LedgerPersistenceError(None, str(e)) from e

        return ExecutionContext.from_row(row)

    async def load(self, execution_id: str) -> ExecutionContext:
        row = await self._select_one(ChatbotExecution.id == execution_id)
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return ExecutionContext.from_row(row)

    async def find_active_for_conversation(
        self,
        conversation_id: str,
        statuses: Iterable[str] = ACTIVE_STATUSES,
    ) -> Optional[ExecutionContext]:
        """Most recently touched non-terminal execution of the conversation"""
        result = await self.db.execute(
            select(ChatbotExecution)
            .where(
                ChatbotExecution.conversation_id == conversation_id,
                ChatbotExecution.status.in_(list(statuses)),
            )
            .order_by(ChatbotExecution.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return ExecutionContext.from_row(row) if row else None

    async def save(
        self,
        ctx: ExecutionContext,
        *,
        status: ExecutionStatus | str,
        current_node_id: Optional[str] = _UNSET,
        error: Optional[str] = None,
    ) -> ExecutionContext:
        """
        Persist ``ctx`` with a new status, conditional on its version.

        Commits the session, so side effects staged by the step (message rows,
        outbox jobs, timers) land in the same transaction.

        Raises:
            InvalidStatusChangeError: transition not allowed from ctx.status
            ConcurrentExecutionError: the row changed since ctx was read
            LedgerPersistenceError: the write failed
        """
        status = ExecutionStatus(status).value
        if not is_valid_transition(ctx.status, status):
            raise InvalidStatusChangeError(ctx.execution_id, status)

        node_id = ctx.current_node_id if current_node_id is _UNSET else current_node_id
        limit = settings.EXECUTION_HISTORY_LIMIT
        history = ctx.message_history[-limit:]
        now = utcnow()
        values = {
            "status": status,
            "current_node_id": node_id,
            "variables": dict(ctx.variables),
            "message_history": list(history),
            "error": error,
            "updated_at": now,
            "version": ctx.version + 1,
        }
        if status == ExecutionStatus.COMPLETED.value:
            values["completed_at"] = now

        try:
            result = await self.db.execute(
                update(ChatbotExecution)
                .where(
                    ChatbotExecution.id == ctx.execution_id,
                    ChatbotExecution.version == ctx.version,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                await self.db.rollback()
                raise ConcurrentExecutionError(ctx.execution_id, ctx.version)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise LedgerPersistenceError(ctx.execution_id, str(e)) from e

        ctx.status = status
        ctx.current_node_id = node_id
        ctx.message_history = list(history)
        ctx.error = error
        ctx.version += 1
        ctx.updated_at = now
        return ctx

    async def force_status(
        self,
        execution_id: str,
        status: str,
        error: Optional[str] = None,
    ) -> ExecutionContext:
        """
        Operator override to a terminal status. Bumps the version so any
        in-flight walk loses its next write, and cancels pending timers.
        """
        try:
            target = ExecutionStatus(status)
        except ValueError:
            raise InvalidStatusChangeError(execution_id, status) from None
        if target not in OPERATOR_STATUSES:
            raise InvalidStatusChangeError(execution_id, status)

        ctx = await self.load(execution_id)
        now = utcnow()
        values = {
            "status": target.value,
            "error": error,
            "updated_at": now,
            "version": ChatbotExecution.version + 1,
        }
        if target == ExecutionStatus.COMPLETED:
            values["completed_at"] = now

        try:
            await self.db.execute(
                update(ChatbotExecution)
                .where(ChatbotExecution.id == execution_id)
                .values(**values)
            )
            cancelled = await FlowTimerService(self.db).cancel_for_execution(execution_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise LedgerPersistenceError(execution_id, str(e)) from e

        logger.warning(
            "Execution status forced by operator",
            extra_data={
                "execution_id": execution_id,
                "from_status": ctx.status,
                "to_status": target.value,
                "cancelled_timers": cancelled,
            },
        )
        return await self.load(execution_id)
