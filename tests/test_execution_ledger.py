"""
בדיקות ל-omniflow/state_machine/ledger.py: ledger של executions

מכסה:
- upsert: שורה אחת לכל (chatbot, conversation)
- שמירה מותנית בגרסה (optimistic concurrency)
- מעברי סטטוס וכפיית סטטוס ע"י מפעיל
"""
import pytest
from sqlalchemy import func, select

from omniflow.core.exceptions import (
    ConcurrentExecutionError,
    ExecutionNotFoundError,
    InvalidStatusChangeError,
)
from omniflow.db.database import utcnow
from omniflow.db.models.chatbot_execution import ChatbotExecution, ExecutionStatus
from omniflow.db.models.flow_timer import FlowTimer
from omniflow.domain.services.flow_timer_service import FlowTimerService
from omniflow.state_machine.ledger import ExecutionLedger
from omniflow.state_machine.states import is_valid_transition

from tests.conftest import TENANT_ID


@pytest.fixture
async def flow(crm, chatbot_factory, node_factory) -> dict:
    chatbot = await chatbot_factory(crm["channel"].id)
    start = await node_factory(chatbot.id, "start")
    return {**crm, "chatbot": chatbot, "start": start}


async def _upsert(ledger: ExecutionLedger, flow: dict, trigger_message: str = "oi"):
    return await ledger.upsert_fresh(
        chatbot_id=flow["chatbot"].id,
        conversation_id=flow["conversation"].id,
        contact_id=flow["contact"].id,
        tenant_id=TENANT_ID,
        channel_id=flow["channel"].id,
        start_node_id=flow["start"].id,
        variables={"nome": "Maria"},
        trigger_message=trigger_message,
    )


class TestUpsertFresh:
    @pytest.mark.asyncio
    async def test_creates_running_execution(self, db_session, flow) -> None:
        ctx = await _upsert(ExecutionLedger(db_session), flow)

        assert ctx.status == "running"
        assert ctx.version == 1
        assert ctx.current_node_id == flow["start"].id
        assert ctx.variables == {"nome": "Maria"}
        assert [h["role"] for h in ctx.message_history] == ["user"]
        assert ctx.message_history[0]["content"] == "oi"

    @pytest.mark.asyncio
    async def test_restart_replaces_row(self, db_session, flow) -> None:
        ledger = ExecutionLedger(db_session)
        first = await _upsert(ledger, flow, "oi")
        await ledger.save(first, status=ExecutionStatus.COMPLETED)

        second = await _upsert(ledger, flow, "oi de novo")

        count = (await db_session.execute(select(func.count(ChatbotExecution.id)))).scalar_one()
        assert count == 1
        assert second.execution_id == first.execution_id
        assert second.status == "running"
        assert second.version == first.version + 1
        assert [h["content"] for h in second.message_history] == ["oi de novo"]


class TestSave:
    @pytest.mark.asyncio
    async def test_save_bumps_version(self, db_session, flow) -> None:
        ledger = ExecutionLedger(db_session)
        ctx = await _upsert(ledger, flow)
        ctx.variables["plano"] = "pro"

        await ledger.save(ctx, status=ExecutionStatus.WAITING)

        loaded = await ledger.load(ctx.execution_id)
        assert loaded.status == "waiting"
        assert loaded.version == 2
        assert loaded.variables["plano"] == "pro"

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, db_session, flow) -> None:
        ledger = ExecutionLedger(db_session)
        ctx = await _upsert(ledger, flow)
        stale = await ledger.load(ctx.execution_id)

        await ledger.save(ctx, status=ExecutionStatus.WAITING)

        with pytest.raises(ConcurrentExecutionError):
            await ledger.save(stale, status=ExecutionStatus.COMPLETED)
        assert (await ledger.load(ctx.execution_id)).status == "waiting"

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, db_session, flow) -> None:
        ledger = ExecutionLedger(db_session)
        ctx = await _upsert(ledger, flow)
        await ledger.save(ctx, status=ExecutionStatus.COMPLETED)

        with pytest.raises(InvalidStatusChangeError):
            await ledger.save(ctx, status=ExecutionStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_load_missing(self, db_session) -> None:
        with pytest.raises(ExecutionNotFoundError):
            await ExecutionLedger(db_session).load("missing")


class TestForceStatus:
    @pytest.mark.asyncio
    async def test_force_error_cancels_timers(self, db_session, flow) -> None:
        ledger = ExecutionLedger(db_session)
        ctx = await _upsert(ledger, flow)
        await FlowTimerService(db_session).schedule(ctx.execution_id, flow["start"].id, utcnow(), 2)
        await ledger.save(ctx, status=ExecutionStatus.PAUSED)

        forced = await ledger.force_status(ctx.execution_id, "error", "stuck")

        assert forced.status == "error"
        assert forced.error == "stuck"
        assert forced.version == ctx.version + 1
        timer = (await db_session.execute(
            select(FlowTimer).execution_options(populate_existing=True)
        )).scalar_one()
        assert timer.status == "cancelled"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["running", "waiting", "paused", "bogus"])
    async def test_only_terminal_targets(self, db_session, flow, target) -> None:
        ledger = ExecutionLedger(db_session)
        ctx = await _upsert(ledger, flow)
        with pytest.raises(InvalidStatusChangeError):
            await ledger.force_status(ctx.execution_id, target)


class TestTransitions:
    @pytest.mark.unit
    @pytest.mark.parametrize("current,target,allowed", [
        ("running", "waiting", True),
        ("waiting", "running", True),
        ("paused", "running", True),
        ("waiting", "paused", False),
        ("completed", "running", False),
        ("error", "completed", False),
        ("unknown", "running", False),
    ])
    def test_is_valid_transition(self, current, target, allowed):
        assert is_valid_transition(current, target) is allowed
