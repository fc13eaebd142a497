"""
בדיקות ל-omniflow/domain/services/automation_executor.py

מכסה:
- התאמת trigger_config ותנאים לפני הרצה
- בידוד כשלונות בין פעולות (partial) ובין אוטומציות
- audit log לכל הרצה, run_count / last_run_at
- סדר לפי priority
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.db.models.automation import Automation, AutomationStatus
from omniflow.db.models.automation_log import AutomationExecutionLog
from omniflow.db.models.crm import ContactTag, Message
from omniflow.domain.services.action_executor import ActionExecutor
from omniflow.domain.services.automation_executor import AutomationExecutor

from tests.conftest import TENANT_ID


@pytest.fixture
def automation_executor(db_session: AsyncSession) -> AutomationExecutor:
    return AutomationExecutor(db_session, ActionExecutor.for_session(db_session, sleep=AsyncMock()))


async def _logs(db_session: AsyncSession) -> list[AutomationExecutionLog]:
    result = await db_session.execute(select(AutomationExecutionLog))
    return list(result.scalars().all())


async def _reload(db_session: AsyncSession, automation_id: str) -> Automation:
    result = await db_session.execute(
        select(Automation)
        .where(Automation.id == automation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _message_context(crm, content: str = "Olá") -> dict:
    return {
        "tenantId": TENANT_ID,
        "conversationId": crm["conversation"].id,
        "contactId": crm["contact"].id,
        "channelId": crm["channel"].id,
        "messageContent": content,
    }


class TestFiring:
    @pytest.mark.asyncio
    async def test_matching_automation_runs_and_logs(
        self, db_session, automation_executor, automation_factory, crm, tag_factory
    ) -> None:
        tag = await tag_factory()
        automation = await automation_factory(
            "message_received",
            trigger_config={"keywords": ["preço"]},
            actions=[{"type": "add_tag", "tagId": tag.id}],
        )

        runs = await automation_executor.process_trigger("message_received", _message_context(crm, "qual o preço?"))

        assert len(runs) == 1
        assert runs[0].status == "success"
        assert runs[0].actions == [{"action": "add_tag", "status": "success"}]

        logs = await _logs(db_session)
        assert len(logs) == 1
        assert logs[0].status == "success"
        assert logs[0].triggered_by["messageContent"] == "qual o preço?"

        refreshed = await _reload(db_session, automation.id)
        assert refreshed.run_count == 1
        assert refreshed.last_run_at is not None

        assert (await db_session.execute(select(ContactTag))).scalar_one().tag_id == tag.id

    @pytest.mark.asyncio
    async def test_keyword_mismatch_creates_no_log(
        self, db_session, automation_executor, automation_factory, crm
    ) -> None:
        await automation_factory("message_received", trigger_config={"keywords": ["preço"]})

        runs = await automation_executor.process_trigger("message_received", _message_context(crm, "bom dia"))

        assert runs == []
        assert await _logs(db_session) == []

    @pytest.mark.asyncio
    async def test_tag_mismatch_creates_no_log(
        self, db_session, automation_executor, automation_factory
    ) -> None:
        automation = await automation_factory("tag_added", trigger_config={"tagIds": ["t1"]})

        runs = await automation_executor.process_trigger(
            "tag_added", {"tenantId": TENANT_ID, "contactId": "c1", "tagId": "t2"}
        )

        assert runs == []
        assert await _logs(db_session) == []
        assert (await _reload(db_session, automation.id)).run_count == 0

    @pytest.mark.asyncio
    async def test_conditions_not_met_skips(
        self, db_session, automation_executor, automation_factory, crm
    ) -> None:
        await automation_factory(
            "message_received",
            conditions=[{"field": "dealId", "operator": "is_not_empty"}],
        )
        runs = await automation_executor.process_trigger("message_received", _message_context(crm))
        assert runs == []
        assert await _logs(db_session) == []

    @pytest.mark.asyncio
    async def test_inactive_and_other_tenant_automations_ignored(
        self, db_session, automation_executor, automation_factory, crm
    ) -> None:
        await automation_factory("message_received", status=AutomationStatus.PAUSED.value)
        await automation_factory("message_received", status=AutomationStatus.DRAFT.value)
        await automation_factory("message_received", tenant_id="tenant-2")

        runs = await automation_executor.process_trigger("message_received", _message_context(crm))
        assert runs == []

    @pytest.mark.asyncio
    async def test_priority_order(self, automation_executor, automation_factory, crm) -> None:
        late = await automation_factory("message_received", priority=10, name="late")
        early = await automation_factory("message_received", priority=1, name="early")

        runs = await automation_executor.process_trigger("message_received", _message_context(crm))
        assert [r.automation_id for r in runs] == [early.id, late.id]


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failed_action_gives_partial_and_keeps_others(
        self, db_session, automation_executor, automation_factory, crm
    ) -> None:
        automation = await automation_factory(
            "message_received",
            actions=[
                {"type": "add_tag", "tagId": "missing-tag"},
                {"type": "send_message", "content": "Recebemos sua mensagem"},
            ],
        )
        automation_id = automation.id

        runs = await automation_executor.process_trigger("message_received", _message_context(crm))

        assert runs[0].status == "partial"
        assert runs[0].actions[0]["status"] == "error"
        assert "Tag not found" in runs[0].actions[0]["error"]
        assert runs[0].actions[1] == {"action": "send_message", "status": "success"}

        messages = (await db_session.execute(select(Message))).scalars().all()
        assert [m.content for m in messages] == ["Recebemos sua mensagem"]
        assert (await _logs(db_session))[0].status == "partial"
        assert (await _reload(db_session, automation_id)).run_count == 1

    @pytest.mark.asyncio
    async def test_unknown_action_type_is_action_error(
        self, automation_executor, automation_factory, crm
    ) -> None:
        await automation_factory("message_received", actions=[{"type": "teleport"}])
        runs = await automation_executor.process_trigger("message_received", _message_context(crm))
        assert runs[0].status == "partial"
        assert runs[0].actions[0]["action"] == "teleport"

    @pytest.mark.asyncio
    async def test_malformed_actions_field_logs_error(
        self, db_session, automation_executor, automation_factory, crm
    ) -> None:
        automation = await automation_factory("message_received", actions={"type": "send_message"})
        second = await automation_factory("message_received", priority=5)
        # ה-rollback בתוך ה-firing מבטל את תוקף האובייקטים
        automation_id, second_id = automation.id, second.id

        runs = await automation_executor.process_trigger("message_received", _message_context(crm))

        assert [r.status for r in runs] == ["error", "success"]
        assert runs[0].actions == []
        assert runs[0].error_message
        # הרצה שנכשלה לא מעדכנת את המונה
        assert (await _reload(db_session, automation_id)).run_count == 0
        assert (await _reload(db_session, second_id)).run_count == 1

    @pytest.mark.asyncio
    async def test_invalid_context_returns_empty(self, automation_executor) -> None:
        assert await automation_executor.process_trigger("message_received", {"conversationId": "x"}) == []

    @pytest.mark.asyncio
    async def test_unknown_trigger_type_returns_empty(self, automation_executor) -> None:
        assert await automation_executor.process_trigger("galaxy_collapsed", {"tenantId": TENANT_ID}) == []

    @pytest.mark.asyncio
    async def test_log_write_failure_stops_remaining_automations(
        self, automation_executor, automation_factory, crm
    ) -> None:
        await automation_factory("message_received", name="first")
        await automation_factory("message_received", name="second", priority=1)

        with patch.object(
            automation_executor, "_record",
            AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full"))),
        ) as record:
            runs = await automation_executor.process_trigger("message_received", _message_context(crm))

        assert runs == []
        assert record.await_count == 1

    @pytest.mark.asyncio
    async def test_set_variable_is_rejected_outside_flows(
        self, automation_executor, automation_factory, crm
    ) -> None:
        await automation_factory(
            "message_received",
            actions=[
                {"type": "set_variable", "variable": "plano", "value": "pro"},
                {"type": "send_message", "content": "Olá"},
            ],
        )

        runs = await automation_executor.process_trigger("message_received", _message_context(crm))

        assert runs[0].status == "partial"
        assert runs[0].actions[0]["action"] == "set_variable"
        assert runs[0].actions[0]["status"] == "error"
        assert "only valid in chatbot flows" in runs[0].actions[0]["error"]
        assert runs[0].actions[1] == {"action": "send_message", "status": "success"}


class TestLoggingContext:
    @pytest.mark.asyncio
    async def test_subject_id_tracks_each_automation(
        self, automation_executor, automation_factory, crm
    ) -> None:
        first = await automation_factory("message_received", name="first")
        second = await automation_factory("message_received", name="second", priority=1)
        first_id, second_id = first.id, second.id

        with patch("omniflow.domain.services.automation_executor.set_subject_id") as set_subject:
            await automation_executor.process_trigger("message_received", _message_context(crm))

        assert [c.args[0] for c in set_subject.call_args_list] == [first_id, second_id, None]
