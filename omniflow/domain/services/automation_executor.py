"""
Automation Trigger Engine

On a domain event: load the tenant's active automations for the trigger type
(ascending priority), filter by trigger config and conditions, run each
matching automation's actions in order, and append one audit log row per
firing. Errors never escape process_trigger().
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from omniflow.core.exceptions import InvalidActionError
from omniflow.core.logging import get_logger, set_subject_id
from omniflow.db.database import generate_uuid, utcnow
from omniflow.db.models.automation import Automation, AutomationStatus, AutomationTriggerType
from omniflow.db.models.automation_log import AutomationExecutionLog, AutomationLogStatus
from omniflow.domain.actions import SetVariableAction, parse_action
from omniflow.domain.conditions import evaluate_conditions
from omniflow.domain.services.action_executor import ActionContext, ActionExecutor
from omniflow.domain.triggers import TriggerContext, matches_trigger_config

logger = get_logger(__name__)


@dataclass
class _Candidate:
    """עותק של שורת automation: לא מושפע מ-rollback של ה-session"""
    id: str
    name: str
    trigger_config: dict
    conditions: list
    actions: Any

    @classmethod
    def from_row(cls, row: Automation) -> "_Candidate":
        return cls(
            id=row.id,
            name=row.name,
            trigger_config=dict(row.trigger_config or {}),
            conditions=list(row.conditions or []),
            actions=row.actions if row.actions is not None else [],
        )


@dataclass
class AutomationRun:
    """Outcome of one firing, mirroring its audit log row"""
    automation_id: str
    status: str
    actions: list[dict] = field(default_factory=list)
    error_message: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "automation_id": self.automation_id,
            "status": self.status,
            "actions": self.actions,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }


class AutomationExecutor:
    def __init__(self, db: AsyncSession, action_executor: Optional[ActionExecutor] = None):
        self.db = db
        self.actions = action_executor or ActionExecutor.for_session(db)

    async def process_trigger(
        self,
        trigger_type: AutomationTriggerType | str,
        context: TriggerContext | Mapping[str, Any],
    ) -> list[AutomationRun]:
        """
        Fire every matching automation for the event.

        Returns the runs that fired (skipped automations are not listed).
        Never raises: the event source always completes.
        """
        try:
            if not isinstance(context, TriggerContext):
                context = TriggerContext.model_validate(context)
            trigger_type = AutomationTriggerType(trigger_type)
            candidates = await self._load_candidates(context.tenant_id, trigger_type)
        except Exception as e:
            logger.error(
                "Failed to load automations for trigger",
                extra_data={"trigger_type": str(trigger_type), "error": str(e)},
                exc_info=True,
            )
            return []

        logger.info(
            "Processing automation trigger",
            extra_data={
                "trigger_type": trigger_type.value,
                "tenant_id": context.tenant_id,
                "candidates": len(candidates),
            },
        )

        runs: list[AutomationRun] = []
        for candidate in candidates:
            try:
                run = await self._fire(candidate, trigger_type, context)
            except SQLAlchemyError as e:
                # כשלון בכתיבת audit log עוצר את שאר האוטומציות של האירוע
                await self._safe_rollback()
                logger.error(
                    "Automation log write failed, aborting trigger",
                    extra_data={"automation_id": candidate.id, "error": str(e)},
                    exc_info=True,
                )
                break
            if run is not None:
                runs.append(run)
        set_subject_id(None)
        return runs

    async def _load_candidates(
        self, tenant_id: str, trigger_type: AutomationTriggerType
    ) -> list[_Candidate]:
        result = await self.db.execute(
            select(Automation)
            .where(
                Automation.tenant_id == tenant_id,
                Automation.trigger_type == trigger_type.value,
                Automation.status == AutomationStatus.ACTIVE.value,
            )
            .order_by(Automation.priority.asc(), Automation.created_at.asc())
        )
        return [_Candidate.from_row(row) for row in result.scalars().all()]

    async def _fire(
        self,
        candidate: _Candidate,
        trigger_type: AutomationTriggerType,
        context: TriggerContext,
    ) -> Optional[AutomationRun]:
        set_subject_id(candidate.id)
        started = time.monotonic()
        error_message = None
        try:
            if not matches_trigger_config(trigger_type, candidate.trigger_config, context):
                logger.debug(
                    "Automation skipped: trigger config mismatch",
                    extra_data={"automation_id": candidate.id},
                )
                return None
            if not evaluate_conditions(candidate.conditions, context.lookup):
                logger.debug(
                    "Automation skipped: conditions not met",
                    extra_data={"automation_id": candidate.id},
                )
                return None

            if not isinstance(candidate.actions, list):
                raise InvalidActionError("actions", "actions must be a list")
            outcomes = await self._run_actions(candidate, ActionContext.from_trigger(context))
            if any(o["status"] == "error" for o in outcomes):
                status = AutomationLogStatus.PARTIAL.value
            else:
                status = AutomationLogStatus.SUCCESS.value
        except Exception as e:
            await self._safe_rollback()
            logger.error(
                "Automation pipeline failed",
                extra_data={"automation_id": candidate.id, "error": str(e)},
                exc_info=True,
            )
            outcomes = []
            status = AutomationLogStatus.ERROR.value
            error_message = str(e)

        run = AutomationRun(
            automation_id=candidate.id,
            status=status,
            actions=outcomes,
            error_message=error_message,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        await self._record(run, context)

        logger.info(
            "Automation fired",
            extra_data={
                "automation_id": candidate.id,
                "automation_name": candidate.name,
                "status": run.status,
                "actions": len(outcomes),
                "duration_ms": run.duration_ms,
            },
        )
        return run

    async def _run_actions(self, candidate: _Candidate, action_context: ActionContext) -> list[dict]:
        """
        Actions run sequentially in list order. Each one commits on success and
        rolls back on failure, so a failed action never undoes an earlier one.
        """
        outcomes: list[dict] = []
        for raw in candidate.actions:
            action_type = raw.get("type", "unknown") if isinstance(raw, Mapping) else "unknown"
            try:
                action = parse_action(raw)
                action_type = action.type
                if isinstance(action, SetVariableAction):
                    # אין משתני flow באוטומציה
                    raise InvalidActionError(action_type, "set_variable is only valid in chatbot flows")
                await self.actions.execute(action, action_context)
                await self.db.commit()
                outcomes.append({"action": action_type, "status": "success"})
            except Exception as e:
                await self._safe_rollback()
                logger.warning(
                    "Automation action failed",
                    extra_data={
                        "automation_id": candidate.id,
                        "action": action_type,
                        "error": str(e),
                    },
                )
                outcomes.append({"action": action_type, "status": "error", "error": str(e)})
        return outcomes

    async def _record(self, run: AutomationRun, context: TriggerContext) -> None:
        now = utcnow()
        self.db.add(AutomationExecutionLog(
            id=generate_uuid(),
            automation_id=run.automation_id,
            tenant_id=context.tenant_id,
            triggered_by=context.snapshot(),
            actions_executed=run.actions,
            status=run.status,
            error_message=run.error_message,
            duration_ms=run.duration_ms,
            created_at=now,
        ))
        if run.status != AutomationLogStatus.ERROR.value:
            await self.db.execute(
                update(Automation)
                .where(Automation.id == run.automation_id)
                .values(
                    run_count=Automation.run_count + 1,
                    last_run_at=now,
                    updated_at=now,
                )
            )
        await self.db.commit()

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback failed", extra_data={"error": str(e)})
