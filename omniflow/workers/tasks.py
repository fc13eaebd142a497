"""
Celery Tasks

Entry points for the engines (domain events, inbound messages, due delay
timers) and the worker side of the transactional outbox.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any

from omniflow.workers.celery_app import celery_app
from omniflow.core.config import settings
from omniflow.core.logging import get_logger, log_async_operation, set_correlation_id
from omniflow.db.database import get_task_session
from omniflow.domain.services.automation_executor import AutomationExecutor
from omniflow.domain.services.flow_timer_service import FlowTimerService
from omniflow.domain.services.outbox_service import OutboxService
from omniflow.state_machine.flow_executor import FlowExecutor, ResumeOutcome

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop: ה-client קשור ל-loop הזה
            from omniflow.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro, correlation_id: str | None = None):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id(correlation_id)

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ==================== Engines ====================


async def _process_automation_trigger(trigger_type: str, context: dict) -> dict:
    async with get_task_session() as db:
        runs = await AutomationExecutor(db).process_trigger(trigger_type, context)
        return {
            "trigger_type": trigger_type,
            "fired": len(runs),
            "runs": [run.to_dict() for run in runs],
        }


@celery_app.task(name="omniflow.workers.tasks.process_automation_trigger")
def process_automation_trigger(trigger_type: str, context: dict, correlation_id: str | None = None):
    """Run the automation engine for one domain event"""
    return run_async(_process_automation_trigger(trigger_type, context), correlation_id)


async def _process_inbound_message(event: dict) -> dict:
    async with get_task_session() as db:
        return await FlowExecutor(db).route_inbound_message(event)


@celery_app.task(name="omniflow.workers.tasks.process_inbound_message")
def process_inbound_message(event: dict, correlation_id: str | None = None):
    """Continue or start a chatbot flow for one inbound message"""
    return run_async(_process_inbound_message(event), correlation_id)


@log_async_operation("process_due_flow_timers")
async def _process_due_flow_timers() -> dict:
    async with get_task_session() as db:
        timers = FlowTimerService(db)
        due = await timers.claim_due(limit=settings.FLOW_TIMER_BATCH_SIZE)
        executor = FlowExecutor(db)

        resumed = 0
        released = 0
        for timer in due:
            # timer שנכשל לא עוצר את השאר
            try:
                outcome = await executor.resume_after_delay(
                    timer["execution_id"],
                    timer["node_id"],
                    expected_version=timer["expected_version"],
                )
            except Exception as e:
                await db.rollback()
                logger.error(
                    "Flow timer resume failed",
                    extra_data={"timer_id": timer["timer_id"], "error": str(e)},
                    exc_info=True,
                )
                outcome = ResumeOutcome.ABORTED

            # fired רק אחרי החלטה סופית; אחרת ה-timer חוזר לתור
            if outcome == ResumeOutcome.ABORTED:
                await timers.release(timer["timer_id"])
                released += 1
            else:
                await timers.complete(timer["timer_id"])
                if outcome == ResumeOutcome.RESUMED:
                    resumed += 1
        return {"claimed": len(due), "resumed": resumed, "released": released}


@celery_app.task(name="omniflow.workers.tasks.process_due_flow_timers")
def process_due_flow_timers():
    """Resume executions whose delay node timer is due"""
    return run_async(_process_due_flow_timers())


@log_async_operation("cleanup_flow_timers")
async def _cleanup_flow_timers(days: int) -> dict:
    async with get_task_session() as db:
        deleted = await FlowTimerService(db).cleanup(days)
        return {"deleted": deleted}


@celery_app.task(name="omniflow.workers.tasks.cleanup_flow_timers")
def cleanup_flow_timers(days: int | None = None):
    """Delete fired/cancelled timers past the retention window"""
    return run_async(_cleanup_flow_timers(days or settings.FLOW_TIMER_RETENTION_DAYS))


# ==================== Outbox relay ====================


def _publish_send_job(payload: dict[str, Any]) -> None:
    """מסירה ל-worker החיצוני של ספקי השליחה (WhatsApp/Meta)"""
    celery_app.send_task(
        settings.DELIVERY_TASK_NAME,
        args=[payload],
        queue=settings.DELIVERY_QUEUE_NAME,
    )


async def _relay_single_message(outbox_id: str, payload: dict) -> tuple[bool, str | None]:
    async with get_task_session() as db:
        outbox_service = OutboxService(db)
        await outbox_service.mark_as_processing(outbox_id)
        try:
            _publish_send_job(payload)
        except Exception as e:
            logger.error(
                "Outbox relay failed",
                extra_data={"outbox_id": outbox_id, "error": str(e)},
                exc_info=True,
            )
            await outbox_service.mark_as_failed(outbox_id, str(e))
            return False, str(e)
        await outbox_service.mark_as_sent(outbox_id)
        return True, None


@log_async_operation("relay_outbox_messages")
async def _relay_outbox_messages(limit: int) -> list[dict]:
    async with get_task_session() as db:
        pending = await OutboxService(db).get_pending_messages(limit=limit)
        jobs = [(m.id, dict(m.payload or {})) for m in pending]

    results = []
    for outbox_id, payload in jobs:
        success, error = await _relay_single_message(outbox_id, payload)
        results.append({"outbox_id": outbox_id, "success": success, "error": error})
    return results


@celery_app.task(name="omniflow.workers.tasks.relay_outbox_messages")
def relay_outbox_messages(limit: int = 50):
    """
    Publish pending outbox jobs to the delivery worker.
    Failed publishes are retried with exponential backoff.
    """
    return run_async(_relay_outbox_messages(limit))
