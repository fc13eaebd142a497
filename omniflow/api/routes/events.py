"""
Event intake: CRM services publish domain events and inbound messages here.

העיבוד עצמו אסינכרוני ב-Celery; ה-endpoint רק מאמת ומכניס לתור.
"""
from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from omniflow.core.logging import get_correlation_id, get_logger
from omniflow.db.models.automation import AutomationTriggerType
from omniflow.domain.triggers import InboundMessage, TriggerContext
from omniflow.workers.tasks import process_automation_trigger, process_inbound_message

logger = get_logger(__name__)

router = APIRouter()


class TriggerEventRequest(BaseModel):
    """אירוע דומיין שמפעיל אוטומציות"""

    model_config = ConfigDict(populate_by_name=True)

    trigger_type: AutomationTriggerType = Field(alias="triggerType")
    context: TriggerContext


class AcceptedResponse(BaseModel):
    status: str = "accepted"


@router.post(
    "/triggers",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="פרסום אירוע דומיין למנוע האוטומציות",
)
async def publish_trigger(request: TriggerEventRequest) -> AcceptedResponse:
    process_automation_trigger.delay(
        request.trigger_type.value,
        request.context.snapshot(),
        correlation_id=get_correlation_id(),
    )
    logger.info(
        "Trigger event queued",
        extra_data={
            "trigger_type": request.trigger_type.value,
            "tenant_id": request.context.tenant_id,
        },
    )
    return AcceptedResponse()


@router.post(
    "/messages",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="הודעה נכנסת למנוע ה-chatbots",
)
async def publish_inbound_message(message: InboundMessage) -> AcceptedResponse:
    process_inbound_message.delay(
        message.model_dump(by_alias=True),
        correlation_id=get_correlation_id(),
    )
    logger.info(
        "Inbound message queued",
        extra_data={
            "conversation_id": message.conversation_id,
            "tenant_id": message.tenant_id,
        },
    )
    return AcceptedResponse()
