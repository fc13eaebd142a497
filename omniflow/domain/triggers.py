"""
Trigger Matching

The event context an automation or chatbot reacts to, the shared keyword
matcher, and the per-trigger-type structural filter on ``trigger_config``.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from omniflow.db.models.automation import AutomationTriggerType


class KeywordMatchMode(str, Enum):
    CONTAINS = "contains"
    EXACT = "exact"
    STARTS_WITH = "starts_with"


# chatbots נשמרו היסטורית עם "startsWith"
_MATCH_MODE_ALIASES = {"startsWith": KeywordMatchMode.STARTS_WITH}


class TriggerContext(BaseModel):
    """Domain event payload. Serialised with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    contact_id: Optional[str] = Field(default=None, alias="contactId")
    deal_id: Optional[str] = Field(default=None, alias="dealId")
    channel_id: Optional[str] = Field(default=None, alias="channelId")
    message_content: Optional[str] = Field(default=None, alias="messageContent")
    tag_id: Optional[str] = Field(default=None, alias="tagId")
    from_stage_id: Optional[str] = Field(default=None, alias="fromStageId")
    to_stage_id: Optional[str] = Field(default=None, alias="toStageId")
    pipeline_id: Optional[str] = Field(default=None, alias="pipelineId")
    user_id: Optional[str] = Field(default=None, alias="userId")

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def lookup(self, field: str) -> Any:
        """Field resolution for automation conditions"""
        attr = _CONDITION_FIELDS.get(field)
        return getattr(self, attr) if attr else None


_CONDITION_FIELDS = {
    "messageContent": "message_content",
    "conversationId": "conversation_id",
    "contactId": "contact_id",
    "channelId": "channel_id",
    "dealId": "deal_id",
    "tagId": "tag_id",
}


def resolve_match_mode(raw: Optional[str]) -> KeywordMatchMode:
    if not raw:
        return KeywordMatchMode.CONTAINS
    if raw in _MATCH_MODE_ALIASES:
        return _MATCH_MODE_ALIASES[raw]
    try:
        return KeywordMatchMode(raw)
    except ValueError:
        return KeywordMatchMode.CONTAINS


def matches_keywords(
    content: str,
    keywords: Iterable[str],
    match_mode: Optional[str] = None,
) -> bool:
    """True if any keyword matches ``content`` (case-insensitive)"""
    mode = resolve_match_mode(match_mode)
    lowered = (content or "").lower()
    for keyword in keywords:
        candidate = str(keyword).lower()
        if mode == KeywordMatchMode.EXACT:
            matched = lowered == candidate
        elif mode == KeywordMatchMode.STARTS_WITH:
            matched = lowered.startswith(candidate)
        else:
            matched = candidate in lowered
        if matched:
            return True
    return False


def _match_message_received(config: Mapping[str, Any], context: TriggerContext) -> bool:
    channel_ids = config.get("channelIds") or []
    if channel_ids and context.channel_id and context.channel_id not in channel_ids:
        return False

    keywords = config.get("keywords") or []
    if keywords and context.message_content:
        return matches_keywords(context.message_content, keywords, config.get("matchMode"))
    return True


def _match_deal_stage_changed(config: Mapping[str, Any], context: TriggerContext) -> bool:
    pipeline_id = config.get("pipelineId")
    from_stage_id = config.get("fromStageId")
    to_stage_id = config.get("toStageId")

    if pipeline_id and context.pipeline_id != pipeline_id:
        return False
    if from_stage_id and context.from_stage_id != from_stage_id:
        return False
    if to_stage_id and context.to_stage_id != to_stage_id:
        return False
    return True


def _match_tag_change(config: Mapping[str, Any], context: TriggerContext) -> bool:
    tag_ids = config.get("tagIds") or []
    if tag_ids and context.tag_id:
        return context.tag_id in tag_ids
    return True


_TRIGGER_MATCHERS = {
    AutomationTriggerType.MESSAGE_RECEIVED: _match_message_received,
    AutomationTriggerType.DEAL_STAGE_CHANGED: _match_deal_stage_changed,
    AutomationTriggerType.TAG_ADDED: _match_tag_change,
    AutomationTriggerType.TAG_REMOVED: _match_tag_change,
}


def matches_trigger_config(
    trigger_type: AutomationTriggerType | str,
    trigger_config: Optional[Mapping[str, Any]],
    context: TriggerContext,
) -> bool:
    """
    Cheap structural filter applied before conditions.

    Trigger types without a filter always match.
    """
    try:
        trigger_type = AutomationTriggerType(trigger_type)
    except ValueError:
        return True
    matcher = _TRIGGER_MATCHERS.get(trigger_type)
    if matcher is None:
        return True
    return matcher(trigger_config or {}, context)


class InboundMessage(BaseModel):
    """Inbound conversational event routed to the flow engine"""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    conversation_id: str = Field(alias="conversationId")
    contact_id: str = Field(alias="contactId")
    channel_id: str = Field(alias="channelId")
    content: str = ""
