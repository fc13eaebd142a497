"""
Typed Actions

Closed set of action kinds shared by automations and flow action nodes.
Stored JSON uses camelCase keys; legacy type names (``move_deal``,
``send_webhook``, flow ``webhook``) are accepted on input.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from omniflow.core.exceptions import InvalidActionError


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


_UNIT_SECONDS = {
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 60 * 60,
    DelayUnit.DAYS: 24 * 60 * 60,
}


def to_seconds(duration: float, unit: DelayUnit | str | None = None) -> float:
    """Unknown or missing units count as seconds"""
    try:
        resolved = DelayUnit(unit) if unit else DelayUnit.SECONDS
    except ValueError:
        resolved = DelayUnit.SECONDS
    return float(duration) * _UNIT_SECONDS[resolved]


class _Action(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def action_name(self) -> str:
        return self.type


class SendMessageAction(_Action):
    type: Literal["send_message"]
    content: str = ""
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")
    # שניות המתנה לפני השליחה (חוסם את ה-firing)
    delay: float = Field(default=0, ge=0)


class AddTagAction(_Action):
    type: Literal["add_tag"]
    tag_id: str = Field(alias="tagId", min_length=1)


class RemoveTagAction(_Action):
    type: Literal["remove_tag"]
    tag_id: str = Field(alias="tagId", min_length=1)


class AssignUserAction(_Action):
    type: Literal["assign_user"]
    user_id: str = Field(
        validation_alias=AliasChoices("userId", "assigneeId", "user_id"),
        serialization_alias="userId",
        min_length=1,
    )


class MoveDealStageAction(_Action):
    type: Literal["move_deal_stage", "move_deal"]
    stage_id: str = Field(alias="stageId", min_length=1)


class CreateNotificationAction(_Action):
    type: Literal["create_notification"]
    title: str
    body: str = ""
    user_id: Optional[str] = Field(default=None, alias="userId")


class CallWebhookAction(_Action):
    type: Literal["call_webhook", "send_webhook", "webhook"]
    url: str = Field(
        validation_alias=AliasChoices("url", "webhook"),
        serialization_alias="url",
        min_length=1,
    )
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)


class SynchronousDelayAction(_Action):
    """``wait``: sleeps inside the automation firing. Not the flow delay node."""
    type: Literal["wait"]
    duration: float = Field(ge=0)
    unit: DelayUnit = DelayUnit.SECONDS

    @property
    def seconds(self) -> float:
        return to_seconds(self.duration, self.unit)


class SetVariableAction(_Action):
    """Flow-only: writes one execution variable"""
    type: Literal["set_variable"]
    variable: str = Field(min_length=1)
    value: Any = None


Action = Annotated[
    Union[
        SendMessageAction,
        AddTagAction,
        RemoveTagAction,
        AssignUserAction,
        MoveDealStageAction,
        CreateNotificationAction,
        CallWebhookAction,
        SynchronousDelayAction,
        SetVariableAction,
    ],
    Field(discriminator="type"),
]

_action_adapter = TypeAdapter(Action)


def parse_action(raw: Any) -> Action:
    """
    Validate a stored action dict into its typed model.

    Raises:
        InvalidActionError: unknown type or malformed parameters
    """
    if isinstance(raw, _Action):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidActionError("unknown", "action must be an object")

    action_type = str(raw.get("type") or "unknown")
    try:
        return _action_adapter.validate_python(dict(raw))
    except ValidationError as e:
        reasons = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'action'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidActionError(action_type, reasons) from e


def parse_node_action(config: Mapping[str, Any]) -> Action:
    """Flow action nodes keep the verb under ``action`` instead of ``type``"""
    data = dict(config or {})
    data["type"] = data.pop("action", None) or data.get("type")
    return parse_action(data)
