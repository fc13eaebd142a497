"""
בדיקות ל-omniflow/domain/actions.py: פענוח פעולות טיפוסיות
"""
import pytest

from omniflow.core.exceptions import InvalidActionError
from omniflow.domain.actions import (
    AssignUserAction,
    CallWebhookAction,
    MoveDealStageAction,
    SendMessageAction,
    SetVariableAction,
    SynchronousDelayAction,
    parse_action,
    parse_node_action,
    to_seconds,
)


class TestParseAction:
    @pytest.mark.unit
    def test_send_message(self):
        action = parse_action({"type": "send_message", "content": "Olá", "mediaUrl": "https://x/img.png"})
        assert isinstance(action, SendMessageAction)
        assert action.media_url == "https://x/img.png"
        assert action.delay == 0

    @pytest.mark.unit
    def test_legacy_type_names(self):
        assert isinstance(parse_action({"type": "move_deal", "stageId": "s2"}), MoveDealStageAction)
        webhook = parse_action({"type": "send_webhook", "url": "https://hooks.example.com"})
        assert isinstance(webhook, CallWebhookAction)
        assert webhook.method == "POST"

    @pytest.mark.unit
    def test_assign_user_accepts_assignee_alias(self):
        action = parse_action({"type": "assign_user", "assigneeId": "u1"})
        assert isinstance(action, AssignUserAction)
        assert action.user_id == "u1"

    @pytest.mark.unit
    def test_unknown_type_raises(self):
        with pytest.raises(InvalidActionError) as exc_info:
            parse_action({"type": "teleport"})
        assert exc_info.value.action_type == "teleport"

    @pytest.mark.unit
    def test_missing_required_field_raises(self):
        with pytest.raises(InvalidActionError):
            parse_action({"type": "add_tag"})

    @pytest.mark.unit
    def test_non_object_raises(self):
        with pytest.raises(InvalidActionError):
            parse_action(["send_message"])

    @pytest.mark.unit
    def test_wait_seconds(self):
        action = parse_action({"type": "wait", "duration": 2, "unit": "minutes"})
        assert isinstance(action, SynchronousDelayAction)
        assert action.seconds == 120


class TestParseNodeAction:
    @pytest.mark.unit
    def test_flow_webhook_node(self):
        action = parse_node_action({"action": "webhook", "webhook": "https://hooks.example.com/flow"})
        assert isinstance(action, CallWebhookAction)
        assert action.url == "https://hooks.example.com/flow"

    @pytest.mark.unit
    def test_set_variable_node(self):
        action = parse_node_action({"action": "set_variable", "variable": "plano", "value": "pro"})
        assert isinstance(action, SetVariableAction)


class TestToSeconds:
    @pytest.mark.unit
    @pytest.mark.parametrize("duration,unit,expected", [
        (5, "seconds", 5),
        (2, "minutes", 120),
        (1, "hours", 3600),
        (1, "days", 86400),
        (3, None, 3),
        (3, "fortnights", 3),
    ])
    def test_units(self, duration, unit, expected):
        assert to_seconds(duration, unit) == expected
