"""
בדיקות ל-omniflow/domain/triggers.py: התאמת מילות מפתח וסינון trigger_config
"""
import pytest

from omniflow.db.models.automation import AutomationTriggerType
from omniflow.domain.triggers import (
    KeywordMatchMode,
    TriggerContext,
    matches_keywords,
    matches_trigger_config,
    resolve_match_mode,
)


def _ctx(**kwargs) -> TriggerContext:
    return TriggerContext(tenantId="tenant-1", **kwargs)


class TestKeywordMatching:
    @pytest.mark.unit
    def test_contains_is_default(self):
        assert matches_keywords("Oi, tudo bem?", ["oi"]) is True

    @pytest.mark.unit
    def test_exact(self):
        assert matches_keywords("OI", ["oi"], "exact") is True
        assert matches_keywords("oi!", ["oi"], "exact") is False

    @pytest.mark.unit
    def test_starts_with_and_legacy_alias(self):
        assert matches_keywords("menu principal", ["menu"], "starts_with") is True
        assert matches_keywords("abrir menu", ["menu"], "startsWith") is False

    @pytest.mark.unit
    def test_no_keywords_never_match(self):
        assert matches_keywords("qualquer", []) is False

    @pytest.mark.unit
    def test_unknown_mode_falls_back_to_contains(self):
        assert resolve_match_mode("fuzzy") == KeywordMatchMode.CONTAINS


class TestMessageReceivedConfig:
    @pytest.mark.unit
    def test_channel_filter(self):
        config = {"channelIds": ["ch-1"]}
        assert matches_trigger_config("message_received", config, _ctx(channelId="ch-1"))
        assert not matches_trigger_config("message_received", config, _ctx(channelId="ch-2"))

    @pytest.mark.unit
    def test_keywords_filter(self):
        config = {"keywords": ["preço"], "matchMode": "contains"}
        assert matches_trigger_config("message_received", config, _ctx(messageContent="Qual o PREÇO?"))
        assert not matches_trigger_config("message_received", config, _ctx(messageContent="bom dia"))

    @pytest.mark.unit
    def test_keywords_ignored_without_content(self):
        config = {"keywords": ["preço"]}
        assert matches_trigger_config("message_received", config, _ctx())


class TestDealStageChangedConfig:
    @pytest.mark.unit
    def test_all_set_filters_must_match(self):
        config = {"pipelineId": "p1", "toStageId": "won"}
        assert matches_trigger_config(
            AutomationTriggerType.DEAL_STAGE_CHANGED, config, _ctx(pipelineId="p1", toStageId="won")
        )
        assert not matches_trigger_config(
            AutomationTriggerType.DEAL_STAGE_CHANGED, config, _ctx(pipelineId="p1", toStageId="lost")
        )


class TestTagConfig:
    @pytest.mark.unit
    @pytest.mark.parametrize("trigger_type", ["tag_added", "tag_removed"])
    def test_tag_filter(self, trigger_type):
        config = {"tagIds": ["t1"]}
        assert matches_trigger_config(trigger_type, config, _ctx(tagId="t1"))
        assert not matches_trigger_config(trigger_type, config, _ctx(tagId="t2"))


class TestOtherTriggers:
    @pytest.mark.unit
    def test_types_without_filter_always_match(self):
        assert matches_trigger_config("contact_created", {"anything": 1}, _ctx())

    @pytest.mark.unit
    def test_context_lookup_and_snapshot(self):
        ctx = _ctx(conversationId="c1", messageContent="oi")
        assert ctx.lookup("messageContent") == "oi"
        assert ctx.lookup("unknownField") is None
        assert ctx.snapshot() == {"tenantId": "tenant-1", "conversationId": "c1", "messageContent": "oi"}
