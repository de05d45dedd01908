import dataclasses
import logging

import pytest

from frontdesk.company_config import (
    CORE_SLOT_IDS,
    REASON_SLOT_ID,
    CompanyConfig,
    ConfigError,
    ConfirmMode,
    LoopAction,
    SlotType,
    TenantConfigCache,
)


class TestDefaults:
    def test_minimal_document(self):
        config = CompanyConfig.from_dict({"company_id": "acme"})
        assert set(CORE_SLOT_IDS) <= config.slot_ids
        assert REASON_SLOT_ID in config.slot_ids
        assert config.max_reprompts == 2
        assert config.loop_action is LoopAction.REPHRASE
        assert config.max_turns_per_call == 30
        assert config.cascade.latency_ceiling_ms == 500
        assert config.triage.min_confidence == 0.62

    def test_default_flows_are_ordered(self):
        config = CompanyConfig.from_dict({"company_id": "acme"})
        assert [s.slot_id for s in config.discovery_steps] == [
            REASON_SLOT_ID, "name", "last_name", "address", "phone",
        ]
        assert [s.slot_id for s in config.booking_steps] == ["name", "address", "phone", "time"]

    def test_phone_confirmed_only_when_caller_supplied(self):
        config = CompanyConfig.from_dict({"company_id": "acme"})
        phone_step = next(s for s in config.discovery_steps if s.slot_id == "phone")
        assert phone_step.confirm_mode is ConfirmMode.CONFIRM_IF_CALLER_SUPPLIED


class TestLoading:
    def test_core_slot_restored(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = CompanyConfig.from_dict({
                "company_id": "acme",
                "slots": [{"id": "name", "type": "name"}, {"id": "unit_type", "type": "enum", "options": ["furnace", "ac"]}],
            })
        assert set(CORE_SLOT_IDS) <= config.slot_ids
        assert config.slot("unit_type").type is SlotType.ENUM
        assert config.slot("unit_type").options == ("furnace", "ac")
        assert "Core slot phone missing" in caplog.text

    def test_duplicate_step_orders_normalized(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = CompanyConfig.from_dict({
                "company_id": "acme",
                "discovery_steps": [
                    {"step_id": "a", "slot_id": "name", "ask": "Name?", "order": 1},
                    {"step_id": "b", "slot_id": "phone", "ask": "Phone?", "order": 1},
                    {"step_id": "c", "slot_id": "address", "ask": "Address?", "order": 0},
                ],
            })
        assert [s.step_id for s in config.discovery_steps] == ["c", "a", "b"]
        assert [s.order for s in config.discovery_steps] == [0, 1, 2]
        assert "normalized" in caplog.text

    def test_cascade_and_messages(self):
        config = CompanyConfig.from_dict({
            "company_id": "acme",
            "cascade": {"disable_auto_replies": True, "allowed_content_types": ["faq"], "bogus": 1},
            "messages": {"fallback": "Say again?"},
        })
        assert config.cascade.disable_auto_replies is True
        assert config.cascade.allowed_content_types == frozenset({"faq"})
        assert config.messages.fallback == "Say again?"

    def test_snapshot_is_immutable(self, config):
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.max_reprompts = 5
        assert isinstance(config.responses, tuple)
        with pytest.raises(TypeError):
            config.intent_patterns["x"] = {}

    def test_loop_action(self):
        config = CompanyConfig.from_dict({"company_id": "acme", "loop_action": "skip"})
        assert config.loop_action is LoopAction.SKIP


class TestInvalidDocuments:
    def test_not_a_dict(self):
        with pytest.raises(ConfigError):
            CompanyConfig.from_dict(["acme"])

    def test_missing_company_id(self):
        with pytest.raises(ConfigError):
            CompanyConfig.from_dict({"version": "1"})

    def test_unknown_slot_type(self):
        with pytest.raises(ConfigError):
            CompanyConfig.from_dict({"company_id": "acme", "slots": [{"id": "x", "type": "colour"}]})

    def test_unknown_confirm_mode(self):
        with pytest.raises(ConfigError):
            CompanyConfig.from_dict({
                "company_id": "acme",
                "discovery_steps": [{"slot_id": "name", "confirm_mode": "sometimes"}],
            })

    def test_unknown_loop_action(self):
        with pytest.raises(ConfigError):
            CompanyConfig.from_dict({"company_id": "acme", "loop_action": "panic"})

    def test_record_without_id(self):
        with pytest.raises(ConfigError):
            CompanyConfig.from_dict({"company_id": "acme", "responses": [{"response_text": "hi"}]})


class TestTenantConfigCache:
    def test_same_version_reuses_snapshot(self):
        cache = TenantConfigCache()
        first = cache.resolve({"company_id": "acme", "version": "3"})
        second = cache.resolve({"company_id": "acme", "version": "3", "company_name": "ignored"})
        assert first is second

    def test_new_version_reparses(self):
        cache = TenantConfigCache()
        first = cache.resolve({"company_id": "acme", "version": "3"})
        second = cache.resolve({"company_id": "acme", "version": "4", "company_name": "Acme"})
        assert first is not second
        assert second.company_name == "Acme"

    def test_rejects_non_dict(self):
        with pytest.raises(ConfigError):
            TenantConfigCache().resolve(None)
