import pytest
from conftest import make_config

from frontdesk.classification import (
    URGENCY_EMERGENCY,
    URGENCY_NORMAL,
    URGENCY_URGENT,
    assess_urgency,
    evaluate,
    is_safety_hazard,
)
from frontdesk.company_config import TriageSettings
from frontdesk.content_cards import ContentCardIndex


class TestIntent:
    def test_strong_signal(self, config):
        result = evaluate("my AC is not cooling", config)
        assert result.intent_guess == "service_request"
        # 0.35 strong + 0.05 for one symptom
        assert result.confidence == 0.4
        assert result.call_reason_detail == "not cooling"

    def test_strong_and_moderate_accumulate(self, config):
        result = evaluate("I need a quote for a new system", config)
        assert result.intent_guess == "estimate"
        assert result.confidence == 0.85

    def test_unmatched_is_other(self, config):
        result = evaluate("hello there", config)
        assert result.intent_guess == "other"
        assert result.confidence == 0.0
        assert result.call_reason_detail is None

    def test_empty_utterance(self, config):
        result = evaluate("", config)
        assert result.intent_guess == "other"
        assert result.signals.word_count == 0

    def test_long_narrative_promoted(self, config):
        text = (
            "so yesterday afternoon I noticed there was a lot of water dripping "
            "near the closet where the unit sits downstairs"
        )
        result = evaluate(text, config)
        assert result.intent_guess == "service_request"
        assert result.confidence == 0.55
        assert result.call_reason_detail == "water leak"

    def test_short_symptom_not_promoted(self, config):
        result = evaluate("water dripping", config)
        assert result.intent_guess == "other"
        assert result.confidence == 0.0

    def test_deterministic(self, config):
        text = "the furnace won't turn on and there's a weird noise, it's 45 degrees in here"
        assert evaluate(text, config) == evaluate(text, config)

    def test_tenant_category(self):
        config = make_config(intent_patterns={"pool": {"strong": [r"\bpool heater\b"]}})
        result = evaluate("calling about my pool heater", config)
        assert result.intent_guess == "pool"

    def test_tenant_weights(self):
        config = make_config(triage={"strong_weight": 0.5})
        assert evaluate("my AC is not cooling", config).confidence == 0.55


class TestContentCards:
    def test_card_hit_boosts(self):
        config = make_config(content_cards=[{"card_id": "filters", "keywords": ["filter"]}])
        index = ContentCardIndex.from_config(config)
        result = evaluate("my filter is dirty and the AC is not cooling", config, index)
        assert result.matched_content_id == "filters"
        assert result.confidence == 0.5

    def test_card_error_ignored(self, config):
        class Broken:
            def lookup(self, text):
                raise RuntimeError("index offline")

        result = evaluate("my AC is not cooling", config, Broken())
        assert result.matched_content_id is None
        assert result.confidence == 0.4


class TestUrgency:
    def test_gas_is_emergency(self, config):
        result = evaluate("gas smell, get someone now", config)
        assert result.urgency == URGENCY_EMERGENCY

    def test_retraction(self, config):
        result = evaluate("I thought I smelled gas but never mind, no gas", config)
        assert result.urgency == URGENCY_NORMAL

    @pytest.mark.parametrize("utterance", [
        "I smell gas but there's no smoke",
        "gas smell in the kitchen, no fire though",
        "nevermind the thermostat, I smell gas, get someone now",
    ])
    def test_other_hazard_negated_keeps_emergency(self, config, utterance):
        assert evaluate(utterance, config).urgency == URGENCY_EMERGENCY

    def test_negated_only_hazard(self, config):
        assert evaluate("no gas smell, the furnace just won't start", config).urgency == URGENCY_NORMAL

    def test_is_safety_hazard(self):
        assert is_safety_hazard("smoke coming from the vents")
        assert not is_safety_hazard("there was smoke earlier but forget I said that")
        assert not is_safety_hazard("my thermostat is blank")

    def test_vulnerable_occupant_without_heat(self, config):
        result = evaluate("my elderly mother lives here and we have no heat", config)
        assert result.urgency == URGENCY_EMERGENCY

    def test_no_heat_alone_is_not_emergency(self, config):
        assert evaluate("we have no heat", config).urgency == URGENCY_NORMAL

    def test_urgent_phrase(self, config):
        assert evaluate("I need someone out today", config).urgency == URGENCY_URGENT

    def test_hot_house_is_urgent(self, config):
        result = evaluate("it's 95 degrees in here", config)
        assert result.urgency == URGENCY_URGENT
        assert result.signals.temperature == 95
        assert result.call_reason_detail == "indoor temperature 95F"

    def test_assess_urgency_threshold_configurable(self):
        settings = TriageSettings(urgent_temperature=85)
        assert assess_urgency("it's warm", 86, settings) == URGENCY_URGENT
        assert assess_urgency("it's warm", 84, settings) == URGENCY_NORMAL
