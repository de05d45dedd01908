import asyncio
import json

import httpx
import pytest
import respx
from conftest import make_config

from frontdesk import cascade
from frontdesk.cascade import (
    CascadeContext,
    GenerativeTier,
    MatchResult,
    ResponseCascade,
    RuleTier,
    SemanticTier,
    Tier,
    cosine,
)
from frontdesk.circuit_breaker import CircuitBreaker
from frontdesk.events import EventLog

EMBED_URL = "https://embeddings.example.com/v1/embeddings"
CHAT_URL = "https://llm.example.com/v1/chat/completions"


class FakeTier(Tier):
    def __init__(self, number, confidence=None, content_id="hours", content_type="hours",
                 text="We're open 7 to 7.", error=None, delay=0.0, breaker=None):
        self.number = number
        self.name = f"fake{number}"
        self.confidence = confidence
        self.content_id = content_id
        self.content_type = content_type
        self.text = text
        self.error = error
        self.delay = delay
        self.breaker = breaker
        self.calls = 0

    async def best(self, utterance, context, triage):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.confidence is None:
            return None
        return MatchResult(False, self.number, self.content_id, self.content_type, self.confidence, self.text)


async def run(tiers, config=None, utterance="what are your hours", **context):
    config = config or make_config()
    events = EventLog(turn=1)
    outcome = await ResponseCascade(tiers).match(utterance, CascadeContext(config=config, **context), None, events)
    return outcome, events


class TestRuleTier:
    def test_phrase(self, config):
        record = config.responses[0]
        assert RuleTier().score("so what are your hours", record) == 0.95

    def test_keywords(self, config):
        record = config.responses[0]
        assert RuleTier().score("when do you close", record) == 0.7
        assert RuleTier().score("are you open, when do you close", record) == 0.9

    def test_negative_keyword_disqualifies(self, config):
        record = config.responses[1]
        assert RuleTier().score("how often should i change my filter, there's a leak", record) == 0.0


class TestTierOrder:
    @pytest.mark.asyncio
    async def test_stops_at_first_tier_over_threshold(self):
        t1, t2, t3 = FakeTier(1, 0.85), FakeTier(2, 0.99), FakeTier(3, 0.99)
        outcome, _ = await run([t3, t1, t2])
        assert outcome.selected
        assert outcome.result.tier == 1
        assert (t2.calls, t3.calls) == (0, 0)

    @pytest.mark.asyncio
    async def test_falls_through_below_threshold(self):
        t1, t2 = FakeTier(1, 0.5), FakeTier(2, 0.9)
        outcome, events = await run([t1, t2])
        assert outcome.result.tier == 2
        assert events.of_type("cascade_evaluated")[0].data["tiers_attempted"] == ["fake1", "fake2"]

    @pytest.mark.asyncio
    async def test_below_threshold(self):
        outcome, events = await run([FakeTier(1, 0.6)])
        assert outcome.result is None
        assert outcome.reason == cascade.BELOW_THRESHOLD
        assert events.of_type("cascade_evaluated")[0].data["best"]["score"] == 0.6

    @pytest.mark.asyncio
    async def test_no_match(self):
        outcome, _ = await run([FakeTier(1)])
        assert outcome.reason == cascade.NO_MATCH


class TestGating:
    @pytest.mark.asyncio
    async def test_kill_switch(self):
        tier = FakeTier(1, 0.95)
        outcome, events = await run([tier], kill_switch=True)
        assert outcome.reason == cascade.GATED_KILL_SWITCH
        assert tier.calls == 0
        assert events.of_type("cascade_evaluated")[0].data["tiers_attempted"] == []

    @pytest.mark.asyncio
    async def test_disabled_auto_replies_beats_perfect_match(self):
        config = make_config(cascade={"disable_auto_replies": True})
        outcome, events = await run([RuleTier()], config=config)
        assert outcome.result is None
        assert outcome.reason == cascade.GATED_DISABLED
        assert events.of_type("cascade_evaluated")[0].data["reason"] == "gated_disabled"

    @pytest.mark.asyncio
    async def test_empty_allow_list(self):
        config = make_config(cascade={"allowed_content_types": []})
        outcome, _ = await run([RuleTier()], config=config)
        assert outcome.reason == cascade.GATED_EMPTY_ALLOWLIST


class TestUsability:
    @pytest.mark.asyncio
    async def test_renders_company_name(self):
        outcome, _ = await run([RuleTier()])
        assert outcome.selected
        assert outcome.result.response_text.startswith("Acme Heating is open")
        assert outcome.result.content_id == "hours"

    @pytest.mark.asyncio
    async def test_content_type_not_allowed(self):
        outcome, _ = await run([RuleTier()], utterance="do you have any specials")
        assert outcome.result is None
        assert outcome.reason == cascade.GATED_CONTENT_TYPE

    @pytest.mark.asyncio
    async def test_empty_text(self):
        outcome, _ = await run([FakeTier(1, 0.9, text="  ")])
        assert outcome.reason == cascade.NO_RESPONSE_TEXT

    @pytest.mark.asyncio
    async def test_unresolved_placeholder(self):
        outcome, _ = await run([FakeTier(1, 0.9, text="Thanks {name}, we open at 7.")])
        assert outcome.reason == cascade.UNRESOLVED_PLACEHOLDERS

    @pytest.mark.asyncio
    async def test_placeholder_filled_from_slots(self):
        outcome, _ = await run([FakeTier(1, 0.9, text="Thanks {name}, we open at 7.")], slot_values={"name": "Sarah"})
        assert outcome.result.response_text == "Thanks Sarah, we open at 7."


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_falls_through(self):
        t1 = FakeTier(1, error=RuntimeError("index broken"))
        t2 = FakeTier(2, 0.9)
        outcome, events = await run([t1, t2])
        assert outcome.result.tier == 2
        assert events.of_type("cascade_evaluated")[0].data["errors"] == {"fake1": "index broken"}

    @pytest.mark.asyncio
    async def test_error_without_match_is_critical(self):
        outcome, events = await run([FakeTier(1, error=RuntimeError("index broken"))])
        assert outcome.reason == cascade.ERROR
        assert events.of_type("cascade_evaluated")[0].critical

    @pytest.mark.asyncio
    async def test_timeout_cancels_and_trips_breaker(self):
        breaker = CircuitBreaker(failure_threshold=1)
        slow = FakeTier(2, 0.99, delay=1.0, breaker=breaker)
        config = make_config(cascade={"latency_ceiling_ms": 20})
        outcome, events = await run([FakeTier(1, 0.5), slow], config=config)
        assert outcome.reason == cascade.TIMEOUT
        assert outcome.result is None
        assert breaker.is_open
        assert events.of_type("cascade_evaluated")[0].critical

    @pytest.mark.asyncio
    async def test_open_breaker_skips_tier(self):
        breaker = CircuitBreaker(failure_threshold=1)
        breaker.failed()
        tier = FakeTier(2, 0.99, breaker=breaker)
        outcome, events = await run([FakeTier(1), tier])
        assert tier.calls == 0
        assert outcome.reason == cascade.CIRCUIT_OPEN
        assert events.of_type("cascade_evaluated")[0].data["tiers_skipped"] == {"fake2": "circuit_open"}

    @pytest.mark.asyncio
    async def test_exactly_one_event(self):
        _, events = await run([FakeTier(1, 0.85), FakeTier(2, 0.9)])
        assert len(events.of_type("cascade_evaluated")) == 1


def test_cosine():
    assert cosine([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert cosine([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine([1.0], [1.0, 0.0]) == 0.0


class TestSemanticTier:
    @respx.mock
    @pytest.mark.asyncio
    async def test_matches_by_embedding(self):
        respx.post(EMBED_URL).mock(return_value=httpx.Response(200, json={"data": [{"embedding": [0.0, 1.0]}]}))
        config = make_config(
            cascade={"tier2_enabled": True},
            responses=[{"content_id": "faq_thermostat", "content_type": "faq",
                        "response_text": "Try fresh batteries in the thermostat.", "embedding": [0.0, 1.0]}],
        )
        outcome, _ = await run([RuleTier(), SemanticTier(EMBED_URL, api_key="k")], config=config,
                               utterance="the screen on the wall thing went dark")
        assert outcome.result.tier == 2
        assert outcome.result.content_id == "faq_thermostat"

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, config):
        tier = SemanticTier(EMBED_URL)
        assert not tier.enabled(config.cascade)


class TestGenerativeTier:
    @respx.mock
    @pytest.mark.asyncio
    async def test_answer_from_reference(self):
        answer = {"content_id": "hours", "answer": "We're open seven to seven.", "confidence": 0.8}
        route = respx.post(CHAT_URL).mock(return_value=httpx.Response(200, json={
            "choices": [{"message": {"content": json.dumps(answer)}}],
        }))
        config = make_config(cascade={"tier3_enabled": True})
        outcome, _ = await run([RuleTier(), GenerativeTier(CHAT_URL, api_key="sk-test")], config=config,
                               utterance="is anybody around on saturdays")
        assert outcome.result.tier == 3
        assert outcome.result.response_text == "We're open seven to seven."
        assert route.calls[0].request.headers["Authorization"] == "Bearer sk-test"

    @respx.mock
    @pytest.mark.asyncio
    async def test_no_match_answer(self):
        answer = {"content_id": "", "answer": "NO_MATCH", "confidence": 0}
        respx.post(CHAT_URL).mock(return_value=httpx.Response(200, json={
            "choices": [{"message": {"content": json.dumps(answer)}}],
        }))
        config = make_config(cascade={"tier3_enabled": True})
        outcome, _ = await run([GenerativeTier(CHAT_URL, api_key="sk-test")], config=config,
                               utterance="is anybody around on saturdays")
        assert outcome.reason == cascade.NO_MATCH

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_records_failure(self):
        respx.post(CHAT_URL).mock(return_value=httpx.Response(500))
        tier = GenerativeTier(CHAT_URL, api_key="sk-test")
        config = make_config(cascade={"tier3_enabled": True})
        outcome, _ = await run([tier], config=config, utterance="is anybody around on saturdays")
        assert outcome.reason == cascade.ERROR
        assert tier.breaker.failures == 1
