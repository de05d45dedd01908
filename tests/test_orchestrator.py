import pytest
from conftest import make_config

from frontdesk import prompts
from frontdesk.cascade import ResponseCascade
from frontdesk.orchestrator import TurnOrchestrator
from frontdesk.states import Lane


def owners(outcome):
    return [e for e in outcome.events if e.type == "owner_selected"]


async def converse(orchestrator, config, state, lines):
    outcomes = []
    for line in lines:
        outcome = await orchestrator.process_turn(config, state, line)
        outcomes.append(outcome)
        state = outcome.state
    return outcomes


class TestSingleOwner:
    @pytest.mark.asyncio
    async def test_cascade_answers_faq(self, orchestrator, config, state):
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        assert outcome.response == "Acme Heating is open 7am to 7pm, Monday through Saturday."
        assert outcome.match_source == "cascade:tier-1"
        [owner] = owners(outcome)
        assert owner.data["owner"] == "cascade"
        assert owner.data["reason"] == "cascade_matched"
        assert owner.critical

    @pytest.mark.asyncio
    async def test_state_machine_speaks_when_unmatched(self, orchestrator, config, state):
        outcome = await orchestrator.process_turn(config, state, "hello there")
        assert outcome.match_source.startswith("state_machine:")
        [owner] = owners(outcome)
        assert owner.data["owner"] == "state_machine"
        assert owner.data["reason"] == "cascade_unmatched"

    @pytest.mark.asyncio
    async def test_disabled_auto_replies_hand_turn_to_state_machine(self, orchestrator, state):
        config = make_config(cascade={"disable_auto_replies": True})
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        assert outcome.match_source.startswith("state_machine:")
        assert owners(outcome)[0].data["reason"] == "cascade_gated"
        cascade_events = [e for e in outcome.events if e.type == "cascade_evaluated"]
        assert cascade_events[0].data["reason"] == "gated_disabled"

    @pytest.mark.asyncio
    async def test_kill_switch(self, config, state):
        orchestrator = TurnOrchestrator(kill_switch=True)
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        assert outcome.match_source.startswith("state_machine:")
        assert owners(outcome)[0].data["reason"] == "cascade_gated"

    @pytest.mark.asyncio
    async def test_critical_and_advisory_split(self, orchestrator, config, state):
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        assert "owner_selected" in [e.type for e in outcome.critical_events]
        assert "cascade_evaluated" in [e.type for e in outcome.advisory_events]


class TestEmergency:
    @pytest.mark.asyncio
    async def test_gas_smell_escalates_without_cascade(self, orchestrator, config, state):
        outcome = await orchestrator.process_turn(config, state, "gas smell, get someone now")
        assert outcome.response == prompts.EMERGENCY_SCRIPT
        assert outcome.match_source == "state_machine:emergency"
        assert outcome.state.escalated
        assert owners(outcome)[0].data["reason"] == "emergency"
        types = [e.type for e in outcome.events]
        assert "emergency_escalation" in types
        assert "cascade_evaluated" not in types


class TestConversation:
    @pytest.mark.asyncio
    async def test_discovery_consent_booking(self, orchestrator, config, state):
        outcomes = await converse(orchestrator, config, state, [
            "This is Mrs. Johnson, 123 Market St, Fort Myers — AC is down",
            "Sarah",
            "yes",
            "512-555-1234",
            "yes please",
            "yes",
            "yes",
            "yes",
            "tomorrow morning",
            "yes",
            "thanks",
        ])
        responses = [o.response for o in outcomes]
        assert responses[0] == "May I have your first name, please?"
        assert responses[1] == "Got it, that's 123 Market St, Fort Myers. Is that correct?"
        assert responses[2] == "What's the best phone number to reach you?"
        assert responses[3] == (
            "Thanks, I have everything I need for now. "
            "Would you like me to get a technician scheduled for you?"
        )
        assert responses[4] == "I have the appointment under Sarah. Is that right?"
        assert responses[7] == "When would be a good time for the technician to come out?"
        assert responses[9] == (
            "You're all set, Sarah. A technician will reach out at 512-555-1234 "
            "to confirm the arrival window."
        )
        assert responses[10] == "Is there anything else I can help you with?"

        lanes = [o.state.lane for o in outcomes]
        assert lanes[3] == Lane.CONSENT_PENDING
        assert lanes[4] == Lane.BOOKING
        assert lanes[9] == Lane.DISCOVERY

        final = outcomes[-1].state
        assert final.booking_complete
        assert final.stage_watermark == Lane.BOOKING.rank
        assert final.plain_slots["last_name"] == "Johnson"
        assert final.confirmed_slots["time"] == "tomorrow morning"

        blocked = {e.data["slot"] for e in outcomes[-1].events if e.type == "regression_blocked"}
        assert {"name", "address", "phone"} <= blocked
        assert all(len(owners(o)) == 1 for o in outcomes)

    @pytest.mark.asyncio
    async def test_faq_between_reasks_keeps_loop_bound(self, orchestrator, config, state):
        state.plain_slots["call_reason_detail"] = "AC not working"
        outcomes = await converse(orchestrator, config, state, [
            "I'm not sure",
            "what are your hours",
            "I'm not sure",
            "what are your hours",
            "I'm not sure",
            "what are your hours",
            "I'm not sure",
        ])
        asks = [o.response for o in outcomes[::2]]
        assert asks == [
            "May I have your first name, please?",
            "I didn't quite catch that. What's your name?",
            "Sorry, could you repeat your name for me?",
            "Let me ask that a different way. Who am I speaking with today?",
        ]
        assert all(o.match_source == "cascade:tier-1" for o in outcomes[1::2])
        assert outcomes[1].state.asked_slot == "name"
        loops = [e for e in outcomes[-1].events if e.type == "loop_action"]
        assert loops[0].data["action"] == "rephrase"

    @pytest.mark.asyncio
    async def test_direct_booking(self, orchestrator, config, state):
        outcome = await orchestrator.process_turn(config, state, "just book me an appointment")
        assert outcome.state.lane == Lane.BOOKING
        assert outcome.response == "May I have your name for the appointment?"
        assert owners(outcome)[0].data["reason"] == "booking_signal"

    @pytest.mark.asyncio
    async def test_transcript_recorded(self, orchestrator, config, state):
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        log = outcome.state.transcript_log
        assert [e["role"] for e in log] == ["user", "agent"]
        assert log[1]["source"] == "cascade:tier-1"


class TestStateHandling:
    @pytest.mark.asyncio
    async def test_input_state_not_mutated(self, orchestrator, config, state):
        before = state.to_dict()
        outcome = await orchestrator.process_turn(config, state, "This is Sarah at 123 Market St")
        assert state.to_dict() == before
        assert outcome.state is not state
        assert outcome.state.turn_number == 1

    @pytest.mark.asyncio
    async def test_replayed_turn_is_idempotent(self, orchestrator, config, state):
        first = await orchestrator.process_turn(config, state, "what are your hours", turn_number=1)
        again = await orchestrator.process_turn(config, first.state, "what are your hours", turn_number=1)
        assert again.response == first.response
        assert again.match_source == first.match_source
        assert again.state.turn_number == 1
        assert [e.type for e in again.events] == ["turn_replayed"]

    @pytest.mark.asyncio
    async def test_corrupt_state_gets_fallback(self, orchestrator, config, state):
        state.confirmed_slots["favorite_color"] = "blue"
        outcome = await orchestrator.process_turn(config, state, "hello")
        assert outcome.response == prompts.FALLBACK
        assert outcome.match_source == "state_machine:fallback"
        assert outcome.state.confirmed_slots == {"favorite_color": "blue"}
        types = [e.type for e in outcome.events]
        assert types == ["state_corruption", "owner_selected"]

    @pytest.mark.asyncio
    async def test_cascade_exception_is_contained(self, config, state):
        class BrokenCascade(ResponseCascade):
            async def match(self, *args, **kwargs):
                raise RuntimeError("index unavailable")

        orchestrator = TurnOrchestrator(cascade=BrokenCascade([]))
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        assert outcome.match_source.startswith("state_machine:")
        errors = [e for e in outcome.events if e.type == "component_error"]
        assert errors[0].data["component"] == "cascade"
        assert owners(outcome)[0].data["reason"] == "cascade_error"

    @pytest.mark.asyncio
    async def test_turn_limit(self, orchestrator, config, state):
        state.turn_number = 30
        outcome = await orchestrator.process_turn(config, state, "what are your hours")
        assert outcome.match_source == "state_machine:turn_limit"
        assert outcome.state.escalated
        assert owners(outcome)[0].data["reason"] == "turn_limit"
