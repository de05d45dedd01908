import logging
from dataclasses import dataclass

from frontdesk import prompts
from frontdesk.company_config import CompanyConfig
from frontdesk.events import EventLog
from frontdesk.patterns import is_cancellation, is_direct_booking, wants_booking
from frontdesk.session import CallState
from frontdesk.states import Lane
from frontdesk.step_engine import URGENCY_EMERGENCY, StepDecision, StepEngine
from frontdesk.validation import is_no, is_yes

logger = logging.getLogger(__name__)

CONSENT_KEY = "__consent__"

TRANSITIONS = {
    Lane.DISCOVERY: {Lane.CONSENT_PENDING, Lane.BOOKING},
    Lane.CONSENT_PENDING: {Lane.BOOKING, Lane.DISCOVERY},
    # only through cancellation or completion
    Lane.BOOKING: {Lane.DISCOVERY},
}


@dataclass
class Action:
    speak: str = ""
    step_id: str = ""
    asked_slot: str = ""
    escalate: bool = False

    @classmethod
    def from_decision(cls, decision: StepDecision) -> "Action":
        return cls(
            speak=decision.speak,
            step_id=decision.step_id,
            asked_slot=decision.asked_slot,
            escalate=decision.escalate,
        )


def _transition(state: CallState, new_lane: Lane, events: EventLog, reason: str):
    """Move to a new lane, keeping the stage watermark monotonic."""
    old = state.lane
    if new_lane not in TRANSITIONS[old]:
        raise ValueError(f"illegal lane transition {old.value} -> {new_lane.value}")
    state.lane = new_lane
    state.step_cursor = 0
    state.pending_confirmation = ""
    state.awaiting_final_review = False
    state.raise_watermark(new_lane, state.turn_number)
    events.emit("lane_changed", from_lane=old.value, to_lane=new_lane.value, reason=reason,
                watermark=state.stage_watermark)
    logger.info("Lane %s -> %s (%s)", old.value, new_lane.value, reason)


class StateMachine:
    """Lane handlers. Always produces an Action; it is the fallback speaker."""

    def __init__(self, config: CompanyConfig):
        self.config = config
        self.engine = StepEngine(config)

    def valid_transitions(self, lane: Lane) -> set[Lane]:
        return TRANSITIONS.get(lane, set())

    def process(self, state: CallState, text: str, extracted: dict, events: EventLog) -> Action:
        messages = self.config.messages

        if state.turn_number > self.config.max_turns_per_call:
            logger.warning("Per-call turn limit exceeded, escalating to callback")
            state.escalated = True
            events.emit("loop_action", slot=None, action="escalate", reason="turn_limit",
                        attempts=state.turn_number, max_turns=self.config.max_turns_per_call)
            return Action(speak=messages.turn_limit, step_id="turn_limit", escalate=True)

        if state.urgency == URGENCY_EMERGENCY and not state.emergency_announced:
            state.emergency_announced = True
            state.escalated = True
            events.emit("emergency_escalation", lane=state.lane.value, utterance=text)
            logger.warning("Emergency detected on call %s", state.call_id)
            return Action(speak=messages.emergency, step_id="emergency", escalate=True)

        handler = getattr(self, f"_handle_{state.lane.value}")
        return handler(state, text, extracted, events)

    def _booking_disabled(self, state: CallState) -> Action:
        state.escalated = True
        return Action(speak=self.config.messages.booking_disabled, step_id="booking_disabled", escalate=True)

    def _start_booking(self, state: CallState, events: EventLog) -> Action:
        decision = self.engine.booking_turn(state, "", {}, events)
        if decision.done:
            return self._complete(state, events)
        return Action.from_decision(decision)

    def _complete(self, state: CallState, events: EventLog) -> Action:
        state.booking_complete = True
        events.emit("booking_completed", slots=dict(state.confirmed_slots))
        _transition(state, Lane.DISCOVERY, events, "booking_complete")
        messages = self.config.messages
        values = self.engine.template_values(state)
        missing = prompts.unresolved(messages.booking_complete, values)
        if missing:
            logger.warning("Booking confirmation missing %s, using plain script", sorted(missing))
        return Action(
            speak=prompts.render_script(messages.booking_complete, values, messages.booking_complete_plain),
            step_id="booking_complete",
        )

    # ── Lane handlers ──

    def _handle_discovery(self, state: CallState, text: str, extracted: dict, events: EventLog) -> Action:
        config = self.config
        if is_direct_booking(text, config.direct_booking_patterns):
            if not config.booking_enabled:
                return self._booking_disabled(state)
            state.consent.pending = False
            state.consent.granted = True
            _transition(state, Lane.BOOKING, events, "direct_booking")
            return self._start_booking(state, events)

        if wants_booking(text, config.wants_booking_patterns):
            if not config.booking_enabled:
                return self._booking_disabled(state)
            return self._ask_consent(state, events, "wants_booking")

        decision = self.engine.discovery_turn(state, text, extracted, events)
        if not decision.done:
            return Action.from_decision(decision)

        if state.booking_complete or state.consent.granted is False:
            return Action(speak=config.messages.anything_else, step_id="anything_else")
        if not config.booking_enabled:
            return self._booking_disabled(state)
        action = self._ask_consent(state, events, "discovery_complete")
        action.speak = f"{config.messages.discovery_complete} {action.speak}"
        return action

    def _ask_consent(self, state: CallState, events: EventLog, reason: str) -> Action:
        state.consent.pending = True
        state.consent.granted = None
        _transition(state, Lane.CONSENT_PENDING, events, reason)
        return Action(speak=self.config.messages.consent_prompt, step_id="consent")

    def _handle_consent_pending(self, state: CallState, text: str, extracted: dict, events: EventLog) -> Action:
        config = self.config
        agreed = (
            is_yes(text)
            or wants_booking(text, config.wants_booking_patterns)
            or is_direct_booking(text, config.direct_booking_patterns)
        )
        if agreed and not is_no(text):
            state.consent.pending = False
            state.consent.granted = True
            state.reprompt_counts.pop(CONSENT_KEY, None)
            _transition(state, Lane.BOOKING, events, "consent_granted")
            return self._start_booking(state, events)

        if is_no(text) or is_cancellation(text):
            state.consent.pending = False
            state.consent.granted = False
            state.reprompt_counts.pop(CONSENT_KEY, None)
            _transition(state, Lane.DISCOVERY, events, "consent_declined")
            return Action(speak=self.config.messages.consent_declined, step_id="consent:declined")

        count = state.reprompt_counts.get(CONSENT_KEY, 0) + 1
        state.reprompt_counts[CONSENT_KEY] = count
        if count > self.config.max_reprompts:
            events.emit("loop_action", slot=CONSENT_KEY, action="escalate", attempts=count,
                        max_reprompts=self.config.max_reprompts)
            state.escalated = True
            return Action(speak=self.config.messages.escalate, step_id="consent:escalate", escalate=True)
        return Action(speak=self.config.messages.consent_reask, step_id="consent:reask")

    def _handle_booking(self, state: CallState, text: str, extracted: dict, events: EventLog) -> Action:
        if is_cancellation(text) and not is_yes(text):
            state.consent.pending = False
            state.consent.granted = False
            _transition(state, Lane.DISCOVERY, events, "cancelled")
            return Action(speak=self.config.messages.booking_cancelled, step_id="booking_cancelled")

        decision = self.engine.booking_turn(state, text, extracted, events)
        if decision.done and decision.review_accepted:
            return self._complete(state, events)
        return Action.from_decision(decision)
