"""One turn, one speaker.

``TurnOrchestrator.process_turn`` runs the fixed per-turn sequence

    invariant check -> extraction -> (DISCOVERY) triage + cascade
    -> owner decision -> state-machine fallback -> response

on a copy of the caller's state. Exactly one of the cascade or the state
machine supplies the response, and a critical ``owner_selected`` event
says which one and why. Component failures become "no result" plus a
``component_error`` event; nothing escapes to the transport.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from frontdesk import cascade as cascade_mod
from frontdesk.cascade import CascadeContext, ResponseCascade
from frontdesk.classification import (
    URGENCY_EMERGENCY,
    URGENCY_NORMAL,
    URGENCY_URGENT,
    TriageResult,
    assess_urgency,
    evaluate,
)
from frontdesk.company_config import REASON_SLOT_ID, CompanyConfig
from frontdesk.content_cards import ContentCardIndex
from frontdesk.events import EventLog
from frontdesk.extraction import extract
from frontdesk.patterns import extract_temperature, is_direct_booking, wants_booking
from frontdesk.session import CallState, PendingSlot, StateCorruptionError
from frontdesk.state_machine import Action, StateMachine
from frontdesk.states import Lane

logger = logging.getLogger(__name__)

OWNER_CASCADE = "cascade"
OWNER_STATE_MACHINE = "state_machine"

URGENCY_RANK = {URGENCY_NORMAL: 0, URGENCY_URGENT: 1, URGENCY_EMERGENCY: 2}

# cascade reason -> owner_selected reason when the state machine speaks
_FALLBACK_REASONS = {
    cascade_mod.NO_MATCH: "cascade_unmatched",
    cascade_mod.BELOW_THRESHOLD: "cascade_unmatched",
    cascade_mod.NO_RESPONSE_TEXT: "cascade_unusable",
    cascade_mod.UNRESOLVED_PLACEHOLDERS: "cascade_unusable",
    cascade_mod.TIMEOUT: "cascade_timeout",
    cascade_mod.ERROR: "cascade_error",
    cascade_mod.CIRCUIT_OPEN: "cascade_unavailable",
}


@dataclass
class TurnOutcome:
    response: str
    match_source: str
    state: CallState
    events: list = field(default_factory=list)

    @property
    def critical_events(self) -> list:
        return [e for e in self.events if e.critical]

    @property
    def advisory_events(self) -> list:
        return [e for e in self.events if not e.critical]


class TurnOrchestrator:
    def __init__(self, cascade: Optional[ResponseCascade] = None, kill_switch: bool = False):
        self.cascade = cascade or ResponseCascade([cascade_mod.RuleTier()])
        self.kill_switch = kill_switch

    async def process_turn(
        self,
        config: CompanyConfig,
        state: CallState,
        utterance: str,
        turn_number: Optional[int] = None,
    ) -> TurnOutcome:
        """Process one caller utterance. The input ``state`` is never mutated."""
        if turn_number is not None and state.turn_number > 0 and turn_number <= state.turn_number:
            return self._replay(state, turn_number)

        working = copy.deepcopy(state)
        working.turn_number = turn_number if turn_number is not None else state.turn_number + 1
        if not working.start_time:
            working.start_time = time.time()
        events = EventLog(turn=working.turn_number)
        text = (utterance or "").strip()
        working.transcript_log.append({
            "role": "user", "content": text, "turn": working.turn_number,
            "lane": working.lane.value, "timestamp": time.time(),
        })

        try:
            working.check_invariants(config.slot_ids)
            return await self._run(config, working, text, events)
        except StateCorruptionError as e:
            logger.error("State corruption on call %s: %s", state.call_id, e)
            events.emit("state_corruption", error=str(e))
            return self._safe_fallback(config, state, working, events, "state_corruption")
        except Exception as e:
            logger.exception("Turn %d failed outside a component boundary", working.turn_number)
            events.emit("component_error", component="orchestrator", error=str(e))
            return self._safe_fallback(config, state, working, events, "component_error")

    # ── pipeline ──

    async def _run(self, config: CompanyConfig, state: CallState, text: str, events: EventLog) -> TurnOutcome:
        extracted = self._extract(config, state, text, events)

        triage = None
        if state.lane is Lane.DISCOVERY:
            triage = self._triage(config, state, text, events)
        else:
            self._urgency_only(config, state, text)

        outcome = None
        skip_reason = self._cascade_skip_reason(config, state, text, triage)
        if skip_reason is None:
            outcome = await self._match(config, state, text, triage, events)

        if outcome is not None and outcome.selected:
            result = outcome.result
            response = result.response_text
            match_source = f"cascade:tier-{result.tier}"
            # asked_slot is left as is: the open question still counts toward its re-ask bound
            events.emit("owner_selected", owner=OWNER_CASCADE, reason="cascade_matched",
                        match_source=match_source, content_id=result.content_id,
                        confidence=result.confidence)
        else:
            if skip_reason is None:
                skip_reason = self._fallback_reason(outcome)
            action = self._state_machine(config, state, text, extracted, events)
            response = action.speak or config.messages.fallback
            match_source = f"state_machine:{action.step_id or 'fallback'}"
            state.asked_slot = action.asked_slot
            events.emit("owner_selected", owner=OWNER_STATE_MACHINE, reason=skip_reason,
                        match_source=match_source)

        return self._finish(state, response, match_source, events)

    def _extract(self, config, state, text, events) -> dict:
        try:
            return extract(text, config, state, events).updated_slots
        except StateCorruptionError:
            raise
        except Exception as e:
            logger.error("Slot extraction failed: %s", e)
            events.emit("component_error", component="extraction", error=str(e))
            return {}

    def _triage(self, config, state, text, events) -> Optional[TriageResult]:
        try:
            triage = evaluate(text, config, ContentCardIndex.from_config(config))
        except Exception as e:
            logger.error("Triage failed: %s", e)
            events.emit("component_error", component="triage", error=str(e))
            return None
        events.emit("triage_evaluated", **triage.to_dict())
        self._raise_urgency(state, triage.urgency)
        if triage.intent_guess and triage.confidence > 0:
            state.intent = triage.intent_guess
        if triage.call_reason_detail and not state.is_satisfied(REASON_SLOT_ID) and config.slot(REASON_SLOT_ID):
            state.pending_slots[REASON_SLOT_ID] = PendingSlot(
                value=triage.call_reason_detail, source_turn=state.turn_number,
                confidence=min(triage.confidence, 0.75) or 0.5, source="triage",
            )
        return triage

    def _urgency_only(self, config, state, text) -> None:
        """Outside DISCOVERY only the safety pass runs, so an emergency is never missed."""
        try:
            urgency = assess_urgency(text, extract_temperature(text), config.triage)
        except Exception as e:
            logger.error("Urgency check failed: %s", e)
            return
        self._raise_urgency(state, urgency)

    def _raise_urgency(self, state: CallState, urgency: str) -> None:
        if URGENCY_RANK.get(urgency, 0) > URGENCY_RANK.get(state.urgency, 0):
            logger.info("Urgency raised %s -> %s", state.urgency, urgency)
            state.urgency = urgency

    def _cascade_skip_reason(self, config, state, text, triage) -> Optional[str]:
        if state.lane is not Lane.DISCOVERY:
            return "cascade_skipped_lane"
        if state.urgency == URGENCY_EMERGENCY:
            return "emergency"
        if state.pending_confirmation:
            return "awaiting_confirmation"
        if wants_booking(text, config.wants_booking_patterns) or is_direct_booking(text, config.direct_booking_patterns):
            return "booking_signal"
        if state.turn_number > config.max_turns_per_call:
            return "turn_limit"
        return None

    async def _match(self, config, state, text, triage, events):
        context = CascadeContext(
            config=config,
            slot_values=state.known_values(),
            kill_switch=self.kill_switch,
            call_id=state.call_id,
        )
        try:
            return await self.cascade.match(text, context, triage, events)
        except Exception as e:
            logger.error("Cascade failed: %s", e)
            events.emit("component_error", component="cascade", error=str(e))
            return None

    def _fallback_reason(self, outcome) -> str:
        if outcome is None:
            return "cascade_error"
        if outcome.reason in cascade_mod.GATED_REASONS:
            return "cascade_gated"
        return _FALLBACK_REASONS.get(outcome.reason, "cascade_unmatched")

    def _state_machine(self, config, state, text, extracted, events):
        try:
            return StateMachine(config).process(state, text, extracted, events)
        except StateCorruptionError:
            raise
        except Exception as e:
            logger.error("State machine failed: %s", e)
            events.emit("component_error", component="state_machine", error=str(e))
            return Action(speak=config.messages.fallback, step_id="fallback")

    # ── response assembly ──

    def _finish(self, state: CallState, response: str, match_source: str, events: EventLog) -> TurnOutcome:
        state.last_response = response
        state.last_match_source = match_source
        state.transcript_log.append({
            "role": "agent", "content": response, "turn": state.turn_number,
            "lane": state.lane.value, "source": match_source, "timestamp": time.time(),
        })
        return TurnOutcome(response=response, match_source=match_source, state=state, events=list(events))

    def _replay(self, state: CallState, turn_number: int) -> TurnOutcome:
        logger.info("Turn %d already processed (state at %d), replaying", turn_number, state.turn_number)
        events = EventLog(turn=turn_number)
        events.emit("turn_replayed", requested_turn=turn_number, state_turn=state.turn_number,
                    match_source=state.last_match_source)
        return TurnOutcome(
            response=state.last_response,
            match_source=state.last_match_source,
            state=copy.deepcopy(state),
            events=list(events),
        )

    def _safe_fallback(self, config, original: CallState, working: CallState, events: EventLog,
                       reason: str) -> TurnOutcome:
        """Fatal for the turn: generic fallback, state left as it was apart from turn counter and transcript."""
        match_source = "state_machine:fallback"
        events.emit("owner_selected", owner=OWNER_STATE_MACHINE, reason=reason, match_source=match_source)
        preserved = copy.deepcopy(original)
        preserved.turn_number = working.turn_number
        preserved.transcript_log = working.transcript_log
        return self._finish(preserved, config.messages.fallback, match_source, events)
