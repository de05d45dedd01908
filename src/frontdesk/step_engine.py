"""Ordered slot-collection steps for the Discovery and Booking lanes.

A flow is a tuple of ``FlowStep``s sorted by order. Each turn the engine
walks the flow from the top and stops at the first step that needs the
caller: either a confirmation ("I have your address as ... correct?") or
an ask for a missing value. Everything else is settled silently.

Two guards live here:

* Regression guard: once the call has reached CONSENT_PENDING or BOOKING
  (``stage_watermark``), a slot satisfied at or before ``watermark_turn``
  is never re-confirmed in DISCOVERY. It is accepted from state and a
  ``regression_blocked`` event is emitted instead.
* Loop bound: a slot is re-asked at most ``max_reprompts`` times in a
  row. The next re-ask fires the tenant's loop action instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from frontdesk import patterns, prompts
from frontdesk.company_config import CompanyConfig, ConfirmMode, FlowStep, LoopAction
from frontdesk.events import EventLog
from frontdesk.session import CallState
from frontdesk.states import Lane
from frontdesk.validation import is_no, is_yes

logger = logging.getLogger(__name__)

DEFAULT_CONFIRM = "I have {value}. Is that right?"
REVIEW_KEY = "__review__"
URGENCY_EMERGENCY = "emergency"


@dataclass
class StepDecision:
    speak: str = ""
    step_id: str = ""
    asked_slot: str = ""
    confirming: str = ""
    done: bool = False
    review_accepted: bool = False
    escalate: bool = False


def display_value(slot_id: str, value: str) -> str:
    if slot_id == "phone":
        return prompts.format_phone(value)
    return value


def needs_confirmation(step: FlowStep, source: str) -> bool:
    """Whether a pending value from ``source`` must be read back to the caller."""
    mode = step.confirm_mode
    if mode is ConfirmMode.ALWAYS:
        return True
    if mode is ConfirmMode.NEVER:
        return False
    if mode is ConfirmMode.CONFIRM_IF_CALLER_SUPPLIED:
        return source == "caller_id"
    # SMART_IF_CAPTURED: values the caller gave as a direct answer are taken as-is
    return source != "answer"


class StepEngine:
    def __init__(self, config: CompanyConfig):
        self.config = config

    # ── helpers ──

    def _flow(self, booking: bool) -> tuple:
        return self.config.steps_for(booking)

    def _step_for(self, slot_id: str, booking: bool) -> Optional[FlowStep]:
        for step in self._flow(booking):
            if step.slot_id == slot_id:
                return step
        return None

    def template_values(self, state: CallState) -> dict:
        values = {k: display_value(k, v) for k, v in state.known_values().items()}
        values["company_name"] = self.config.company_name
        return values

    def _guard_active(self, state: CallState) -> bool:
        return state.lane is Lane.DISCOVERY and state.stage_watermark >= Lane.CONSENT_PENDING.rank

    def _confirm_prompt(self, state: CallState, step: FlowStep, fresh: bool = True) -> StepDecision:
        value = state.slot_value(step.slot_id)
        values = self.template_values(state)
        values["value"] = display_value(step.slot_id, value)
        state.pending_confirmation = step.slot_id
        if fresh:
            state.reprompt_counts[step.slot_id] = 0
        return StepDecision(
            speak=prompts.render(step.confirm_prompt or DEFAULT_CONFIRM, values),
            step_id=f"{step.step_id}:confirm",
            asked_slot=step.slot_id,
            confirming=step.slot_id,
        )

    def _accept(self, state: CallState, slot_id: str, events: EventLog, auto: bool, reason: str = "") -> None:
        value = state.slot_value(slot_id)
        state.accept_slot(slot_id, value)
        state.reprompt_counts.pop(slot_id, None)
        events.emit("slot_confirmed", slot=slot_id, value=value, auto=auto, reason=reason or None,
                    target="confirmed" if state.lane.is_booking else "plain")

    def _escalate(self, state: CallState, step_id: str) -> StepDecision:
        state.escalated = True
        return StepDecision(speak=self.config.messages.escalate, step_id=f"{step_id}:escalate", escalate=True)

    # ── loop prevention ──

    def _loop_action(self, state: CallState, step: FlowStep, events: EventLog, attempts: int) -> Optional[StepDecision]:
        """Fire the configured loop action. None means the slot was skipped."""
        slot = self.config.slot(step.slot_id)
        optional = slot is not None and not slot.required
        action = self.config.loop_action

        if state.urgency == URGENCY_EMERGENCY:
            action = LoopAction.ESCALATE
        elif action is LoopAction.REPHRASE and step.slot_id in state.rephrased_slots:
            action = LoopAction.SKIP if optional else LoopAction.ESCALATE
        elif action is LoopAction.SKIP and not optional:
            action = LoopAction.ESCALATE

        events.emit("loop_action", slot=step.slot_id, action=action.value, attempts=attempts,
                    max_reprompts=self.config.max_reprompts)
        logger.warning("Loop bound hit on %s after %d re-asks, action=%s", step.slot_id, attempts, action.value)

        if action is LoopAction.REPHRASE:
            state.rephrased_slots.append(step.slot_id)
            state.reprompt_counts[step.slot_id] = 0
            text = step.rephrase or step.ask
            return StepDecision(
                speak=f"{self.config.messages.rephrase_prefix} {text}",
                step_id=f"{step.step_id}:rephrase",
                asked_slot=step.slot_id,
            )
        if action is LoopAction.SKIP:
            state.skipped_slots.append(step.slot_id)
            state.reprompt_counts.pop(step.slot_id, None)
            if state.pending_confirmation == step.slot_id:
                state.pending_confirmation = ""
            return None
        return self._escalate(state, step.step_id)

    def _ask(self, state: CallState, step: FlowStep, events: EventLog, correction: bool = False) -> Optional[StepDecision]:
        """Ask for a missing value, counting consecutive re-asks of the same slot."""
        reask = correction or state.asked_slot == step.slot_id
        count = state.reprompt_counts.get(step.slot_id, 0) + 1 if reask else 0
        state.reprompt_counts[step.slot_id] = count
        if count > self.config.max_reprompts:
            return self._loop_action(state, step, events, count)

        if correction and step.correction_prompt:
            speak = step.correction_prompt
        elif count and step.reprompt_variants:
            speak = step.reprompt_variants[(count - 1) % len(step.reprompt_variants)]
        elif count and step.reprompt:
            speak = step.reprompt
        else:
            speak = step.ask
        return StepDecision(
            speak=prompts.render(speak, self.template_values(state)),
            step_id=step.step_id,
            asked_slot=step.slot_id,
        )

    def _reconfirm(self, state: CallState, step: FlowStep, events: EventLog) -> Optional[StepDecision]:
        """Unclear answer to a yes/no question: read it back again, within the loop bound."""
        count = state.reprompt_counts.get(step.slot_id, 0) + 1
        state.reprompt_counts[step.slot_id] = count
        if count > self.config.max_reprompts:
            return self._loop_action(state, step, events, count)
        return self._confirm_prompt(state, step, fresh=False)

    # ── confirmation answers ──

    def resolve_confirmation(self, state: CallState, text: str, extracted: dict, events: EventLog, booking: bool) -> Optional[StepDecision]:
        """Handle the caller's answer to a read-back. None means carry on walking."""
        slot_id = state.pending_confirmation
        step = self._step_for(slot_id, booking) or self._step_for(slot_id, not booking)
        if step is None:
            state.pending_confirmation = ""
            return None

        if slot_id in extracted:
            # caller answered with a fresh value; it goes through the walk again
            state.pending_confirmation = ""
            return None

        if is_yes(text):
            state.pending_confirmation = ""
            self._accept(state, slot_id, events, auto=False)
            return None

        if is_no(text):
            state.pending_confirmation = ""
            rejected = state.slot_value(slot_id)
            state.clear_slot(slot_id)
            events.emit("slot_rejected", slot=slot_id, value=rejected)
            if slot_id == "name" and rejected and patterns.any_match(text, patterns.LAST_NAME_CORRECTION_RE):
                state.accept_slot("last_name", rejected)
                events.emit("slot_moved", slot="last_name", from_slot="name", value=rejected)
            return self._ask(state, step, events, correction=True)

        return self._reconfirm(state, step, events)

    # ── Discovery ──

    def discovery_turn(self, state: CallState, text: str, extracted: dict, events: EventLog) -> StepDecision:
        if state.pending_confirmation:
            decision = self.resolve_confirmation(state, text, extracted, events, booking=False)
            if decision is not None:
                return decision

        emergency = state.urgency == URGENCY_EMERGENCY
        for index, step in enumerate(self._flow(False)):
            slot = self.config.slot(step.slot_id)
            if slot is None:
                logger.warning("Discovery step %s references unknown slot %s", step.step_id, step.slot_id)
                continue
            if step.slot_id in state.skipped_slots:
                continue

            if state.is_satisfied(step.slot_id):
                decision = self._settle_discovery(state, step, events)
                if decision is not None:
                    state.step_cursor = index
                    return decision
                continue

            if step.passive or (emergency and not slot.required):
                continue
            decision = self._ask(state, step, events)
            if decision is None:
                continue
            state.step_cursor = index
            return decision

        state.step_cursor = len(self._flow(False))
        return StepDecision(speak=self.config.messages.discovery_complete, step_id="discovery_complete", done=True)

    def _settle_discovery(self, state: CallState, step: FlowStep, events: EventLog) -> Optional[StepDecision]:
        """A satisfied slot: accept it, guard it, or ask the caller to confirm it."""
        slot_id = step.slot_id
        pending = state.pending_slots.get(slot_id)
        guarded = self._guard_active(state) and step.confirm_mode is not ConfirmMode.NEVER

        if pending is None:
            if guarded:
                events.emit("regression_blocked", slot=slot_id, watermark=state.stage_watermark,
                            watermark_turn=state.watermark_turn, source_turn=None)
            return None

        if self._guard_active(state) and pending.source_turn <= state.watermark_turn:
            self._accept(state, slot_id, events, auto=True, reason="regression_guard")
            if guarded:
                events.emit("regression_blocked", slot=slot_id, watermark=state.stage_watermark,
                            watermark_turn=state.watermark_turn, source_turn=pending.source_turn)
            return None

        if not needs_confirmation(step, pending.source):
            self._accept(state, slot_id, events, auto=True, reason=step.confirm_mode.value)
            return None
        return self._confirm_prompt(state, step)

    # ── Booking ──

    def booking_turn(self, state: CallState, text: str, extracted: dict, events: EventLog) -> StepDecision:
        if state.awaiting_final_review:
            decision = self._resolve_review(state, text, extracted, events)
            if decision is not None:
                return decision
        elif state.pending_confirmation:
            decision = self.resolve_confirmation(state, text, extracted, events, booking=True)
            if decision is not None:
                return decision

        flow = self._flow(True)

        # captured values are read back first, one per turn
        for index, step in enumerate(flow):
            slot = self.config.slot(step.slot_id)
            if slot is None or step.slot_id in state.confirmed_slots or step.slot_id in state.skipped_slots:
                continue
            if not state.is_satisfied(step.slot_id):
                continue
            if slot.booking_confirm_required and step.confirm_mode is not ConfirmMode.NEVER:
                state.step_cursor = index
                return self._confirm_prompt(state, step)
            self._accept(state, step.slot_id, events, auto=True, reason="no_booking_confirm")

        # then anything still missing
        for index, step in enumerate(flow):
            slot = self.config.slot(step.slot_id)
            if slot is None or state.is_satisfied(step.slot_id) or step.slot_id in state.skipped_slots:
                continue
            if not slot.required:
                continue
            decision = self._ask(state, step, events)
            if decision is None:
                continue
            state.step_cursor = index
            return decision

        state.step_cursor = len(flow)
        if self.config.booking_review_enabled:
            state.awaiting_final_review = True
            summary = prompts.booking_summary(state.confirmed_slots, [s.slot_id for s in flow])
            return StepDecision(
                speak=prompts.render(self.config.messages.booking_review, {"summary": summary}),
                step_id="booking_review",
            )
        return StepDecision(step_id="booking_complete", done=True, review_accepted=True)

    def _resolve_review(self, state: CallState, text: str, extracted: dict, events: EventLog) -> Optional[StepDecision]:
        if extracted:
            # the caller corrected something inside the review; re-walk from the top
            state.awaiting_final_review = False
            state.reprompt_counts.pop(REVIEW_KEY, None)
            return None
        if is_yes(text):
            state.awaiting_final_review = False
            state.reprompt_counts.pop(REVIEW_KEY, None)
            return StepDecision(step_id="booking_complete", done=True, review_accepted=True)

        count = state.reprompt_counts.get(REVIEW_KEY, 0) + 1
        state.reprompt_counts[REVIEW_KEY] = count
        if count > self.config.max_reprompts:
            events.emit("loop_action", slot=REVIEW_KEY, action=LoopAction.ESCALATE.value, attempts=count,
                        max_reprompts=self.config.max_reprompts)
            state.awaiting_final_review = False
            return self._escalate(state, "booking_review")
        if is_no(text):
            return StepDecision(speak=self.config.messages.booking_correction, step_id="booking_review:correction")
        summary = prompts.booking_summary(state.confirmed_slots, [s.slot_id for s in self._flow(True)])
        return StepDecision(
            speak=prompts.render(self.config.messages.booking_review_retry, {"summary": summary}),
            step_id="booking_review:retry",
        )
