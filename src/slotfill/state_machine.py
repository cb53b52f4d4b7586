import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from slotfill.extraction import ExtractionContext, caller_id_candidate, extract_all, parse_confirmation
from slotfill.flow import Flow, FlowStep, evaluate_condition, get_step
from slotfill.merge import clear_slot, confirm_slot, merge_slots
from slotfill.sanitizer import sanitize_booking_state
from slotfill.session import BookingState
from slotfill.slots import MergeAction, Slot
from slotfill.states import StepStatus
from slotfill.validation import spell_out

logger = logging.getLogger(__name__)

# Utterance-sourced values at or above this are accepted without read-back
AUTO_CONFIRM_THRESHOLD = 0.85
ESCALATED_REPROMPT_AFTER = 2

UNIT_MENTION = re.compile(
    r"\b(?:apartment|apt|unit|suite|condo)\b(?P<number>\s*\.?\s*#?\s*[a-z]?\d+[a-z]?)?",
    re.IGNORECASE,
)

ACKNOWLEDGMENTS = {
    "name": "Thanks, {first_name}.",
    "phone": "Got it.",
    "address": "Perfect.",
}
DEFAULT_ACKNOWLEDGMENT = "Okay."

CONFIRM_PROMPTS = {
    "phone": "Is {value} the best number to reach you?",
    "address": "I have the address as {value}. Is that right?",
}
SPELLING_PROMPT = "Just to make sure I have it right, is that {spelled}?"
DEFAULT_CONFIRM_PROMPT = "I have {value}. Is that right?"
DENIED_PREFIX = "No problem."

ESCALATED_REPROMPTS = {
    "name": "Sorry, I'm having trouble hearing you. Could you spell your last name for me?",
    "phone": "Let's try once more. Could you say the number slowly, one digit at a time?",
    "address": "Could you give me just the house number and the street name?",
}

ESCALATION_SCRIPT = (
    "I'm having trouble getting that down. "
    "Let me have someone from the team call you back to finish the booking."
)


class ResponseKind(Enum):
    PROMPT = "prompt"
    REPROMPT = "reprompt"
    CONFIRM_SLOT = "confirm_slot"
    CONFIRMATION = "confirmation"
    ESCALATION = "escalation"


@dataclass(frozen=True)
class Response:
    kind: ResponseKind
    text: str
    step_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "text": self.text, "step_id": self.step_id}


@dataclass(frozen=True)
class StepResult:
    state: BookingState
    response: Response
    done: bool
    decisions: tuple = ()
    fixed_slots: tuple = ()

    def to_dict(self) -> dict:
        return {
            "state": self.state.to_dict(),
            "response": self.response.to_dict(),
            "done": self.done,
            "decisions": [d.to_dict() for d in self.decisions],
            "fixed_slots": list(self.fixed_slots),
        }


def _transition(state: BookingState, step_id: Optional[str], status: StepStatus) -> BookingState:
    """Move the step pointer and drop any read-back that belonged to the old step."""
    return state.evolve(current_step_id=step_id, status=status).without_meta("pending_confirmation")


def _join(*parts: str) -> str:
    return " ".join(p for p in parts if p)


class StepSequencer:
    """Runs one caller turn against a compiled flow.

    Every turn: sanitize, rewind if needed, extract with the current step's
    gating, merge, validate, then either advance, read the value back, or
    reprompt. ``run_step`` never mutates its inputs.
    """

    def __init__(self, sink=None, clock=time.time):
        self.sink = sink
        self.clock = clock

    # --- helpers ---

    def _needs_confirm(self, step: FlowStep, slot: Slot) -> bool:
        if slot.confirmed:
            return False
        if slot.conflict or slot.needs_confirmation:
            return True
        if step.options.get("confirm_spelling") and slot.extras.get("needs_spelling_check"):
            return True
        return slot.confidence < AUTO_CONFIRM_THRESHOLD

    def _confirm_text(self, step: FlowStep, slot: Slot) -> str:
        if step.confirm_prompt:
            return step.confirm_prompt.replace("{value}", slot.value)
        if step.slot_type == "name" and step.options.get("confirm_spelling") and slot.extras.get("needs_spelling_check"):
            return SPELLING_PROMPT.format(spelled=spell_out(slot.extras.get("first_name") or slot.value))
        template = CONFIRM_PROMPTS.get(step.slot_type, DEFAULT_CONFIRM_PROMPT)
        return template.format(value=slot.value)

    def _acknowledge(self, step: FlowStep, value: str) -> str:
        template = ACKNOWLEDGMENTS.get(step.slot_type, DEFAULT_ACKNOWLEDGMENT)
        return template.format(first_name=value.split()[0] if value else "")

    def _reprompt_text(self, step: FlowStep, ask_count: int) -> str:
        if ask_count >= ESCALATED_REPROMPT_AFTER:
            return step.options.get("escalated_reprompt") or ESCALATED_REPROMPTS.get(step.slot_type) \
                or _join("Sorry, I still didn't get that.", step.reprompt)
        return step.reprompt

    def _accept(self, state: BookingState, step: FlowStep, value: str) -> BookingState:
        state = state.evolve(
            collected={**state.collected, step.field_key: value},
            confirmed_slots=state.confirmed_slots | {step.field_key},
            status=StepStatus.ACCEPTED,
        ).without_meta("pending_confirmation")
        if step.slot_type == "address":
            mention = UNIT_MENTION.search(value)
            needs_unit = bool(mention) and not mention.group("number")
            state = state.with_meta(address_needs_unit=bool(state.meta.get("address_needs_unit")) or needs_unit)
        logger.info("Step %s accepted", step.id)
        return state

    def _sync_corrections(self, state: BookingState, decisions, current: FlowStep) -> BookingState:
        """Corrections to already-accepted fields replace the collected value."""
        collected = dict(state.collected)
        for decision in decisions:
            key = decision.slot
            if key != current.field_key and key in state.confirmed_slots and decision.action == MergeAction.ACCEPTED:
                collected[key] = state.slots[key].value
                logger.info("Collected %s updated by caller correction", key)
        return state.evolve(collected=collected)

    def _seed_caller_id(self, state: BookingState, step: FlowStep, now: float) -> BookingState:
        if state.meta.get("caller_id_declined"):
            return state
        candidate = caller_id_candidate(state.meta.get("caller_phone"), state.turn)
        if candidate is None:
            return state
        outcome = merge_slots(state.slots, {step.field_key: candidate}, now, self.sink)
        return state.evolve(slots=outcome.merged)

    # --- flow navigation ---

    def _advance(self, flow: Flow, state: BookingState, now: float, prefix: str = "") -> StepResult:
        """Find the next step needing the caller, accepting anything already known."""
        deferred = set(state.meta.get("deferred_steps", ()))
        for step in flow.steps:
            if step.field_key in state.confirmed_slots or step.id in deferred:
                continue
            if not evaluate_condition(step.condition, state):
                logger.debug("Step %s deferred: condition not met", step.id)
                continue
            if step.slot_type == "phone" and step.field_key not in state.slots:
                state = self._seed_caller_id(state, step, now)
            slot = state.slots.get(step.field_key)
            if slot is not None and step.validation.check(slot.value)[0]:
                if not self._needs_confirm(step, slot):
                    state = self._accept(state, step, slot.value)
                    continue
                state = _transition(state, step.id, StepStatus.AWAITING_INPUT).with_meta(
                    pending_confirmation=step.id)
                return StepResult(state, Response(ResponseKind.CONFIRM_SLOT,
                                                  _join(prefix, self._confirm_text(step, slot)), step.id), False)
            state = _transition(state, step.id, StepStatus.AWAITING_INPUT)
            state = state.with_ask_count(step.id, max(1, state.ask_count(step.id)))
            return StepResult(state, Response(ResponseKind.PROMPT, _join(prefix, step.prompt), step.id), False)

        state = _transition(state, None, StepStatus.COMPLETE)
        logger.info("Booking flow %s complete for call %s", flow.flow_id, state.call_id or "-")
        text = _join(prefix, flow.render_confirmation(state.collected))
        return StepResult(state, Response(ResponseKind.CONFIRMATION, text), True)

    def _reject(self, flow: Flow, state: BookingState, step: FlowStep, now: float, reason: str) -> StepResult:
        if not step.required:
            logger.info("Optional step %s skipped (%s)", step.id, reason)
            deferred = sorted(set(state.meta.get("deferred_steps", ())) | {step.id})
            state = state.with_meta(deferred_steps=deferred).evolve(status=StepStatus.DEFERRED)
            return self._advance(flow, state, now)
        count = state.ask_count(step.id)
        if count >= step.max_attempts:
            logger.warning("Step %s failed %d times, escalating call %s", step.id, count, state.call_id or "-")
            state = state.evolve(status=StepStatus.ESCALATED)
            return StepResult(state, Response(ResponseKind.ESCALATION, ESCALATION_SCRIPT, step.id), True)
        logger.info("Step %s rejected (%s), attempt %d", step.id, reason, count)
        state = state.with_ask_count(step.id, count + 1).evolve(status=StepStatus.REJECTED)
        return StepResult(state, Response(ResponseKind.REPROMPT, self._reprompt_text(step, count), step.id), False)

    # --- entry point ---

    def run_step(self, flow: Flow, state: BookingState, user_input: str | None,
                 caller_phone: str | None = None) -> StepResult:
        now = self.clock()
        text = (user_input or "").strip()
        if caller_phone:
            state = state.with_meta(caller_phone=caller_phone)
        if text:
            state = state.evolve(turn=state.turn + 1)

        check = sanitize_booking_state(state, flow, self.sink)
        state = check.state
        rewound = check.rewind_to is not None
        if rewound:
            logger.warning("Rewinding call %s to step %s", state.call_id or "-", check.rewind_to)
            state = _transition(state, check.rewind_to, StepStatus.AWAITING_INPUT)

        if state.status == StepStatus.COMPLETE and not check.fixed:
            text_out = flow.render_confirmation(state.collected)
            return StepResult(state, Response(ResponseKind.CONFIRMATION, text_out), True)
        if state.status == StepStatus.ESCALATED:
            return StepResult(state, Response(ResponseKind.ESCALATION, ESCALATION_SCRIPT,
                                              state.current_step_id), True)

        step = get_step(flow, state.current_step_id)
        if step is None and text:
            located = self._advance(flow, state, now)
            if located.done:
                return StepResult(located.state, located.response, True, (), check.fixed_slots)
            state = located.state
            step = get_step(flow, state.current_step_id)
        if step is None or not text:
            result = self._advance(flow, state, now)
            return StepResult(result.state, result.response, result.done, (), check.fixed_slots)
        if not evaluate_condition(step.condition, state):
            logger.info("Step %s no longer applies, moving on", step.id)
            result = self._advance(flow, state.evolve(status=StepStatus.DEFERRED), now)
            return StepResult(result.state, result.response, result.done, (), check.fixed_slots)

        key = step.field_key
        answer = None
        if state.meta.get("pending_confirmation") == step.id and key in state.slots:
            answer = parse_confirmation(text)
            if answer == "yes":
                slots = confirm_slot(state.slots, key, state.turn, now)
                state = self._accept(state.evolve(slots=slots), step, slots[key].value)
                result = self._advance(flow, state, now, self._acknowledge(step, slots[key].value))
                return StepResult(result.state, result.response, result.done, (), check.fixed_slots)

        # EXTRACTING
        state = state.evolve(status=StepStatus.EXTRACTING)
        context = ExtractionContext.for_state(state, step)
        fragment = extract_all(text, context, self.sink)
        outcome = merge_slots(state.slots, fragment, now, self.sink)
        state = self._sync_corrections(state.evolve(slots=outcome.merged), outcome.decisions, step)

        # VALIDATING
        state = state.evolve(status=StepStatus.VALIDATING)
        decision = outcome.decision_for(key)
        slot = state.slots.get(key)
        took_value = decision is not None and decision.action != MergeAction.REJECTED

        if answer == "no" and not (took_value and decision.action in (MergeAction.ADDED, MergeAction.ACCEPTED)):
            state = state.evolve(slots=clear_slot(state.slots, key))
            state = _transition(state, step.id, StepStatus.REJECTED)
            if step.slot_type == "phone":
                state = state.with_meta(caller_id_declined=True)
            text_out = _join(DENIED_PREFIX, step.prompt)
            return StepResult(state, Response(ResponseKind.REPROMPT, text_out, step.id), False,
                              outcome.decisions, check.fixed_slots)

        if slot is not None and took_value:
            ok, reason = step.validation.check(slot.value)
            if ok:
                if self._needs_confirm(step, slot):
                    state = _transition(state, step.id, StepStatus.AWAITING_INPUT).with_meta(
                        pending_confirmation=step.id)
                    response = Response(ResponseKind.CONFIRM_SLOT, self._confirm_text(step, slot), step.id)
                    return StepResult(state, response, False, outcome.decisions, check.fixed_slots)
                state = self._accept(state, step, slot.value)
                result = self._advance(flow, state, now, self._acknowledge(step, slot.value))
                return StepResult(result.state, result.response, result.done, outcome.decisions, check.fixed_slots)
        else:
            reason = "no_value" if decision is None else decision.reason

        if rewound:
            # The caller was never asked this step's question in its repaired form
            state = state.evolve(status=StepStatus.AWAITING_INPUT)
            response = Response(ResponseKind.PROMPT, step.prompt, step.id)
            return StepResult(state, response, False, outcome.decisions, check.fixed_slots)

        result = self._reject(flow, state, step, now, reason)
        return StepResult(result.state, result.response, result.done, outcome.decisions, check.fixed_slots)


def run_step(flow: Flow, state: BookingState, user_input: str | None, caller_phone: str | None = None,
             sink=None) -> StepResult:
    return StepSequencer(sink=sink).run_step(flow, state, user_input, caller_phone)
