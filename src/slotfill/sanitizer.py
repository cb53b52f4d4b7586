"""Detect and repair contaminated booking state.

A value that reached the state but no longer passes its type rules (a name
field holding "Super Hot", an address with no house number) is removed from
every place it lives, and the interview is pointed back at the earliest step
that owns one of the removed values.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from slotfill.flow import Flow, step_for_field
from slotfill.patterns import DEFAULT_LOCALE, SLOT_TYPES
from slotfill.session import BookingState
from slotfill.trace import emit_safely
from slotfill.validation import is_valid_slot_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SanitizeResult:
    fixed: bool
    fixed_slots: tuple
    rewind_to: Optional[str]
    state: BookingState


def _rules_for_key(key: str, flow: Flow):
    step = step_for_field(flow, key)
    if step is not None:
        return step.type, step.validation.choices
    return (key if key in SLOT_TYPES else "text"), ()


def _ordered_keys(state: BookingState, flow: Flow) -> list[str]:
    keys = [step.field_key for step in flow.steps]
    for key in list(state.slots) + list(state.collected):
        if key not in keys:
            keys.append(key)
    return keys


def sanitize_booking_state(state: BookingState, flow: Flow, sink=None) -> SanitizeResult:
    locale = state.meta.get("locale", DEFAULT_LOCALE)
    invalid = {}
    for key in _ordered_keys(state, flow):
        slot_type, choices = _rules_for_key(key, flow)
        for value in (state.collected.get(key), state.slot_value(key)):
            if value is None:
                continue
            if not is_valid_slot_value(slot_type, value, choices, locale):
                invalid[key] = value
                break

    if not invalid:
        return SanitizeResult(False, (), None, state)

    rewind_to = None
    for step in flow.steps:
        if step.field_key in invalid:
            rewind_to = step.id
            break

    cleaned = state.evolve(
        slots={k: v for k, v in state.slots.items() if k not in invalid},
        collected={k: v for k, v in state.collected.items() if k not in invalid},
        confirmed_slots=frozenset(k for k in state.confirmed_slots if k not in invalid),
    )
    if cleaned.meta.get("pending_confirmation") in invalid:
        cleaned = cleaned.without_meta("pending_confirmation")

    fixed_slots = tuple(invalid)
    logger.warning("Sanitized booking state for call %s: removed %s, rewind to %s",
                   state.call_id or "-", ", ".join(fixed_slots), rewind_to)
    emit_safely(sink, "BOOKING_STATE_SANITIZED", {
        "call_id": state.call_id,
        "fixed_slots": list(fixed_slots),
        "rewind_to": rewind_to,
        "removed": {key: {"value": value} for key, value in invalid.items()},
    })
    return SanitizeResult(True, fixed_slots, rewind_to, cleaned)
