"""Turn a caller utterance into slot candidates.

Each slot type has an ordered rule list in ``slotfill.patterns``; the first
rule whose value survives validation produces the candidate. Extraction is
gated by the current flow step's capability table so that, for example, an
address spoken while the agent is asking for a name never becomes an address
candidate, and confirmed slots are left alone unless the caller is
correcting them.
"""

import logging
import re
import string
from dataclasses import dataclass, field
from typing import Optional

from slotfill.flow import FlowStep, PROPERTY_TYPE_CHOICES
from slotfill.patterns import (
    CALLER_ID,
    CONFIRMED,
    CORRECTION_SIGNALS,
    DEFAULT_LOCALE,
    NEGATIVE_CONFIRMATION,
    PHONE_CONFIRM_PATTERNS,
    POSITIVE_CONFIRMATION,
    SLOT_TYPES,
    TIER_CONFIDENCE,
    PatternRule,
    load_exclusions,
    load_first_names,
    rules_for,
)
from slotfill.slots import Candidate, PatternTier, SlotSource
from slotfill.trace import emit_safely
from slotfill.validation import (
    SENTINEL_VALUES,
    digits_only,
    format_phone,
    is_greeting_only,
    is_valid_phone,
    looks_like_address,
    needs_spelling_check,
    normalize_street_number,
    sanitize_name,
    validate_address,
    validate_email,
    validate_reason,
    validate_time,
    words_to_digits,
)

logger = logging.getLogger(__name__)

# Outside a booking step, location and scheduling talk is usually small talk
DISCOVERY_FORBIDS = frozenset({"address", "time"})

MAX_NAME_WORDS = 2
MIN_STREET_ADDRESS_LENGTH = 10
MIN_LENIENT_ADDRESS_LENGTH = 8

_ADDRESS_TAIL = re.compile(r"\s+(?:and|but|so|because|which|if|then)\s+.*$", re.IGNORECASE)
_ASAP_VALUES = {"asap", "a.s.a.p", "a.s.a.p.", "as soon as possible", "right away", "immediately",
                "first available", "earliest available", "now", "soon"}
_TEXT_LEADERS = re.compile(
    r"^(?:(?:yeah|yes|ok|okay|sure|um|uh|so)[\s,]+)*(?:it'?s|it is|the code is|the gate code is|"
    r"the number is|that'?s|number|code)?\s*",
    re.IGNORECASE,
)
_UNIT_LEADERS = re.compile(r"^(?:apartment|apt\.?|unit|suite|ste\.?|number|no\.?|#)\s*", re.IGNORECASE)
_PROPERTY_SYNONYMS = {
    "house": ("house", "home", "single family", "residential", "residence"),
    "apartment": ("apartment", "apt", "flat"),
    "condo": ("condo", "condominium"),
    "townhouse": ("townhouse", "townhome", "town house", "duplex"),
    "commercial": ("commercial", "business", "office", "store", "restaurant", "shop"),
    "mobile home": ("mobile home", "trailer", "manufactured home"),
}


@dataclass(frozen=True)
class ExtractionContext:
    turn: int = 0
    caller_phone: Optional[str] = None
    existing_slots: dict = field(default_factory=dict)
    current_step: Optional[FlowStep] = None
    confirmed_slots: frozenset = frozenset()
    booking_active: bool = False
    common_first_names: Optional[frozenset] = None
    locale: str = DEFAULT_LOCALE

    @property
    def expecting(self) -> Optional[str]:
        return self.current_step.slot_type if self.current_step is not None else None

    @property
    def first_names(self) -> frozenset:
        if self.common_first_names is not None:
            return self.common_first_names
        return load_first_names()

    @classmethod
    def for_state(cls, state, step: Optional[FlowStep] = None, caller_phone: str | None = None):
        confirmed = set(state.confirmed_slots)
        confirmed.update(key for key, slot in state.slots.items() if slot.confirmed)
        if not state.meta.get("caller_id_declined"):
            caller_phone = caller_phone or state.meta.get("caller_phone")
        return cls(
            turn=state.turn,
            caller_phone=caller_phone,
            existing_slots=state.slots,
            current_step=step,
            confirmed_slots=frozenset(confirmed),
            booking_active=step is not None or bool(state.meta.get("booking_active")),
            locale=state.meta.get("locale", DEFAULT_LOCALE),
        )


def is_correction(utterance: str | None) -> bool:
    if not utterance:
        return False
    return any(p.search(utterance) for p in CORRECTION_SIGNALS)


def parse_confirmation(utterance: str | None) -> Optional[str]:
    """Return "yes", "no" or None for a reply to a yes/no question."""
    if not utterance:
        return None
    text = re.sub(r"[.,!?]+$", "", utterance.lower().strip())
    if any(p.search(text) for p in NEGATIVE_CONFIRMATION):
        return "no"
    if any(p.search(text) for p in POSITIVE_CONFIRMATION):
        return "yes"
    if re.match(r"^(?:no|nope|nah)\b", text) or re.search(r"\bno (?:gate|code)\b", text):
        return "no"
    if re.match(r"^(?:yes|yeah|yep|yup|sure)\b", text) or re.search(r"\bthere(?: is|'s) a gate\b", text):
        return "yes"
    return None


def clean_name(raw: str | None, locale: str = DEFAULT_LOCALE) -> Optional[str]:
    """Drop stop words and invalid parts, keep at most two title-cased words."""
    cleaned = sanitize_name(raw, locale)
    if not cleaned:
        return None
    return " ".join(cleaned.split()[:MAX_NAME_WORDS])


def should_extract(slot_type: str, context: ExtractionContext, utterance: str = "") -> bool:
    step = context.current_step
    if step is None:
        if not context.booking_active and slot_type in DISCOVERY_FORBIDS:
            logger.debug("Skipping %s extraction outside booking", slot_type)
            return False
    elif not step.allows(slot_type):
        logger.debug("Step %s forbids %s extraction", step.id, slot_type)
        return False
    if slot_type in context.confirmed_slots and not is_correction(utterance):
        logger.debug("Skipping %s extraction: already confirmed", slot_type)
        return False
    return True


def _name_extras(value: str, context: ExtractionContext) -> dict:
    parts = value.split()
    first = parts[0]
    likely = first.lower() in context.first_names if context.first_names else True
    return {
        "first_name": first,
        "last_name": parts[1] if len(parts) > 1 else "",
        "is_likely_first_name": likely,
        "needs_spelling_check": needs_spelling_check(first),
    }


def _finish_name(raw: str, rule: PatternRule, context: ExtractionContext, text: str):
    if rule.tier in (PatternTier.CONTEXTUAL, PatternTier.FALLBACK) and looks_like_address(text, context.locale):
        return None, {}
    value = clean_name(raw, context.locale)
    if not value:
        return None, {}
    # A bare "will" or "may" is not taken as a name
    ambiguous = load_exclusions(context.locale).ambiguous_names
    if rule.tier == PatternTier.FALLBACK and all(w.lower() in ambiguous for w in value.split()):
        return None, {}
    if rule.known_first_name and context.first_names and value.split()[0].lower() not in context.first_names:
        return None, {}
    return value, _name_extras(value, context)


def _finish_phone(raw: str, rule: PatternRule, context: ExtractionContext, text: str):
    digits = words_to_digits(raw) if rule.tier == PatternTier.FALLBACK else digits_only(raw)
    if not is_valid_phone(digits):
        return None, {}
    return format_phone(digits) or None, {}


def _tidy_address(raw: str) -> str:
    value = _ADDRESS_TAIL.sub("", raw)
    value = re.sub(r"\s+", " ", value).strip(" ,.!?")
    if value.islower():
        value = string.capwords(value)
    return value


def _finish_address(raw: str, rule: PatternRule, context: ExtractionContext, text: str):
    value = normalize_street_number(_tidy_address(raw))
    if rule.tier == PatternTier.SECONDARY and len(value) < MIN_STREET_ADDRESS_LENGTH:
        return None, {}
    if rule.tier == PatternTier.FALLBACK and len(value) < MIN_LENIENT_ADDRESS_LENGTH:
        return None, {}
    return validate_address(value, context.locale) or None, {}


def _finish_time(raw: str, rule: PatternRule, context: ExtractionContext, text: str):
    value = re.sub(r"\s+", " ", raw.strip().lower())
    if value in _ASAP_VALUES:
        return "ASAP", {"urgent": True}
    return validate_time(value, context.locale) or None, {}


def _finish_email(raw: str, rule: PatternRule, context: ExtractionContext, text: str):
    value = raw.lower()
    if rule.tier == PatternTier.FALLBACK:
        value = re.sub(r"\s+at\s+", "@", value)
        value = re.sub(r"\s+dot\s+", ".", value)
        value = value.replace(" ", "")
    return validate_email(value) or None, {}


def _finish_reason(raw: str, rule: PatternRule, context: ExtractionContext, text: str):
    if rule.tier == PatternTier.FALLBACK and is_greeting_only(raw, context.locale):
        return None, {}
    value = re.sub(r"\s+", " ", raw).strip(" ,.!?")[:200]
    return validate_reason(value) or None, {}


_FINISHERS = {
    "name": _finish_name,
    "phone": _finish_phone,
    "address": _finish_address,
    "time": _finish_time,
    "email": _finish_email,
    "callReasonDetail": _finish_reason,
}


def caller_id_candidate(caller_phone: str | None, turn: int = 0) -> Optional[Candidate]:
    """The number the call came from, pending the caller's confirmation."""
    caller = format_phone(caller_phone)
    if not caller:
        return None
    return Candidate(
        value=caller,
        confidence=CALLER_ID,
        source=SlotSource.CALLER_METADATA,
        pattern_tier=PatternTier.METADATA,
        turn=turn,
        needs_confirmation=True,
        rule_name="caller_id",
    )


def _caller_phone_candidate(text: str, context: ExtractionContext) -> Optional[Candidate]:
    caller = format_phone(context.caller_phone)
    if not caller:
        return None
    spoken_digits = len(digits_only(text)) >= 10
    if not spoken_digits and any(p.search(text) for p in PHONE_CONFIRM_PATTERNS):
        return Candidate(
            value=caller,
            confidence=CONFIRMED,
            source=SlotSource.CALLER_METADATA,
            pattern_tier=PatternTier.PRIMARY,
            extracted_explicitly=True,
            turn=context.turn,
            confirmed=True,
            rule_name="use_caller_number",
        )
    if "phone" in context.existing_slots or spoken_digits:
        return None
    if context.turn <= 1 or context.expecting == "phone":
        return caller_id_candidate(caller, context.turn)
    return None


def extract(slot_type: str, utterance: str | None, context: ExtractionContext) -> Optional[Candidate]:
    """Return the best candidate for one slot type, or None."""
    if not utterance or not utterance.strip():
        return None
    text = utterance.strip()
    correction = is_correction(text)
    allowed = should_extract(slot_type, context, text)
    correction_only = False
    if not allowed:
        # A caller may correct a slot that the current step would otherwise not touch
        if not (correction and slot_type in context.existing_slots):
            return None
        correction_only = True

    if slot_type == "time" and is_greeting_only(text, context.locale):
        return None

    finisher = _FINISHERS.get(slot_type)
    if finisher is None:
        return None

    for rule in rules_for(slot_type):
        if correction_only and rule.tier != PatternTier.CORRECTION:
            continue
        if rule.step_gated and context.expecting != slot_type:
            continue
        match = rule.find(text)
        if not match:
            continue
        value, extras = finisher(match.group("value"), rule, context, text)
        if not value:
            logger.debug("Rule %s matched %r but the value was rejected", rule.name, match.group("value"))
            continue
        return Candidate(
            value=value,
            confidence=rule.confidence,
            source=SlotSource.UTTERANCE,
            pattern_tier=rule.tier,
            is_correction=correction or rule.tier == PatternTier.CORRECTION,
            extracted_explicitly=rule.tier.is_explicit,
            turn=context.turn,
            rule_name=rule.name,
            extras=extras,
        )

    if slot_type == "phone" and not correction_only:
        return _caller_phone_candidate(text, context)
    return None


def _choice_for(text: str, choices) -> Optional[str]:
    lower = text.lower()
    for choice in choices:
        synonyms = _PROPERTY_SYNONYMS.get(choice.lower(), (choice.lower(),))
        if any(re.search(rf"\b{re.escape(s)}\b", lower) for s in synonyms):
            return choice
    return None


def extract_step_value(step: FlowStep, utterance: str | None, context: ExtractionContext) -> Optional[Candidate]:
    """Value for a select, yes/no or free-text step."""
    if not utterance or not utterance.strip() or not step.is_generic:
        return None
    text = utterance.strip()
    value = None
    if step.type == "select":
        choices = step.validation.choices or step.options.get("choices") or PROPERTY_TYPE_CHOICES
        value = _choice_for(text, choices)
    elif step.type == "yesno":
        value = parse_confirmation(text)
    else:
        value = _TEXT_LEADERS.sub("", text).strip(" .,!?")
        if step.field_key == "unit":
            value = _UNIT_LEADERS.sub("", value).strip(" .,!?").upper()
        if value.lower() in SENTINEL_VALUES:
            value = None
    if not value:
        return None
    return Candidate(
        value=value,
        confidence=TIER_CONFIDENCE[PatternTier.FALLBACK],
        source=SlotSource.UTTERANCE,
        pattern_tier=PatternTier.FALLBACK,
        is_correction=is_correction(text),
        turn=context.turn,
        rule_name=f"step_{step.type}",
    )


def _summary(fragment: dict) -> dict:
    return {
        key: {"value": c.value, "confidence": c.confidence, "tier": c.pattern_tier.value}
        for key, c in fragment.items()
    }


def extract_all(utterance: str | None, context: ExtractionContext, sink=None) -> dict:
    """Run every slot extractor on one utterance. Returns {slot_key: Candidate}."""
    fragment = {}
    for slot_type in SLOT_TYPES:
        candidate = extract(slot_type, utterance, context)
        if candidate is not None:
            fragment[slot_type] = candidate
    step = context.current_step
    if step is not None and step.is_generic:
        candidate = extract_step_value(step, utterance, context)
        if candidate is not None:
            fragment[step.field_key] = candidate

    if fragment:
        logger.info("Turn %d extracted %s", context.turn, ", ".join(sorted(fragment)))
    emit_safely(sink, "SLOTS_EXTRACTED", {
        "turn": context.turn,
        "step": step.id if step else None,
        "slots": _summary(fragment),
    })
    return fragment
