"""Compile configured booking fields into an ordered interview.

A company's configuration lists the fields it needs (``booking_slots``) with
optional prompts, validation and conditions. ``compile_flow`` turns those into
``FlowStep`` records sorted by ``order`` and then required-first; anything
malformed degrades to the built-in defaults with a warning instead of failing
the call. ``resolve_flow`` wraps the steps with the flow id and the
confirmation/completion templates.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from slotfill.patterns import SLOT_TYPES

logger = logging.getLogger(__name__)

DEFAULT_FLOW_ID = "default_booking_v2"
DEFAULT_MAX_ATTEMPTS = 3
UNORDERED = 999

DEFAULT_CONFIRMATION_TEMPLATE = (
    "Let me confirm: I have {name} at {phone}, service address {address}. Is that correct?"
)
DEFAULT_COMPLETION_TEMPLATE = (
    "Your appointment has been scheduled. Is there anything else I can help you with?"
)

DEFAULT_STEP_PROMPTS = {
    "name": {
        "prompt": "May I have your name, please?",
        "reprompt": "I didn't quite catch that. Could you tell me your name?",
    },
    "phone": {
        "prompt": "And what's the best phone number to reach you?",
        "reprompt": "I'm sorry, I didn't get that number. Can you repeat your phone number?",
    },
    "address": {
        "prompt": "What is the service address?",
        "reprompt": "I want to make sure I have the right address. Can you say it one more time?",
    },
    "propertyType": {
        "prompt": "Is this a house, apartment, condo, or business location?",
        "reprompt": "Just to clarify, is this a residential home, an apartment, or a commercial location?",
    },
    "unit": {
        "prompt": "What's the apartment or unit number?",
        "reprompt": "I didn't catch the unit number. Could you repeat that?",
    },
    "gateAccess": {
        "prompt": "Is there a gate or secured entry to get to your location?",
        "reprompt": "Does the technician need a gate code or any special access instructions?",
    },
    "gateCode": {
        "prompt": "What's the gate code?",
        "reprompt": "I didn't catch that. What's the gate code the technician should use?",
    },
    "accessInstructions": {
        "prompt": "Any special instructions for the technician to get to your unit?",
        "reprompt": "Are there any access instructions or notes for the technician?",
    },
    "time": {
        "prompt": "When would work best for you?",
        "reprompt": "What time works best for your schedule?",
    },
    "email": {
        "prompt": "What's your email address?",
        "reprompt": "Can you spell out your email address for me?",
    },
    "callReasonDetail": {
        "prompt": "Can you tell me a little about what's going on?",
        "reprompt": "Sorry, what seems to be the problem?",
    },
    "serviceType": {
        "prompt": "What type of service do you need?",
        "reprompt": "What service are you looking for today?",
    },
}

DEFAULT_VALIDATION = {
    "phone": {"pattern": r"^[\d\-\(\)\s\.\+]{10,}$", "min_digits": 10},
    "email": {"pattern": r"^[^\s@]+@[^\s@]+\.[^\s@]+$"},
    "name": {"pattern": r"^[A-Za-z][A-Za-z\s\-'\.]{1,}$", "min_length": 2},
    "address": {"min_length": 5},
}

# Which other slot types may be extracted while a step of this type is active
DEFAULT_CAPABILITIES = {
    "name": {"forbids": {"address"}},
    "phone": {"forbids": {"name", "address"}},
    "address": {"forbids": {"name", "time"}},
    "time": {"forbids": {"name", "address"}},
    "email": {"forbids": {"name", "address"}},
    "callReasonDetail": {"forbids": {"name", "address", "time"}},
}
GENERIC_CAPABILITY = {"forbids": {"name", "address", "time"}}

PROPERTY_TYPE_CHOICES = ("house", "apartment", "condo", "townhouse", "commercial", "mobile home", "other")
MULTI_UNIT_PROPERTY_TYPES = ("apartment", "condo", "townhouse", "commercial")


def _as_count(value, name: str) -> int:
    if not value:
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s: %r", name, value)
        return 0


@dataclass(frozen=True)
class StepCondition:
    state_key: str
    equals: Any = None
    in_: tuple = ()
    not_null: bool = False

    def to_dict(self) -> dict:
        data = {"state_key": self.state_key}
        if self.in_:
            data["in"] = list(self.in_)
        elif self.not_null:
            data["not_null"] = True
        else:
            data["equals"] = self.equals
        return data

    @classmethod
    def from_dict(cls, data) -> Optional["StepCondition"]:
        if not isinstance(data, dict):
            return None
        key = data.get("state_key") or data.get("stateKey")
        if not key:
            return None
        in_values = data.get("in") or data.get("in_") or ()
        return cls(
            state_key=key,
            equals=data.get("equals"),
            in_=tuple(in_values) if isinstance(in_values, (list, tuple)) else (),
            not_null=bool(data.get("not_null") or data.get("notNull")),
        )


@dataclass(frozen=True)
class StepValidation:
    pattern: Optional[str] = None
    min_length: int = 0
    min_digits: int = 0
    choices: tuple = ()

    def check(self, value) -> tuple[bool, str]:
        text = str(value or "").strip()
        if not text:
            return False, "empty"
        if self.min_length and len(text) < self.min_length:
            return False, "too_short"
        if self.min_digits and len(re.sub(r"\D", "", text)) < self.min_digits:
            return False, "too_few_digits"
        if self.choices and text.lower() not in {c.lower() for c in self.choices}:
            return False, "not_a_choice"
        if self.pattern and not re.search(self.pattern, text):
            return False, "pattern_mismatch"
        return True, "ok"

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "min_length": self.min_length,
            "min_digits": self.min_digits,
            "choices": list(self.choices),
        }

    @classmethod
    def from_dict(cls, data) -> "StepValidation":
        if not isinstance(data, dict):
            return cls()
        choices = data.get("choices") or ()
        return cls(
            pattern=data.get("pattern"),
            min_length=_as_count(data.get("min_length") or data.get("minLength"), "min_length"),
            min_digits=_as_count(data.get("min_digits") or data.get("minDigits"), "min_digits"),
            choices=tuple(str(c) for c in choices) if isinstance(choices, (list, tuple)) else (),
        )


@dataclass(frozen=True)
class FlowStep:
    id: str
    field_key: str
    type: str
    label: str = ""
    prompt: str = ""
    reprompt: str = ""
    confirm_prompt: str = ""
    required: bool = True
    validation: StepValidation = field(default_factory=StepValidation)
    options: dict = field(default_factory=dict)
    order: int = UNORDERED
    condition: Optional[StepCondition] = None
    permits: frozenset = frozenset()
    forbids: frozenset = frozenset()

    @property
    def slot_type(self) -> str:
        """The extractor type this step collects, or the field key for generic steps."""
        return self.type if self.type in SLOT_TYPES else self.field_key

    @property
    def is_generic(self) -> bool:
        return self.type not in SLOT_TYPES

    @property
    def max_attempts(self) -> int:
        return int(self.options.get("max_attempts", DEFAULT_MAX_ATTEMPTS))

    def allows(self, slot_type: str) -> bool:
        """Capability check: may ``slot_type`` be extracted while this step is active."""
        if slot_type == self.slot_type:
            return True
        if slot_type in self.forbids:
            return False
        if self.permits:
            return slot_type in self.permits
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "field_key": self.field_key,
            "type": self.type,
            "label": self.label,
            "prompt": self.prompt,
            "reprompt": self.reprompt,
            "confirm_prompt": self.confirm_prompt,
            "required": self.required,
            "validation": self.validation.to_dict(),
            "options": dict(self.options),
            "order": self.order,
            "condition": self.condition.to_dict() if self.condition else None,
            "permits": sorted(self.permits),
            "forbids": sorted(self.forbids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FlowStep":
        return cls(
            id=data["id"],
            field_key=data.get("field_key") or data["id"],
            type=data.get("type") or data["id"],
            label=data.get("label", ""),
            prompt=data.get("prompt", ""),
            reprompt=data.get("reprompt", ""),
            confirm_prompt=data.get("confirm_prompt", ""),
            required=data.get("required", True) is not False,
            validation=StepValidation.from_dict(data.get("validation")),
            options=dict(data.get("options") or {}),
            order=int(data.get("order", UNORDERED)),
            condition=StepCondition.from_dict(data.get("condition")),
            permits=frozenset(data.get("permits") or ()),
            forbids=frozenset(data.get("forbids") or ()),
        )


@dataclass(frozen=True)
class Flow:
    flow_id: str
    steps: tuple
    flow_name: str = "Booking Flow"
    confirmation_template: str = DEFAULT_CONFIRMATION_TEMPLATE
    completion_template: str = DEFAULT_COMPLETION_TEMPLATE
    source: str = "default"
    company_id: Optional[str] = None
    trade: Optional[str] = None
    service_type: Optional[str] = None

    @property
    def required_fields(self) -> list[str]:
        return [s.field_key for s in self.steps if s.required]

    def render_confirmation(self, collected: dict) -> str:
        return _render(self.confirmation_template, collected)

    def render_completion(self, collected: dict) -> str:
        return _render(self.completion_template, collected)

    def to_dict(self) -> dict:
        return {
            "flow_id": self.flow_id,
            "flow_name": self.flow_name,
            "steps": [s.to_dict() for s in self.steps],
            "confirmation_template": self.confirmation_template,
            "completion_template": self.completion_template,
            "source": self.source,
            "company_id": self.company_id,
            "trade": self.trade,
            "service_type": self.service_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Flow":
        return cls(
            flow_id=data.get("flow_id", DEFAULT_FLOW_ID),
            flow_name=data.get("flow_name", "Booking Flow"),
            steps=tuple(FlowStep.from_dict(s) for s in data.get("steps") or []),
            confirmation_template=data.get("confirmation_template") or DEFAULT_CONFIRMATION_TEMPLATE,
            completion_template=data.get("completion_template") or DEFAULT_COMPLETION_TEMPLATE,
            source=data.get("source", "default"),
            company_id=data.get("company_id"),
            trade=data.get("trade"),
            service_type=data.get("service_type"),
        )


class _Blank(dict):
    def __missing__(self, key):
        return ""


def _render(template: str, values: dict) -> str:
    try:
        return template.format_map(_Blank(values))
    except (ValueError, IndexError) as e:
        logger.warning("Bad template %r: %s", template, e)
        return template


def _capabilities(slot_type: str, generic: bool) -> dict:
    if generic:
        return GENERIC_CAPABILITY
    return DEFAULT_CAPABILITIES.get(slot_type, GENERIC_CAPABILITY)


def _compile_pattern(pattern, step_id: str) -> Optional[str]:
    if not pattern:
        return None
    try:
        re.compile(pattern)
    except (re.error, TypeError) as e:
        logger.warning("Dropping invalid validation pattern for step %s: %s", step_id, e)
        return None
    return pattern


def _build_validation(definition: dict, step_type: str, step_id: str) -> StepValidation:
    base = dict(DEFAULT_VALIDATION.get(step_type, {}))
    custom = definition.get("validation")
    if isinstance(custom, str):
        base["pattern"] = custom
    elif isinstance(custom, dict):
        parsed = StepValidation.from_dict(custom).to_dict()
        base.update({k: v for k, v in parsed.items() if v not in (None, 0, [], ())})
    options = definition.get("options") or {}
    choices = options.get("choices") if isinstance(options, dict) else None
    if not isinstance(choices, (list, tuple)) or not choices:
        choices = base.get("choices") or ()
    return StepValidation(
        pattern=_compile_pattern(base.get("pattern"), step_id),
        min_length=_as_count(base.get("min_length"), "min_length"),
        min_digits=_as_count(base.get("min_digits"), "min_digits"),
        choices=tuple(str(c) for c in choices),
    )


def _order_of(definition: dict) -> int:
    order = definition.get("order")
    return order if isinstance(order, int) and not isinstance(order, bool) else UNORDERED


def compile_flow(field_definitions, step_overrides: dict | None = None) -> list[FlowStep]:
    """Turn configured field definitions into ordered flow steps.

    Prompt priority: step override, field question, built-in default,
    generic "What is your {type}?".
    """
    if not isinstance(field_definitions, (list, tuple)):
        logger.warning("Field definitions are not a list (%s), using defaults",
                       type(field_definitions).__name__)
        return list(build_default_flow().steps)
    overrides = step_overrides if isinstance(step_overrides, dict) else {}

    usable = []
    for index, definition in enumerate(field_definitions):
        if not isinstance(definition, dict):
            logger.warning("Skipping field definition %d: not an object", index)
            continue
        step_id = definition.get("id") or definition.get("slot_id") or definition.get("slotId") \
            or definition.get("type")
        if not step_id:
            logger.warning("Skipping field definition %d: no id or type", index)
            continue
        usable.append((step_id, definition))

    # Stable sort: explicit order first, then required before optional
    if not usable:
        logger.warning("No usable field definitions, using defaults")
        return list(build_default_flow().steps)

    usable.sort(key=lambda item: (_order_of(item[1]), item[1].get("required") is False))

    steps = []
    for position, (step_id, definition) in enumerate(usable, start=1):
        step_type = definition.get("type") or step_id
        override = overrides.get(step_id)
        if not isinstance(override, dict):
            if override:
                logger.warning("Ignoring step override for %s: not an object", step_id)
            override = {}
        defaults = DEFAULT_STEP_PROMPTS.get(step_id) or DEFAULT_STEP_PROMPTS.get(step_type) or {}
        prompt = (override.get("prompt") or definition.get("question") or definition.get("prompt")
                  or defaults.get("prompt") or f"What is your {step_type}?")
        reprompt = (override.get("reprompt") or definition.get("reprompt")
                    or defaults.get("reprompt") or f"I didn't quite catch that. What is your {step_type}?")
        generic = step_type not in SLOT_TYPES
        caps = _capabilities(step_type, generic)
        options = definition.get("options") if isinstance(definition.get("options"), dict) else {}
        steps.append(FlowStep(
            id=step_id,
            field_key=definition.get("field_key") or definition.get("fieldKey") or step_id,
            type=step_type,
            label=definition.get("label") or step_type,
            prompt=prompt,
            reprompt=reprompt,
            confirm_prompt=override.get("confirm_prompt") or definition.get("confirm_prompt") or "",
            required=override.get("required", definition.get("required")) is not False,
            validation=_build_validation(definition, step_type, step_id),
            options=dict(options),
            order=_order_of(definition) if _order_of(definition) != UNORDERED else position,
            condition=StepCondition.from_dict(definition.get("condition")),
            permits=frozenset(definition.get("permits") or caps.get("permits", ())),
            forbids=frozenset(definition.get("forbids") or caps.get("forbids", ())),
        ))
    return steps


def _default_definitions() -> list[dict]:
    return [
        {"id": "name", "type": "name", "label": "Name", "required": True, "order": 1},
        {"id": "phone", "type": "phone", "label": "Phone", "required": True, "order": 2},
        {"id": "address", "type": "address", "label": "Service Address", "required": True, "order": 3},
        {
            "id": "propertyType", "type": "select", "label": "Property Type", "required": True, "order": 4,
            "options": {"choices": list(PROPERTY_TYPE_CHOICES)},
            "condition": {"state_key": "meta.address_needs_unit", "equals": True},
        },
        {
            "id": "unit", "type": "text", "label": "Unit/Apt Number", "required": True, "order": 5,
            "condition": {"state_key": "meta.address_needs_unit", "equals": True},
        },
        {
            "id": "gateAccess", "type": "yesno", "label": "Gated/Secured Entry", "required": True, "order": 6,
            "condition": {"state_key": "collected.propertyType", "in": list(MULTI_UNIT_PROPERTY_TYPES)},
        },
        {
            "id": "gateCode", "type": "text", "label": "Gate Code", "required": True, "order": 7,
            "condition": {"state_key": "collected.gateAccess", "equals": "yes"},
        },
        {"id": "time", "type": "time", "label": "Preferred Time", "required": False, "order": 10},
    ]


def build_default_flow(company_id: str | None = None, templates: dict | None = None) -> Flow:
    templates = templates or {}
    return Flow(
        flow_id=DEFAULT_FLOW_ID,
        flow_name="Default Booking Flow",
        steps=tuple(compile_flow(_default_definitions())),
        confirmation_template=templates.get("confirm") or DEFAULT_CONFIRMATION_TEMPLATE,
        completion_template=templates.get("complete") or DEFAULT_COMPLETION_TEMPLATE,
        source="default",
        company_id=company_id,
    )


def generate_flow_id(company: dict, trade: str | None = None, service_type: str | None = None) -> str:
    company_slug = re.sub(r"[^a-z0-9]", "_", (company.get("slug") or company.get("name") or "unknown").lower())[:20]
    trade_slug = "_" + re.sub(r"[^a-z0-9]", "_", trade.lower()) if trade else ""
    service_slug = "_" + re.sub(r"[^a-z0-9]", "_", service_type.lower()) if service_type else ""
    return f"{company_slug}{trade_slug}{service_slug}_booking_v1"


def _overrides_from_prompts(prompts) -> dict:
    """Accept either {"name": {"prompt": ...}} or flat "booking:name:question" keys."""
    overrides: dict = {}
    if not isinstance(prompts, dict):
        return overrides
    for key, value in prompts.items():
        if isinstance(value, dict):
            overrides.setdefault(key, {}).update(value)
            continue
        parts = key.split(":")
        if len(parts) == 3 and parts[0] == "booking" and isinstance(value, str):
            kind = {"question": "prompt", "reprompt": "reprompt", "confirm": "confirm_prompt"}.get(parts[2])
            if kind:
                overrides.setdefault(parts[1], {})[kind] = value
    return overrides


def resolve_flow(config: dict | None) -> Flow:
    """Resolve a company's flow configuration, falling back to the default flow."""
    if not isinstance(config, dict):
        logger.warning("No flow config provided, using default flow")
        return build_default_flow()
    company_id = config.get("company_id")
    templates = config.get("templates") if isinstance(config.get("templates"), dict) else {}
    booking_slots = config.get("booking_slots")
    if not booking_slots:
        logger.warning("No booking slots configured for company %s, using default flow", company_id)
        return build_default_flow(company_id, templates)

    steps = compile_flow(booking_slots, _overrides_from_prompts(config.get("prompts")))
    if not steps:
        logger.warning("Booking slots for company %s produced no steps, using default flow", company_id)
        return build_default_flow(company_id, templates)

    trade = config.get("trade")
    service_type = config.get("service_type")
    flow = Flow(
        flow_id=generate_flow_id(config, trade, service_type),
        flow_name=f"{config.get('name') or 'Company'} Booking Flow",
        steps=tuple(steps),
        confirmation_template=templates.get("confirm") or DEFAULT_CONFIRMATION_TEMPLATE,
        completion_template=templates.get("complete") or DEFAULT_COMPLETION_TEMPLATE,
        source="company_config",
        company_id=company_id,
        trade=trade,
        service_type=service_type,
    )
    logger.info("Flow %s resolved with %d steps (required: %s)",
                flow.flow_id, len(flow.steps), ", ".join(flow.required_fields))
    return flow


def evaluate_condition(condition: Optional[StepCondition], state) -> bool:
    """A missing condition always holds. ``state`` must provide ``lookup(path)``."""
    if condition is None:
        return True
    value = state.lookup(condition.state_key)
    if condition.in_:
        return value is not None and str(value).lower() in {str(v).lower() for v in condition.in_}
    if condition.not_null:
        return value not in (None, "")
    if condition.equals is not None:
        if isinstance(condition.equals, str) and isinstance(value, str):
            return value.lower() == condition.equals.lower()
        return value == condition.equals
    return bool(value)


def get_step(flow: Flow, step_id: str | None) -> Optional[FlowStep]:
    for step in flow.steps:
        if step.id == step_id:
            return step
    return None


def step_index(flow: Flow, step_id: str | None) -> int:
    for i, step in enumerate(flow.steps):
        if step.id == step_id:
            return i
    return -1


def next_step(flow: Flow, step_id: str | None, state=None) -> Optional[FlowStep]:
    """The step after ``step_id``, or the first step when ``step_id`` is not in the flow.

    With a state, steps whose condition does not hold are skipped.
    """
    for step in flow.steps[step_index(flow, step_id) + 1:]:
        if state is None or evaluate_condition(step.condition, state):
            return step
    return None


def step_for_field(flow: Flow, field_key: str) -> Optional[FlowStep]:
    for step in flow.steps:
        if step.field_key == field_key:
            return step
    return None
