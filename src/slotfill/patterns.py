"""Pattern library: ordered extraction rules, confidence levels and exclusion data.

Rules are plain records evaluated top to bottom per slot type. The first rule
whose match survives validation wins, so the order of each tuple in ``RULES``
is the precedence order. Stop words and other exclusion sets live in
``data/stop_words.json`` keyed by locale, and carry a version string so a
change to the lists is visible in traces.
"""

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from slotfill.slots import PatternTier

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_LOCALE = "en-US"

# Confidence levels by provenance
UTTERANCE_LOW = 0.6
CALLER_ID = 0.7
EXTERNAL_LOOKUP = 0.85
UTTERANCE_HIGH = 0.9
CONFIRMED = 1.0
MANUAL = 1.0

TIER_CONFIDENCE = {
    PatternTier.CORRECTION: UTTERANCE_HIGH,
    PatternTier.PRIMARY: UTTERANCE_HIGH,
    PatternTier.SECONDARY: UTTERANCE_HIGH,
    PatternTier.CONTEXTUAL: UTTERANCE_LOW,
    PatternTier.FALLBACK: UTTERANCE_HIGH,
    PatternTier.METADATA: CALLER_ID,
}

SLOT_TYPES = ("name", "phone", "address", "time", "email", "callReasonDetail")


@dataclass(frozen=True)
class Exclusions:
    version: str
    locale: str
    name_stop_words: frozenset
    ambiguous_names: frozenset
    street_suffixes: frozenset
    address_time_words: frozenset
    greetings: frozenset
    unit_keywords: frozenset


@lru_cache(maxsize=None)
def _read_stop_word_file() -> dict:
    with open(DATA_DIR / "stop_words.json", encoding="utf-8") as fh:
        return json.load(fh)


@lru_cache(maxsize=None)
def load_exclusions(locale: str = DEFAULT_LOCALE) -> Exclusions:
    """Load the exclusion sets for a locale, falling back to the default locale."""
    data = _read_stop_word_file()
    locales = data.get("locales", {})
    fallback = data.get("default_locale", DEFAULT_LOCALE)
    if locale not in locales:
        logger.warning("No stop words for locale %s, using %s", locale, fallback)
        locale = fallback
    entry = locales[locale]
    return Exclusions(
        version=data.get("version", "unversioned"),
        locale=locale,
        name_stop_words=frozenset(w.lower() for w in entry.get("name", [])),
        ambiguous_names=frozenset(w.lower() for w in entry.get("name_ambiguous", [])),
        street_suffixes=frozenset(w.lower() for w in entry.get("street_suffixes", [])),
        address_time_words=frozenset(w.lower() for w in entry.get("address_time_words", [])),
        greetings=frozenset(w.lower() for w in entry.get("greeting", [])),
        unit_keywords=frozenset(w.lower() for w in entry.get("unit_keywords", [])),
    )


@lru_cache(maxsize=None)
def load_first_names() -> frozenset:
    names = set()
    with open(DATA_DIR / "first_names.txt", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line and not line.startswith("#"):
                names.add(line.lower())
    return frozenset(names)


@dataclass(frozen=True)
class PatternRule:
    slot_type: str
    name: str
    tier: PatternTier
    pattern: re.Pattern
    take_last: bool = False
    requires: Optional[re.Pattern] = None
    known_first_name: bool = False
    step_gated: bool = False

    @property
    def confidence(self) -> float:
        return TIER_CONFIDENCE[self.tier]

    def find(self, text: str) -> Optional[re.Match]:
        if self.requires is not None and not self.requires.search(text):
            return None
        if self.take_last:
            matches = list(self.pattern.finditer(text))
            return matches[-1] if matches else None
        return self.pattern.search(text)


def _rule(slot_type, name, tier, pattern, **kwargs) -> PatternRule:
    return PatternRule(
        slot_type=slot_type,
        name=name,
        tier=tier,
        pattern=re.compile(pattern, re.IGNORECASE),
        step_gated=tier == PatternTier.FALLBACK,
        **kwargs,
    )


_EXCLUSIONS = load_exclusions()
_SUFFIXES = "|".join(sorted(_EXCLUSIONS.street_suffixes, key=len, reverse=True))
_DAYS = "monday|tuesday|wednesday|thursday|friday|saturday|sunday"
_NAME_TOKEN = r"[a-z][a-z'\-]*"
_NAME_VALUE = rf"(?P<value>{_NAME_TOKEN}(?:\s+{_NAME_TOKEN})?)"
_FILLER = r"(?:(?:yeah|yes|sure|ok|okay|uh|um|so|it'?s|its|this is)[\s,]+)*"

NAME_RULES = (
    _rule("name", "correction_restated", PatternTier.CORRECTION,
          rf"\b(?:no|nope|sorry|actually|i mean)\b[\s,]*(?:actually[\s,]+)?"
          rf"(?:it'?s|it is|my name is|the name is|i'?m|i am)\s+{_NAME_VALUE}"),
    _rule("name", "correction_thats", PatternTier.CORRECTION,
          rf"\b(?:well\s+)?(?:that'?s|that is)\s+{_NAME_VALUE}\s*[.,!]?\s*(?:$|\band\b)"),
    _rule("name", "correction_i_said", PatternTier.CORRECTION,
          rf"\b(?:i said|i meant)\s+{_NAME_VALUE}"),
    _rule("name", "my_name_is", PatternTier.PRIMARY,
          rf"\b(?:my (?:full |first )?name is|my name's|the name is|name's)\s+{_NAME_VALUE}",
          take_last=True),
    _rule("name", "this_is", PatternTier.SECONDARY,
          rf"\b(?:this is|you can call me|they call me|call me)\s+{_NAME_VALUE}"),
    _rule("name", "i_am_known_first_name", PatternTier.SECONDARY,
          rf"\b(?:i'?m|i am)\s+{_NAME_VALUE}", known_first_name=True),
    _rule("name", "greeting", PatternTier.CONTEXTUAL,
          rf"^\s*(?:hi|hello|hey)[\s,!]+(?P<value>{_NAME_TOKEN})\b"),
    _rule("name", "bare_name", PatternTier.FALLBACK,
          rf"^\s*{_FILLER}{_NAME_VALUE}\s*[.!]?\s*$"),
)

PHONE_RULES = (
    _rule("phone", "correction_number", PatternTier.CORRECTION,
          r"\b(?:no|sorry|actually)\b[\s,]*(?:it'?s|the number is|my number is|it is)\s+"
          r"(?P<value>\+?\d[\d\-\.\(\)\s]{8,}\d)"),
    _rule("phone", "my_number_is", PatternTier.PRIMARY,
          r"\b(?:my (?:phone |cell |callback |best )?number is|you can reach me at|call me (?:back )?at)\s+"
          r"(?P<value>\+?\d[\d\-\.\(\)\s]{8,}\d)"),
    _rule("phone", "digit_run", PatternTier.SECONDARY,
          r"(?P<value>\+?\d[\d\-\.\(\)\s]{8,}\d)"),
    _rule("phone", "spoken_digits", PatternTier.FALLBACK,
          r"(?P<value>(?:\b(?:zero|oh|one|two|three|four|five|six|seven|eight|nine|\d)\b[\s,\-]*){10,})"),
)

_ADDRESS_BODY = r"\d{1,5}\s+[a-z0-9][a-z0-9\s\.#,'\-]*"

ADDRESS_RULES = (
    _rule("address", "correction_address", PatternTier.CORRECTION,
          rf"\b(?:no|sorry|actually)\b[\s,]*(?:it'?s|the address is|it is|i'?m at)\s+(?P<value>{_ADDRESS_BODY})"),
    _rule("address", "my_address_is", PatternTier.PRIMARY,
          rf"\b(?:my address is|the address is|(?:the )?service address is|i live at|"
          rf"i'?m located at|we'?re located at|the house is at)\s+(?P<value>{_ADDRESS_BODY})"),
    _rule("address", "street_suffix", PatternTier.SECONDARY,
          rf"(?P<value>\b\d{{1,5}}\s+(?:[a-z0-9'\.\-]+\s+){{0,4}}?(?:{_SUFFIXES})\b\.?"
          rf"(?:\s*,?\s*(?:apt|apartment|unit|suite|#)\s*\.?\s*[a-z0-9\-]+)?)"),
    _rule("address", "numbered_street", PatternTier.FALLBACK,
          r"(?P<value>\b\d{1,5}\s+[a-z][a-z0-9\s\.#'\-]*)"),
)

_SCHEDULING_CONTEXT = re.compile(
    r"\b(?:come|come out|send|someone|somebody|tech|technician|appointment|schedule|out here|available)\b",
    re.IGNORECASE,
)

TIME_RULES = (
    _rule("time", "asap", PatternTier.SECONDARY,
          r"\b(?P<value>asap|a\.s\.a\.p\.?|as soon as possible|right away|immediately|first available|earliest available)"),
    _rule("time", "day_and_clock", PatternTier.SECONDARY,
          rf"\b(?P<value>(?:today|tomorrow|{_DAYS})(?:\s+(?:morning|afternoon|evening))?\s+"
          r"(?:at|around|after|before|by)\s+\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)?)"),
    _rule("time", "day_part", PatternTier.SECONDARY,
          rf"\b(?P<value>(?:today|tomorrow|this week|next week|{_DAYS})(?:\s+(?:morning|afternoon|evening|night))?)\b"),
    _rule("time", "clock", PatternTier.SECONDARY,
          r"\b(?P<value>\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.))"),
    _rule("time", "clock_24", PatternTier.SECONDARY,
          r"\b(?P<value>\d{1,2}:\d{2})\b"),
    _rule("time", "around_hour", PatternTier.CONTEXTUAL,
          r"\b(?:at|around|about|after|before)\s+(?P<value>\d{1,2})\b"
          r"(?!\s*(?:degrees|minutes|hours|years|days|months|%|percent|\d))"),
    _rule("time", "weak_now", PatternTier.CONTEXTUAL,
          r"\b(?P<value>now|soon)\b", requires=_SCHEDULING_CONTEXT),
    _rule("time", "part_of_day", PatternTier.CONTEXTUAL,
          r"(?<!good )\b(?:in the |the )?(?P<value>morning|afternoon|evening)s?\b"),
    _rule("time", "no_preference", PatternTier.FALLBACK,
          r"\b(?P<value>whenever|anytime|any time|no preference|flexible|doesn'?t matter)\b"),
)

EMAIL_RULES = (
    _rule("email", "email_address", PatternTier.SECONDARY,
          r"(?P<value>[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,})"),
    _rule("email", "spoken_email", PatternTier.FALLBACK,
          r"(?P<value>[a-z0-9._\-]+(?:\s+dot\s+[a-z0-9_\-]+)*\s+at\s+[a-z0-9\-]+(?:\s+dot\s+[a-z]{2,})+)"),
)

REASON_RULES = (
    _rule("callReasonDetail", "reason_phrase", PatternTier.PRIMARY,
          r"\b(?:i'?m calling (?:about|because|for)|calling (?:about|because)|"
          r"the (?:problem|issue) is(?: that)?|i need (?:someone|somebody|a tech|a technician) to "
          r"(?:come out and )?)\s*(?P<value>[^.?!]{3,160})"),
    _rule("callReasonDetail", "equipment_symptom", PatternTier.CONTEXTUAL,
          r"(?P<value>\b(?:my|the|our)\s+(?:ac|a/c|air conditioner|air conditioning|furnace|heater|"
          r"heat pump|thermostat|system|unit|water heater|compressor)\s+(?:is|isn'?t|won'?t|keeps|"
          r"stopped|has|was|doesn'?t|just|started)\b[^.?!]{0,120})"),
    _rule("callReasonDetail", "free_text", PatternTier.FALLBACK,
          r"(?P<value>[a-z][^\n]{4,200})"),
)

RULES = {
    "name": NAME_RULES,
    "phone": PHONE_RULES,
    "address": ADDRESS_RULES,
    "time": TIME_RULES,
    "email": EMAIL_RULES,
    "callReasonDetail": REASON_RULES,
}


def rules_for(slot_type: str) -> tuple:
    return RULES.get(slot_type, ())


# Utterance-level correction phrasing, independent of slot type
CORRECTION_SIGNALS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\bno\s*,?\s*(?:it'?s|it is|my name is|i'?m|i am|actually)\s+",
    r"\bactually\s*,?\s*(?:it'?s|it is|my name is|i'?m|i am|the)\s+",
    r"\bsorry\s*,?\s*(?:it'?s|i meant|i mean)\s+",
    r"\bnot\s+\w+\s*,?\s*(?:it'?s|but)\s+",
    r"\bi (?:said|meant)\s+",
    r"\bspelled\s+",
    r"\bwith an? [a-z]\b",
    r"\bthat'?s wrong\b",
))

# Caller agreeing to use the number they are calling from
PHONE_CONFIRM_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\b(?:use|keep|take)\s+(?:this|that|the same|my)\s+(?:number|one|phone)\b",
    r"\b(?:this|that)\s+(?:number|one)\s+(?:is\s+)?(?:good|fine|ok|okay|correct|works)\b",
    r"\bsame\s+(?:number|one)\b",
    r"\bnumber\s+i'?m\s+calling\s+(?:from|on)\b",
    r"^\s*(?:yes|yeah|yep|correct|that'?s (?:right|correct))\b.*\bnumber\b",
))

POSITIVE_CONFIRMATION = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"^(?:yes|yeah|yep|yup|correct|right|sure|ok|okay|uh huh|mhm|affirmative|absolutely|definitely)$",
    r"\b(?:yes|yeah|correct|right)\b.*\b(?:it is|that'?s|is)\b",
    r"\b(?:that'?s?|it'?s?|is)\s+(?:correct|right|good|fine|perfect)\b",
    r"\b(?:this|that)\s+(?:number|one)\s+(?:is\s+)?(?:good|fine|ok|correct|works)\b",
    r"\buse\s+(?:this|that|the same)\b",
    r"\bsounds?\s+(?:good|great|fine|correct|right)\b",
))

NEGATIVE_CONFIRMATION = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"^(?:no|nope|nah|wrong|incorrect|negative)$",
    r"\b(?:no|not)\s+(?:correct|right)\b",
    r"\bthat'?s?\s+(?:wrong|incorrect|not right)\b",
    r"\bwrong\s+(?:number|address|name)\b",
    r"\bchange\s+(?:it|that)\b",
    r"\bdifferent\s+(?:number|one|address)\b",
))

# Sound-alike first names worth spelling back to the caller
SIMILAR_NAME_GROUPS = (
    ("mark", "marc", "marcus"),
    ("john", "jon", "jonathan", "jonathon"),
    ("steven", "stephen", "steve"),
    ("michael", "micheal", "mike"),
    ("brian", "bryan", "bryon"),
    ("eric", "erik", "erick"),
    ("jason", "jayson"),
    ("jeffrey", "geoffrey", "geoff", "jeff"),
    ("kris", "chris", "kristopher", "christopher"),
    ("shawn", "sean", "shaun"),
    ("alan", "allan", "allen"),
    ("anne", "ann", "anna"),
    ("cathy", "kathy", "catherine", "katherine"),
    ("sara", "sarah"),
    ("lindsey", "lindsay"),
    ("tracy", "tracey"),
    ("brittany", "britney", "brittney"),
    ("ashley", "ashlee", "ashleigh"),
    ("megan", "meghan", "meagan"),
    ("rachel", "rachael"),
    ("nicole", "nichole"),
    ("teresa", "theresa"),
    ("carl", "karl"),
    ("gary", "garry"),
    ("jerry", "gerry"),
    ("phil", "phillip", "philip"),
    ("tony", "toni", "anthony"),
)
