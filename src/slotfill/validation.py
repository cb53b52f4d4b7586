import re

from slotfill.patterns import (
    DEFAULT_LOCALE,
    SIMILAR_NAME_GROUPS,
    load_exclusions,
)


def match_any_keyword(text: str, keywords) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lower) for kw in keywords)


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd", "null", "undefined",
    "{{customer_name}}", "{{service_address}}", "{{phone}}",
    "customer_name", "service_address",
}

WORD_TO_DIGIT = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}

# Street numbers are often spoken in pairs ("fifty three eleven")
WORD_TO_NUMBER = {
    **WORD_TO_DIGIT,
    "ten": "10", "eleven": "11", "twelve": "12", "thirteen": "13",
    "fourteen": "14", "fifteen": "15", "sixteen": "16", "seventeen": "17",
    "eighteen": "18", "nineteen": "19",
}
TENS = {
    "twenty": 2, "thirty": 3, "forty": 4, "fifty": 5,
    "sixty": 6, "seventy": 7, "eighty": 8, "ninety": 9,
}

NAME_SPECIAL_CHARS = re.compile(r"[#$%^&*()+=\[\]{}|\\<>?/~`@\d]")
EMAIL_PATTERN = re.compile(r"^[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,}$", re.IGNORECASE)


def words_to_digits(text: str) -> str:
    """Convert number words and single digits to a digit string.

    Only handles single-digit words (one through nine, zero, oh, o).
    Example: "five one two five five five one two three four" -> "5125551234"
    """
    tokens = re.findall(r"[a-zA-Z]+|\d", text.lower())
    digits = []
    for tok in tokens:
        if tok in WORD_TO_DIGIT:
            digits.append(WORD_TO_DIGIT[tok])
        elif tok.isdigit():
            digits.append(tok)
    return "".join(digits)


def digits_only(text: str | None) -> str:
    return re.sub(r"\D", "", text or "")


def normalize_street_number(address: str) -> str:
    """Collapse a spoken house number into digits.

    "fifty three eleven Oak Lane" -> "5311 Oak Lane"
    "53 Eleven Izzical Road" -> "5311 Izzical Road"
    """
    words = address.split()
    number = ""
    i = 0
    while i < len(words):
        tok = words[i].lower().strip(",")
        if tok.isdigit():
            number += tok
        elif tok in TENS:
            nxt = words[i + 1].lower().strip(",") if i + 1 < len(words) else ""
            if nxt in WORD_TO_DIGIT and nxt not in ("oh", "o", "zero"):
                number += f"{TENS[tok]}{WORD_TO_DIGIT[nxt]}"
                i += 1
            else:
                number += f"{TENS[tok]}0"
        elif tok in WORD_TO_NUMBER and tok != "o" and (number or tok != "oh"):
            number += WORD_TO_NUMBER[tok]
        else:
            break
        i += 1
    if not number or i == 0 or i >= len(words):
        return address
    return " ".join([number] + words[i:])


def looks_like_phone(text: str | None) -> bool:
    """More than half digits and at least seven of them."""
    if not text:
        return False
    compact = re.sub(r"\s", "", text)
    digits = digits_only(compact)
    if not compact:
        return False
    return len(digits) >= 7 and len(digits) / len(compact) > 0.5


def is_valid_phone(value: str | None) -> bool:
    digits = digits_only(value)
    return 10 <= len(digits) <= 15


def format_phone(value: str | None) -> str:
    """Format a phone number as (XXX) XXX-XXXX, or +digits for longer numbers."""
    digits = digits_only(value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if 10 < len(digits) <= 15:
        return f"+{digits}"
    return ""


def is_stop_word(word: str, locale: str = DEFAULT_LOCALE) -> bool:
    return word.lower().strip(".,!?") in load_exclusions(locale).name_stop_words


def is_valid_name_component(part: str | None, locale: str = DEFAULT_LOCALE) -> bool:
    if not part:
        return False
    cleaned = part.strip(".,!?")
    if not 2 <= len(cleaned) <= 50:
        return False
    if looks_like_phone(cleaned):
        return False
    if NAME_SPECIAL_CHARS.search(cleaned):
        return False
    if not re.search(r"[a-zA-Z]", cleaned):
        return False
    exclusions = load_exclusions(locale)
    lower = cleaned.lower()
    if lower in exclusions.name_stop_words:
        return False
    if lower in exclusions.street_suffixes and lower not in exclusions.ambiguous_names:
        return False
    return True


def sanitize_name(value: str | None, locale: str = DEFAULT_LOCALE) -> str:
    """Keep the valid name components, title-cased. Returns "" if none survive."""
    if not value:
        return ""
    if value.strip().lower() in SENTINEL_VALUES:
        return ""
    if "{{" in value or "}}" in value:
        return ""
    parts = [p for p in value.split() if is_valid_name_component(p, locale)]
    return " ".join(_title(p.strip(".,!?")) for p in parts)


def _title(word: str) -> str:
    return "-".join(
        "'".join(seg[:1].upper() + seg[1:].lower() for seg in piece.split("'"))
        for piece in word.split("-")
    )


def validate_name(value: str | None, locale: str = DEFAULT_LOCALE) -> str:
    """Return the name unchanged in meaning if every component is valid, else ""."""
    if not value:
        return ""
    cleaned = value.strip()
    if looks_like_phone(cleaned):
        return ""
    sanitized = sanitize_name(cleaned, locale)
    if not sanitized or len(sanitized.split()) != len(cleaned.split()):
        return ""
    return sanitized


def looks_like_address(text: str | None, locale: str = DEFAULT_LOCALE) -> bool:
    """House number followed by words ending in a street suffix."""
    if not text:
        return False
    suffixes = "|".join(sorted(load_exclusions(locale).street_suffixes, key=len, reverse=True))
    return bool(re.search(
        rf"\b\d{{1,5}}\s+(?:[a-z0-9'\.\-]+\s+){{0,4}}?(?:{suffixes})\b",
        text,
        re.IGNORECASE,
    ))


def contains_time_words(text: str, locale: str = DEFAULT_LOCALE) -> bool:
    return match_any_keyword(text, load_exclusions(locale).address_time_words)


def validate_address(value: str | None, locale: str = DEFAULT_LOCALE) -> str:
    if not value:
        return ""
    cleaned = value.strip().strip(",.")
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    if re.search(r"\bor\b", cleaned, re.IGNORECASE):
        return ""
    # Must contain at least one letter (rejects "7801", "78001")
    if not re.search(r"[a-zA-Z]", cleaned):
        return ""
    # Must carry a house number (rejects "Super Hot", "Metro Parkway")
    if not re.search(r"\d", cleaned):
        return ""
    if len(cleaned) < 5:
        return ""
    if contains_time_words(cleaned, locale):
        return ""
    if looks_like_phone(cleaned):
        return ""
    return cleaned


def validate_email(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().lower()
    return cleaned if EMAIL_PATTERN.match(cleaned) else ""


def is_greeting_only(text: str | None, locale: str = DEFAULT_LOCALE) -> bool:
    if not text:
        return False
    cleaned = re.sub(r"[^a-z' ]", "", text.lower()).strip()
    cleaned = re.sub(r"\s+(?:there|again|to you|sir|maam|ma'am)$", "", cleaned)
    return cleaned in load_exclusions(locale).greetings


def validate_time(value: str | None, locale: str = DEFAULT_LOCALE) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if cleaned.lower() in SENTINEL_VALUES or is_greeting_only(cleaned, locale):
        return ""
    return cleaned


def validate_reason(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().strip(",.")
    if cleaned.lower() in SENTINEL_VALUES or len(cleaned) < 3:
        return ""
    if not re.search(r"[a-zA-Z]", cleaned):
        return ""
    return cleaned


def needs_spelling_check(first_name: str | None) -> bool:
    """True for sound-alike names and very short names that are easy to mishear."""
    if not first_name:
        return False
    lower = first_name.strip().lower()
    if any(lower in group for group in SIMILAR_NAME_GROUPS):
        return True
    return len(lower) <= 3


def spell_out(word: str) -> str:
    return "-".join(ch.upper() for ch in word if ch.isalpha())


def is_valid_slot_value(slot_type: str, value, choices=None, locale: str = DEFAULT_LOCALE) -> bool:
    """Type rules applied when re-validating stored state."""
    if value is None:
        return False
    text = str(value).strip()
    if not text:
        return False
    if slot_type == "name":
        return bool(validate_name(text, locale))
    if slot_type == "phone":
        return is_valid_phone(text) and not re.search(r"[a-zA-Z]", text)
    if slot_type == "address":
        return bool(validate_address(text, locale))
    if slot_type == "email":
        return bool(validate_email(text))
    if slot_type == "time":
        return bool(validate_time(text, locale))
    if slot_type == "callReasonDetail":
        return bool(validate_reason(text))
    if slot_type == "yesno":
        return text.lower() in ("yes", "no")
    if slot_type == "select" and choices:
        return text.lower() in {c.lower() for c in choices}
    return text.lower() not in SENTINEL_VALUES
