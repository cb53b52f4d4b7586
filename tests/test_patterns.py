from slotfill.patterns import (
    CALLER_ID,
    RULES,
    SLOT_TYPES,
    TIER_CONFIDENCE,
    UTTERANCE_HIGH,
    UTTERANCE_LOW,
    load_exclusions,
    load_first_names,
    rules_for,
)
from slotfill.slots import PatternTier

PRECEDENCE = [
    PatternTier.CORRECTION,
    PatternTier.PRIMARY,
    PatternTier.SECONDARY,
    PatternTier.CONTEXTUAL,
    PatternTier.FALLBACK,
]


def _rule(slot_type, name):
    return next(r for r in rules_for(slot_type) if r.name == name)


class TestRuleOrdering:
    def test_every_slot_type_has_rules(self):
        for slot_type in SLOT_TYPES:
            assert rules_for(slot_type), slot_type

    def test_tiers_never_go_backwards(self):
        for slot_type, rules in RULES.items():
            ranks = [PRECEDENCE.index(r.tier) for r in rules]
            assert ranks == sorted(ranks), slot_type

    def test_fallback_rules_are_step_gated(self):
        for rules in RULES.values():
            for rule in rules:
                assert rule.step_gated == (rule.tier == PatternTier.FALLBACK)

    def test_rule_names_unique_per_type(self):
        for slot_type, rules in RULES.items():
            names = [r.name for r in rules]
            assert len(names) == len(set(names)), slot_type

    def test_unknown_type_has_no_rules(self):
        assert rules_for("favorite_color") == ()


class TestConfidenceLevels:
    def test_tier_confidences(self):
        assert TIER_CONFIDENCE[PatternTier.PRIMARY] == UTTERANCE_HIGH == 0.9
        assert TIER_CONFIDENCE[PatternTier.CONTEXTUAL] == UTTERANCE_LOW == 0.6
        assert TIER_CONFIDENCE[PatternTier.METADATA] == CALLER_ID == 0.7

    def test_rule_confidence_follows_tier(self):
        assert _rule("name", "greeting").confidence == 0.6
        assert _rule("name", "my_name_is").confidence == 0.9


class TestRuleMatching:
    def test_take_last_picks_final_match(self):
        rule = _rule("name", "my_name_is")
        match = rule.find("my name is Bob, sorry, my name is Mark")
        assert match.group("value") == "Mark"

    def test_requires_guard_blocks_match(self):
        rule = _rule("time", "weak_now")
        assert rule.find("it's getting hot soon") is None

    def test_requires_guard_allows_match(self):
        rule = _rule("time", "weak_now")
        assert rule.find("can you send someone now").group("value") == "now"

    def test_street_suffix_rule(self):
        rule = _rule("address", "street_suffix")
        assert rule.find("it's 12155 Metro Parkway").group("value") == "12155 Metro Parkway"


class TestExclusionData:
    def test_versioned(self):
        exclusions = load_exclusions()
        assert exclusions.version
        assert exclusions.locale == "en-US"

    def test_name_stop_words(self):
        words = load_exclusions().name_stop_words
        for word in ("super", "hot", "metro", "parkway", "currently", "having"):
            assert word in words

    def test_ambiguous_first_names(self):
        exclusions = load_exclusions()
        assert {"will", "may", "lane"} <= exclusions.ambiguous_names
        assert not exclusions.ambiguous_names & exclusions.name_stop_words

    def test_street_suffixes(self):
        assert {"street", "st", "parkway"} <= load_exclusions().street_suffixes

    def test_unknown_locale_falls_back(self):
        assert load_exclusions("xx-XX").locale == "en-US"

    def test_first_names_loaded_lowercase(self):
        names = load_first_names()
        assert "mark" in names
        assert "mike" in names
        assert "Mark" not in names
