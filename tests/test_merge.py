import pytest
from slotfill.merge import (
    clear_slot,
    confirm_slot,
    get_slot_values,
    get_unconfirmed_slots,
    merge,
    merge_slots,
)
from slotfill.slots import (
    Candidate,
    LockTier,
    MergeAction,
    PatternTier,
    Slot,
    SlotSource,
)

NOW = 1_700_000_000.0


def cand(value, confidence=0.9, tier=PatternTier.SECONDARY, correction=False, **kwargs):
    return Candidate(
        value=value,
        confidence=confidence,
        pattern_tier=tier,
        is_correction=correction,
        extracted_explicitly=tier.is_explicit,
        **kwargs,
    )


def added(key, candidate):
    return merge(None, candidate, NOW, key).slot


class TestAddAndKeep:
    def test_new_slot(self):
        result = merge(None, cand("123 Main Street"), NOW, "address")
        assert result.decision.action == MergeAction.ADDED
        assert result.slot.value == "123 Main Street"
        assert result.slot.updated_at == NOW
        assert not result.slot.locked

    def test_identity_slot_locks_on_explicit_phrase(self):
        primary = added("name", cand("Mark", tier=PatternTier.PRIMARY))
        secondary = added("name", cand("Mark", tier=PatternTier.SECONDARY))
        contextual = added("name", cand("Mark", 0.6, tier=PatternTier.CONTEXTUAL))
        assert primary.lock_tier == LockTier.PRIMARY
        assert secondary.lock_tier == LockTier.SECONDARY
        assert not contextual.locked

    def test_no_candidate(self):
        existing = Slot("Mark", 0.9)
        result = merge(existing, None, NOW, "name")
        assert result.decision.action == MergeAction.KEPT_EXISTING
        assert result.decision.reason == "no_candidate"
        assert result.slot is existing

    def test_same_value_kept(self):
        existing = Slot("Mark", 0.9)
        result = merge(existing, cand("mark"), NOW, "name")
        assert result.decision.reason == "same_value"
        assert result.slot is existing

    def test_lower_confidence_kept(self):
        existing = Slot("123 Main Street", 0.79)
        result = merge(existing, cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.action == MergeAction.KEPT_EXISTING
        assert result.decision.reason == "lower_confidence"
        assert result.slot.value == "123 Main Street"


class TestProtectedSlots:
    def test_immutable_rejects_non_correction(self):
        existing = Slot("Mark", 1.0, confirmed=True, immutable=True)
        result = merge(existing, cand("Mike", tier=PatternTier.PRIMARY), NOW, "name")
        assert result.decision.action == MergeAction.REJECTED
        assert result.decision.reason == "immutable_slot_protected"
        assert result.slot.rejected_candidates == ()

    def test_immutable_opens_to_explicit_correction(self):
        existing = Slot("Mark", 1.0, confirmed=True, immutable=True)
        result = merge(existing, cand("Mike", tier=PatternTier.CORRECTION, correction=True), NOW, "name")
        slot = result.slot
        assert result.decision.reason == "explicit_correction_unlocked_immutable"
        assert slot.value == "Mike"
        assert not slot.immutable
        assert not slot.confirmed
        assert slot.needs_confirmation
        assert slot.history[-1].reason == "unlocked_by_explicit_correction"

    def test_confirmed_rejects_non_correction(self):
        existing = Slot("123 Main Street", 1.0, confirmed=True)
        result = merge(existing, cand("456 Oak Street"), NOW, "address")
        assert result.decision.reason == "confirmed_slot_protected"

    def test_confirmed_accepts_any_correction(self):
        existing = Slot("123 Main Street", 1.0, confirmed=True)
        candidate = cand("456 Oak Street", tier=PatternTier.FALLBACK, correction=True)
        result = merge(existing, candidate, NOW, "address")
        assert result.decision.action == MergeAction.ACCEPTED
        assert result.decision.reason == "correction_of_confirmed"
        assert result.slot.corrected_by_caller

    def test_high_confidence_rejects_non_explicit(self):
        existing = Slot("123 Main Street", 0.9)
        result = merge(existing, cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.reason == "high_confidence_exists"
        assert result.slot.rejected_candidates[0].value == "456 Oak Street"

    def test_high_confidence_yields_to_explicit(self):
        existing = Slot("123 Main Street", 0.8)
        result = merge(existing, cand("456 Oak Street", 0.9), NOW, "address")
        assert result.decision.reason == "higher_confidence"
        assert result.slot.value == "456 Oak Street"


class TestNameLocks:
    def test_super_hot_rejected_by_primary_lock(self):
        existing = added("name", cand("Mark", tier=PatternTier.PRIMARY))
        result = merge(existing, cand("Super Hot", tier=PatternTier.SECONDARY), NOW, "name")
        assert result.decision.action == MergeAction.REJECTED
        assert result.decision.reason == "primary_name_locked"
        assert result.slot.value == "Mark"
        assert result.slot.rejected_candidates[0].value == "Super Hot"
        assert result.slot.rejected_candidates[0].reason == "primary_name_locked"

    def test_primary_lock_yields_to_primary(self):
        existing = added("name", cand("Mark", tier=PatternTier.PRIMARY))
        result = merge(existing, cand("Mike", tier=PatternTier.PRIMARY), NOW, "name")
        assert result.decision.reason == "lock_override"
        assert result.slot.value == "Mike"
        assert result.slot.history[-1].reason == "replaced_by_explicit_phrase"

    def test_primary_lock_yields_to_explicit_correction(self):
        existing = added("name", cand("Mark", tier=PatternTier.PRIMARY))
        result = merge(existing, cand("Mike", tier=PatternTier.CORRECTION, correction=True), NOW, "name")
        assert result.decision.reason == "explicit_correction"
        assert result.slot.corrected_by_caller

    def test_secondary_lock_yields_to_explicit(self):
        existing = added("name", cand("Mark", tier=PatternTier.SECONDARY))
        result = merge(existing, cand("Mike", tier=PatternTier.SECONDARY), NOW, "name")
        assert result.decision.reason == "lock_override"

    def test_secondary_lock_rejects_contextual(self):
        existing = added("name", cand("Mark", tier=PatternTier.SECONDARY))
        result = merge(existing, cand("Mike", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "name")
        assert result.decision.reason == "name_locked"
        assert len(result.slot.rejected_candidates) == 1

    @pytest.mark.parametrize("tier", [
        PatternTier.SECONDARY, PatternTier.CONTEXTUAL, PatternTier.FALLBACK, PatternTier.METADATA,
    ])
    def test_primary_lock_holds(self, tier):
        existing = added("name", cand("Mark", tier=PatternTier.PRIMARY))
        result = merge(existing, cand("Super Hot", 0.9, tier=tier), NOW, "name")
        assert result.slot.value == "Mark"
        assert result.slot.lock_tier == LockTier.PRIMARY


class TestIdentityValidation:
    def test_phone_number_as_new_name(self):
        outcome = merge_slots({}, {"name": cand("512 555 1234", tier=PatternTier.PRIMARY)}, NOW)
        decision = outcome.decision_for("name")
        assert decision.action == MergeAction.REJECTED
        assert decision.reason == "failed_identity_validation"
        assert "name" not in outcome.merged

    def test_stop_words_do_not_replace_unlocked_name(self):
        result = merge(Slot("Mark", 0.6), cand("Super Hot"), NOW, "name")
        assert result.decision.reason == "failed_identity_validation"
        assert result.slot.value == "Mark"
        assert result.slot.rejected_candidates[0].value == "Super Hot"

    def test_confirmed_name_not_recorded(self):
        existing = Slot("Mark", 1.0, confirmed=True)
        result = merge(existing, cand("Super Hot", tier=PatternTier.CORRECTION, correction=True), NOW, "name")
        assert result.decision.reason == "failed_identity_validation"
        assert result.slot is existing

    def test_first_and_last_name_keys(self):
        assert merge(None, cand("Will"), NOW, "first_name").decision.action == MergeAction.ADDED
        assert merge(None, cand("42"), NOW, "last_name").decision.action == MergeAction.REJECTED

    def test_other_slots_not_name_checked(self):
        assert merge(None, cand("512 555 1234"), NOW, "phone").decision.action == MergeAction.ADDED


class TestCorrections:
    def test_thats_then_restated_correction(self):
        first = added("name", cand("Mark", tier=PatternTier.CORRECTION, correction=True))
        result = merge(first, cand("Mike", tier=PatternTier.CORRECTION, correction=True), NOW, "name")
        assert result.decision.action == MergeAction.ACCEPTED
        assert result.decision.reason == "explicit_correction"
        assert result.decision.previous_value == "Mark"
        assert result.slot.value == "Mike"
        assert result.slot.corrected_by_caller
        assert result.slot.needs_confirmation
        assert result.slot.history[0].value == "Mark"
        assert result.slot.history[0].reason == "corrected_by_caller"


class TestCallerIdConfirmation:
    def test_confirmed_caller_number_replaces_metadata(self):
        metadata = cand("(512) 555-9876", 0.7, tier=PatternTier.METADATA,
                        source=SlotSource.CALLER_METADATA, needs_confirmation=True)
        existing = added("phone", metadata)
        assert existing.needs_confirmation

        confirmed = cand("(512) 555-9876", 1.0, tier=PatternTier.PRIMARY,
                         source=SlotSource.CALLER_METADATA, confirmed=True)
        result = merge(existing, confirmed, NOW, "phone")
        assert result.decision.action == MergeAction.ACCEPTED
        assert result.slot.confidence == 1.0
        assert result.slot.confirmed
        assert result.slot.immutable
        assert not result.slot.needs_confirmation

    def test_confirm_slot(self):
        slots = {"phone": Slot("(512) 555-9876", 0.7, needs_confirmation=True)}
        confirmed = confirm_slot(slots, "phone", turn=3, now=NOW)["phone"]
        assert confirmed.confidence == 1.0
        assert confirmed.confirmed
        assert confirmed.immutable
        assert not confirmed.needs_confirmation
        assert confirmed.turn == 3
        assert confirmed.history[-1].reason == "confirmed_by_caller"
        assert slots["phone"].confidence == 0.7

    def test_confirm_missing_slot(self):
        assert confirm_slot({}, "phone") == {}


class TestThresholds:
    def test_conflict_at_exactly_point_15(self):
        existing = Slot("123 Main Street", 0.75)
        result = merge(existing, cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.action == MergeAction.CONFLICT
        assert result.slot.value == "123 Main Street"
        assert result.slot.conflict
        assert result.slot.conflicting_value == "456 Oak Street"
        assert result.slot.history[-1].reason == "conflict_not_merged"

    def test_no_conflict_just_past_point_15(self):
        existing = Slot("123 Main Street", 0.76)
        result = merge(existing, cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.action == MergeAction.KEPT_EXISTING
        assert not result.slot.conflict

    def test_equal_confidence_conflicts(self):
        existing = Slot("tomorrow", 0.6)
        result = merge(existing, cand("friday", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "time")
        assert result.decision.action == MergeAction.CONFLICT

    def test_high_confidence_at_exactly_point_8(self):
        existing = Slot("123 Main Street", 0.8)
        result = merge(existing, cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.reason == "high_confidence_exists"

    def test_below_point_8_lower_candidate_kept(self):
        existing = Slot("123 Main Street", 0.79)
        result = merge(existing, cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.reason == "lower_confidence"

    def test_below_point_8_higher_candidate_accepted(self):
        existing = Slot("123 Main Street", 0.79)
        result = merge(existing, cand("456 Oak Street", 0.85, tier=PatternTier.CONTEXTUAL), NOW, "address")
        assert result.decision.reason == "higher_confidence"
        assert result.slot.confidence == 0.85


FRAGMENTS = [
    {"name": cand("Mark", tier=PatternTier.PRIMARY)},
    {"name": cand("Super Hot", 0.6, tier=PatternTier.CONTEXTUAL)},
    {"name": cand("Mike", tier=PatternTier.CORRECTION, correction=True)},
    {"address": cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL)},
    {"address": cand("789 Elm Street", 0.9)},
    {"phone": cand("(512) 555-9876", 1.0, tier=PatternTier.PRIMARY, confirmed=True)},
]

STARTING_SLOTS = [
    {},
    {"name": Slot("Mark", 0.9, locked=True, lock_tier=LockTier.PRIMARY, pattern_tier=PatternTier.PRIMARY)},
    {"address": Slot("123 Main Street", 0.75)},
    {"address": Slot("123 Main Street", 1.0, confirmed=True, immutable=True)},
    {"phone": Slot("(512) 555-9876", 0.7, needs_confirmation=True)},
]


class TestMergeProperties:
    @pytest.mark.parametrize("slots", STARTING_SLOTS)
    @pytest.mark.parametrize("fragment", FRAGMENTS)
    def test_idempotent(self, slots, fragment):
        once = merge_slots(slots, fragment, NOW).merged
        twice = merge_slots(once, fragment, NOW).merged
        assert twice == once

    @pytest.mark.parametrize("slots", STARTING_SLOTS)
    @pytest.mark.parametrize("fragment", [f for f in FRAGMENTS if not list(f.values())[0].is_correction])
    def test_confidence_never_drops_without_correction(self, slots, fragment):
        merged = merge_slots(slots, fragment, NOW).merged
        for key, slot in slots.items():
            assert merged[key].confidence >= slot.confidence

    def test_slot_types_merge_independently(self):
        slots = {"name": Slot("Mark", 0.9)}
        merged = merge_slots(slots, {"address": cand("123 Main Street")}, NOW).merged
        assert merged["name"] is slots["name"]
        assert merged["address"].value == "123 Main Street"

    def test_input_not_mutated(self):
        slots = {"address": Slot("123 Main Street", 0.75)}
        merge_slots(slots, {"address": cand("456 Oak Street", 0.6, tier=PatternTier.CONTEXTUAL)}, NOW)
        assert not slots["address"].conflict


class TestMergeSlots:
    def test_decisions_and_trace(self, sink):
        outcome = merge_slots({}, {"name": cand("Mark")}, NOW, sink=sink)
        assert outcome.decision_for("name").action == MergeAction.ADDED
        assert outcome.decision_for("phone") is None
        name, payload = sink.events[0]
        assert name == "SLOTS_MERGED"
        assert payload["decisions"]["name"]["action"] == "ADDED"

    def test_empty_fragment_emits_nothing(self, sink):
        outcome = merge_slots({"name": Slot("Mark", 0.9)}, {}, NOW, sink=sink)
        assert outcome.decisions == ()
        assert sink.events == []

    def test_helpers(self):
        slots = {"name": Slot("Mark", 1.0, confirmed=True), "address": Slot("123 Main Street", 0.9)}
        assert get_unconfirmed_slots(slots) == ["address"]
        assert get_slot_values(slots) == {"name": "Mark", "address": "123 Main Street"}
        assert list(clear_slot(slots, "name")) == ["address"]
