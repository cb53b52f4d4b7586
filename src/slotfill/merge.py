"""Reconcile extracted candidates with the slots already known for a call.

Rules are checked in a fixed order and the first one that applies decides:

  0. same value, nothing gained           -> KEPT_EXISTING
  1. nothing stored yet                   -> ADDED
  2. immutable slot                       -> only an explicit correction gets in
  3. confirmed slot                       -> only a correction gets in
  4. locked identity slot                 -> primary lock yields to primary or explicit
                                             correction; secondary lock to any explicit
                                             candidate; refusals are recorded
  5. stored confidence >= 0.8             -> non-explicit candidates are refused
  6. correction                           -> ACCEPTED, needs confirmation again
  7. higher confidence                    -> ACCEPTED
  8. within 0.15 and a different value    -> CONFLICT, stored value kept
  9. otherwise                            -> KEPT_EXISTING

Threshold comparisons are inclusive at both 0.15 and 0.8.

Name values that fail name validation are rejected as
``failed_identity_validation`` before rules 2-9, unless a lock refuses them
first.
"""

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Optional

from slotfill.patterns import CONFIRMED
from slotfill.slots import (
    Candidate,
    HistoryEntry,
    LockTier,
    MergeAction,
    MergeDecision,
    PatternTier,
    RejectedCandidate,
    Slot,
)
from slotfill.trace import emit_safely
from slotfill.validation import sanitize_name

logger = logging.getLogger(__name__)

CONFLICT_THRESHOLD = 0.15
HIGH_CONFIDENCE_THRESHOLD = 0.8
THRESHOLD_EPSILON = 1e-9

IDENTITY_SLOTS = frozenset({"name", "first_name", "last_name"})
LOCKING_TIERS = {PatternTier.PRIMARY: LockTier.PRIMARY, PatternTier.SECONDARY: LockTier.SECONDARY}


@dataclass(frozen=True)
class MergeResult:
    slot: Optional[Slot]
    decision: MergeDecision


@dataclass(frozen=True)
class MergeOutcome:
    merged: dict
    decisions: tuple

    def decision_for(self, key: str) -> Optional[MergeDecision]:
        for decision in self.decisions:
            if decision.slot == key:
                return decision
        return None


def _normalized(value) -> str:
    return re.sub(r"\W", "", str(value or "").lower())


def _same_value(a, b) -> bool:
    return _normalized(a) == _normalized(b)


def _improves(existing: Slot, candidate: Candidate) -> bool:
    if candidate.confidence > existing.confidence + THRESHOLD_EPSILON:
        return True
    return candidate.confirmed and not existing.confirmed


def _new_slot(candidate: Candidate, key: str, now: float) -> Slot:
    lock_tier = LOCKING_TIERS.get(candidate.pattern_tier) if key in IDENTITY_SLOTS else None
    return Slot(
        value=candidate.value,
        confidence=candidate.confidence,
        source=candidate.source,
        turn=candidate.turn,
        confirmed=candidate.confirmed,
        immutable=candidate.confirmed,
        needs_confirmation=candidate.needs_confirmation,
        locked=lock_tier is not None,
        lock_tier=lock_tier,
        pattern_tier=candidate.pattern_tier,
        extras=dict(candidate.extras),
        updated_at=now,
    )


def _accept(existing: Slot, candidate: Candidate, key: str, now: float, reason: str,
            history_reason: str, correction: bool = False) -> MergeResult:
    entry = HistoryEntry(
        value=existing.value,
        confidence=existing.confidence,
        turn=existing.turn,
        reason=history_reason,
        source=existing.source,
    )
    slot = replace(
        _new_slot(candidate, key, now),
        history=existing.history + (entry,),
        rejected_candidates=existing.rejected_candidates,
        corrected_by_caller=correction,
    )
    if correction:
        slot = replace(slot, confirmed=False, immutable=False, needs_confirmation=True)
    elif candidate.confidence < existing.confidence:
        slot = replace(slot, confidence=existing.confidence)
    logger.info("Slot %s: %r -> %r (%s)", key, existing.value, candidate.value, reason)
    return MergeResult(slot, MergeDecision(key, MergeAction.ACCEPTED, reason, candidate.value, existing.value))


def _reject(existing: Slot, candidate: Candidate, key: str, reason: str, record: bool) -> MergeResult:
    slot = existing
    if record:
        rejected = RejectedCandidate(
            value=candidate.value,
            confidence=candidate.confidence,
            turn=candidate.turn,
            reason=reason,
            pattern_tier=candidate.pattern_tier,
        )
        if rejected not in existing.rejected_candidates:
            slot = replace(existing, rejected_candidates=existing.rejected_candidates + (rejected,))
    logger.warning("Slot %s: rejected %r, keeping %r (%s)", key, candidate.value, existing.value, reason)
    return MergeResult(slot, MergeDecision(key, MergeAction.REJECTED, reason, candidate.value, existing.value))


def _kept(existing: Slot, candidate: Candidate, key: str, reason: str) -> MergeResult:
    return MergeResult(existing, MergeDecision(key, MergeAction.KEPT_EXISTING, reason, candidate.value, existing.value))


def _conflict(existing: Slot, candidate: Candidate, key: str) -> MergeResult:
    decision = MergeDecision(key, MergeAction.CONFLICT, "similar_confidence_different_value",
                             candidate.value, existing.value)
    if existing.conflict and _same_value(existing.conflicting_value, candidate.value):
        return MergeResult(existing, decision)
    entry = HistoryEntry(
        value=candidate.value,
        confidence=candidate.confidence,
        turn=candidate.turn,
        reason="conflict_not_merged",
        source=candidate.source,
    )
    slot = replace(existing, conflict=True, conflicting_value=candidate.value, history=existing.history + (entry,))
    logger.warning("Slot %s: conflicting values %r and %r at %.2f/%.2f",
                   key, existing.value, candidate.value, existing.confidence, candidate.confidence)
    return MergeResult(slot, decision)


def _lock_allows(existing: Slot, candidate: Candidate) -> bool:
    if existing.lock_tier == LockTier.PRIMARY:
        return candidate.pattern_tier == PatternTier.PRIMARY or (
            candidate.is_correction and candidate.extracted_explicitly
        )
    return candidate.extracted_explicitly


def merge(existing: Optional[Slot], candidate: Optional[Candidate], now: float | None = None,
          key: str = "") -> MergeResult:
    """Decide what to store for one slot. Never raises."""
    now = time.time() if now is None else now
    if candidate is None:
        return MergeResult(existing, MergeDecision(key, MergeAction.KEPT_EXISTING, "no_candidate",
                                                   None, existing.value if existing else None))
    invalid_name = key in IDENTITY_SLOTS and not sanitize_name(str(candidate.value or ""))
    if existing is None:
        if invalid_name:
            logger.warning("Slot %s: rejected %r (failed_identity_validation)", key, candidate.value)
            return MergeResult(None, MergeDecision(key, MergeAction.REJECTED, "failed_identity_validation",
                                                   candidate.value, None))
        logger.info("Slot %s: added %r at %.2f", key, candidate.value, candidate.confidence)
        return MergeResult(_new_slot(candidate, key, now),
                           MergeDecision(key, MergeAction.ADDED, "new_slot", candidate.value, None))

    if _same_value(existing.value, candidate.value) and not _improves(existing, candidate):
        return _kept(existing, candidate, key, "same_value")

    # A refused lock reports the lock, not the bad value
    if invalid_name and not (existing.locked and not _lock_allows(existing, candidate)):
        settled = existing.immutable or existing.is_confirmed
        return _reject(existing, candidate, key, "failed_identity_validation", record=not settled)

    if existing.immutable:
        if candidate.is_correction and candidate.extracted_explicitly:
            return _accept(existing, candidate, key, now, "explicit_correction_unlocked_immutable",
                           "unlocked_by_explicit_correction", correction=True)
        return _reject(existing, candidate, key, "immutable_slot_protected", record=False)

    if existing.is_confirmed:
        if candidate.is_correction:
            return _accept(existing, candidate, key, now, "correction_of_confirmed",
                           "corrected_by_caller", correction=True)
        return _reject(existing, candidate, key, "confirmed_slot_protected", record=False)

    if existing.locked and key in IDENTITY_SLOTS:
        if not _lock_allows(existing, candidate):
            reason = "primary_name_locked" if existing.lock_tier == LockTier.PRIMARY else "name_locked"
            return _reject(existing, candidate, key, reason, record=True)
        if not candidate.is_correction:
            return _accept(existing, candidate, key, now, "lock_override", "replaced_by_explicit_phrase")

    if existing.confidence >= HIGH_CONFIDENCE_THRESHOLD - THRESHOLD_EPSILON and not candidate.extracted_explicitly:
        return _reject(existing, candidate, key, "high_confidence_exists", record=True)

    if candidate.is_correction:
        return _accept(existing, candidate, key, now, "explicit_correction", "corrected_by_caller", correction=True)

    if candidate.confidence > existing.confidence + THRESHOLD_EPSILON:
        return _accept(existing, candidate, key, now, "higher_confidence", "replaced_by_higher_confidence")

    if (abs(existing.confidence - candidate.confidence) <= CONFLICT_THRESHOLD + THRESHOLD_EPSILON
            and not _same_value(existing.value, candidate.value)):
        return _conflict(existing, candidate, key)

    return _kept(existing, candidate, key, "lower_confidence")


def merge_slots(existing: dict | None, incoming: dict | None, now: float | None = None, sink=None) -> MergeOutcome:
    """Merge a fragment of candidates into a slot set, returning a new slot set."""
    now = time.time() if now is None else now
    merged = dict(existing or {})
    decisions = []
    for key, candidate in (incoming or {}).items():
        result = merge(merged.get(key), candidate, now, key)
        if result.slot is not None:
            merged[key] = result.slot
        decisions.append(result.decision)
    if decisions:
        emit_safely(sink, "SLOTS_MERGED", {
            "decisions": {d.slot: d.to_dict() for d in decisions},
        })
    return MergeOutcome(merged=merged, decisions=tuple(decisions))


def confirm_slot(slots: dict, key: str, turn: int | None = None, now: float | None = None) -> dict:
    """Caller confirmed the value: full confidence, and it becomes immutable."""
    slot = slots.get(key)
    if slot is None:
        return dict(slots)
    entry = HistoryEntry(slot.value, slot.confidence, slot.turn, "confirmed_by_caller", slot.source)
    confirmed = replace(
        slot,
        confidence=CONFIRMED,
        confirmed=True,
        immutable=True,
        needs_confirmation=False,
        conflict=False,
        conflicting_value=None,
        turn=slot.turn if turn is None else turn,
        history=slot.history + (entry,),
        updated_at=time.time() if now is None else now,
    )
    return {**slots, key: confirmed}


def clear_slot(slots: dict, key: str) -> dict:
    return {k: v for k, v in slots.items() if k != key}


def get_unconfirmed_slots(slots: dict) -> list[str]:
    return [key for key, slot in slots.items() if not slot.confirmed]


def get_slot_values(slots: dict) -> dict:
    return {key: slot.value for key, slot in slots.items()}
