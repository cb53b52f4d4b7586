"""Slot, candidate and merge-decision records.

All records are frozen. A slot is never edited in place: the merge engine
builds a new one with ``dataclasses.replace`` and appends to its history
tuple, so earlier values stay reachable after a correction.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SlotSource(Enum):
    UTTERANCE = "utterance"
    CALLER_METADATA = "caller_metadata"
    MANUAL = "manual"
    EXTERNAL_LOOKUP = "external_lookup"


class PatternTier(Enum):
    CORRECTION = "correction"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    CONTEXTUAL = "contextual"
    FALLBACK = "fallback"
    METADATA = "metadata"

    @property
    def is_explicit(self) -> bool:
        return self in (PatternTier.CORRECTION, PatternTier.PRIMARY, PatternTier.SECONDARY)


class LockTier(Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class MergeAction(Enum):
    ADDED = "ADDED"
    REJECTED = "REJECTED"
    ACCEPTED = "ACCEPTED"
    CONFLICT = "CONFLICT"
    KEPT_EXISTING = "KEPT_EXISTING"


def _enum_value(member):
    return member.value if member is not None else None


@dataclass(frozen=True)
class HistoryEntry:
    value: str
    confidence: float
    turn: int
    reason: str
    source: Optional[SlotSource] = None

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "turn": self.turn,
            "reason": self.reason,
            "source": _enum_value(self.source),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        source = data.get("source")
        return cls(
            value=data.get("value", ""),
            confidence=float(data.get("confidence", 0.0)),
            turn=int(data.get("turn", 0)),
            reason=data.get("reason", ""),
            source=SlotSource(source) if source else None,
        )


@dataclass(frozen=True)
class RejectedCandidate:
    value: str
    confidence: float
    turn: int
    reason: str
    pattern_tier: Optional[PatternTier] = None

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "turn": self.turn,
            "reason": self.reason,
            "pattern_tier": _enum_value(self.pattern_tier),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RejectedCandidate":
        tier = data.get("pattern_tier")
        return cls(
            value=data.get("value", ""),
            confidence=float(data.get("confidence", 0.0)),
            turn=int(data.get("turn", 0)),
            reason=data.get("reason", ""),
            pattern_tier=PatternTier(tier) if tier else None,
        )


@dataclass(frozen=True)
class Candidate:
    """A value proposed by an extractor for one slot, consumed once by merge."""

    value: str
    confidence: float
    source: SlotSource = SlotSource.UTTERANCE
    pattern_tier: PatternTier = PatternTier.FALLBACK
    is_correction: bool = False
    extracted_explicitly: bool = False
    turn: int = 0
    confirmed: bool = False
    needs_confirmation: bool = False
    rule_name: str = ""
    extras: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source.value,
            "pattern_tier": self.pattern_tier.value,
            "is_correction": self.is_correction,
            "extracted_explicitly": self.extracted_explicitly,
            "turn": self.turn,
            "confirmed": self.confirmed,
            "needs_confirmation": self.needs_confirmation,
            "rule_name": self.rule_name,
            "extras": dict(self.extras),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Candidate":
        return cls(
            value=str(data.get("value", "")),
            confidence=float(data.get("confidence", 0.0)),
            source=SlotSource(data.get("source", SlotSource.UTTERANCE.value)),
            pattern_tier=PatternTier(data.get("pattern_tier", PatternTier.FALLBACK.value)),
            is_correction=bool(data.get("is_correction", False)),
            extracted_explicitly=bool(data.get("extracted_explicitly", False)),
            turn=int(data.get("turn", 0)),
            confirmed=bool(data.get("confirmed", False)),
            needs_confirmation=bool(data.get("needs_confirmation", False)),
            rule_name=data.get("rule_name", ""),
            extras=dict(data.get("extras") or {}),
        )


@dataclass(frozen=True)
class Slot:
    value: str
    confidence: float
    source: SlotSource = SlotSource.UTTERANCE
    turn: int = 0
    confirmed: bool = False
    immutable: bool = False
    needs_confirmation: bool = False
    locked: bool = False
    lock_tier: Optional[LockTier] = None
    conflict: bool = False
    conflicting_value: Optional[str] = None
    corrected_by_caller: bool = False
    pattern_tier: Optional[PatternTier] = None
    history: tuple = ()
    rejected_candidates: tuple = ()
    extras: dict = field(default_factory=dict)
    updated_at: float = 0.0

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed or self.confidence >= 1.0

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source.value,
            "turn": self.turn,
            "confirmed": self.confirmed,
            "immutable": self.immutable,
            "needs_confirmation": self.needs_confirmation,
            "locked": self.locked,
            "lock_tier": _enum_value(self.lock_tier),
            "conflict": self.conflict,
            "conflicting_value": self.conflicting_value,
            "corrected_by_caller": self.corrected_by_caller,
            "pattern_tier": _enum_value(self.pattern_tier),
            "history": [entry.to_dict() for entry in self.history],
            "rejected_candidates": [entry.to_dict() for entry in self.rejected_candidates],
            "extras": dict(self.extras),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        lock_tier = data.get("lock_tier")
        pattern_tier = data.get("pattern_tier")
        return cls(
            value=str(data.get("value", "")),
            confidence=float(data.get("confidence", 0.0)),
            source=SlotSource(data.get("source", SlotSource.UTTERANCE.value)),
            turn=int(data.get("turn", 0)),
            confirmed=bool(data.get("confirmed", False)),
            immutable=bool(data.get("immutable", False)),
            needs_confirmation=bool(data.get("needs_confirmation", False)),
            locked=bool(data.get("locked", False)),
            lock_tier=LockTier(lock_tier) if lock_tier else None,
            conflict=bool(data.get("conflict", False)),
            conflicting_value=data.get("conflicting_value"),
            corrected_by_caller=bool(data.get("corrected_by_caller", False)),
            pattern_tier=PatternTier(pattern_tier) if pattern_tier else None,
            history=tuple(HistoryEntry.from_dict(h) for h in data.get("history") or []),
            rejected_candidates=tuple(
                RejectedCandidate.from_dict(r) for r in data.get("rejected_candidates") or []
            ),
            extras=dict(data.get("extras") or {}),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass(frozen=True)
class MergeDecision:
    slot: str
    action: MergeAction
    reason: str
    value: Any = None
    previous_value: Any = None

    def to_dict(self) -> dict:
        return {
            "slot": self.slot,
            "action": self.action.value,
            "reason": self.reason,
            "value": self.value,
            "previous_value": self.previous_value,
        }


def slots_to_dict(slots: dict) -> dict:
    return {key: slot.to_dict() for key, slot in slots.items()}


def slots_from_dict(data: dict | None) -> dict:
    if not data:
        return {}
    return {key: Slot.from_dict(value) for key, value in data.items() if isinstance(value, dict)}
