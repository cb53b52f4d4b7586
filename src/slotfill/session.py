from dataclasses import dataclass, field, replace
from typing import Any, Optional

from slotfill.slots import slots_from_dict, slots_to_dict
from slotfill.states import StepStatus


@dataclass(frozen=True)
class BookingState:
    """Per-call booking state. Never mutated: every change returns a new state."""

    company_id: str = ""
    call_id: str = ""

    # Slot metadata keyed by slot key, and the accepted step values
    slots: dict = field(default_factory=dict)
    collected: dict = field(default_factory=dict)
    confirmed_slots: frozenset = frozenset()

    # Interview position
    current_step_id: Optional[str] = None
    status: StepStatus = StepStatus.AWAITING_INPUT
    turn: int = 0

    # ask_count, pending_confirmation, address_needs_unit, caller context
    meta: dict = field(default_factory=dict)

    @property
    def session_key(self) -> tuple[str, str]:
        return (self.company_id, self.call_id)

    def evolve(self, **changes) -> "BookingState":
        return replace(self, **changes)

    def slot_value(self, key: str) -> Optional[str]:
        slot = self.slots.get(key)
        return slot.value if slot is not None else None

    def ask_count(self, step_id: str) -> int:
        return int(self.meta.get("ask_count", {}).get(step_id, 0))

    def with_ask_count(self, step_id: str, count: int) -> "BookingState":
        counts = {**self.meta.get("ask_count", {}), step_id: count}
        return self.with_meta(ask_count=counts)

    def with_meta(self, **values) -> "BookingState":
        return replace(self, meta={**self.meta, **values})

    def without_meta(self, *keys) -> "BookingState":
        return replace(self, meta={k: v for k, v in self.meta.items() if k not in keys})

    def lookup(self, path: str) -> Any:
        """Resolve "collected.x", "meta.a.b", "slots.x" or a bare key."""
        head, _, rest = path.partition(".")
        if head == "collected" and rest:
            return self.collected.get(rest)
        if head == "slots" and rest:
            return self.slot_value(rest)
        if head == "meta" and rest:
            return _walk(self.meta, rest)
        if path in self.collected:
            return self.collected[path]
        return _walk(self.meta, path)

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "call_id": self.call_id,
            "slots": slots_to_dict(self.slots),
            "collected": dict(self.collected),
            "confirmed_slots": sorted(self.confirmed_slots),
            "current_step_id": self.current_step_id,
            "status": self.status.value,
            "turn": self.turn,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "BookingState":
        if not data:
            return cls()
        return cls(
            company_id=data.get("company_id", ""),
            call_id=data.get("call_id", ""),
            slots=slots_from_dict(data.get("slots")),
            collected=dict(data.get("collected") or {}),
            confirmed_slots=frozenset(data.get("confirmed_slots") or ()),
            current_step_id=data.get("current_step_id"),
            status=StepStatus(data.get("status", StepStatus.AWAITING_INPUT.value)),
            turn=int(data.get("turn", 0)),
            meta=dict(data.get("meta") or {}),
        )


def _walk(data: dict, dotted: str) -> Any:
    current: Any = data
    for part in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current
