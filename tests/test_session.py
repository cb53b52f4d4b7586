from slotfill.session import BookingState
from slotfill.slots import LockTier, PatternTier, Slot
from slotfill.states import StepStatus


class TestBookingState:
    def test_defaults(self):
        state = BookingState()
        assert state.slots == {}
        assert state.collected == {}
        assert state.status == StepStatus.AWAITING_INPUT
        assert state.turn == 0

    def test_session_key(self):
        assert BookingState(company_id="acme", call_id="call_1").session_key == ("acme", "call_1")

    def test_evolve_returns_new_state(self, state):
        moved = state.evolve(current_step_id="phone")
        assert moved.current_step_id == "phone"
        assert state.current_step_id is None

    def test_ask_count(self, state):
        asked = state.with_ask_count("name", 2)
        assert asked.ask_count("name") == 2
        assert asked.ask_count("phone") == 0
        assert state.ask_count("name") == 0

    def test_meta_helpers(self, state):
        flagged = state.with_meta(pending_confirmation="phone", booking_active=True)
        assert flagged.meta["pending_confirmation"] == "phone"
        assert "pending_confirmation" not in flagged.without_meta("pending_confirmation").meta

    def test_slot_value(self, state):
        filled = state.evolve(slots={"name": Slot("Mark", 0.9)})
        assert filled.slot_value("name") == "Mark"
        assert filled.slot_value("phone") is None


class TestLookup:
    def test_paths(self):
        state = BookingState(
            slots={"phone": Slot("(512) 555-1234", 0.9)},
            collected={"propertyType": "condo"},
            meta={"address_needs_unit": True, "caller": {"zip": "78745"}},
        )
        assert state.lookup("collected.propertyType") == "condo"
        assert state.lookup("slots.phone") == "(512) 555-1234"
        assert state.lookup("meta.address_needs_unit") is True
        assert state.lookup("meta.caller.zip") == "78745"
        assert state.lookup("propertyType") == "condo"
        assert state.lookup("address_needs_unit") is True
        assert state.lookup("meta.caller.zip.more") is None
        assert state.lookup("collected.unit") is None


class TestSerialization:
    def test_round_trip(self):
        state = BookingState(
            company_id="acme",
            call_id="call_1",
            slots={"name": Slot("Mark", 0.9, locked=True, lock_tier=LockTier.PRIMARY,
                                pattern_tier=PatternTier.PRIMARY)},
            collected={"name": "Mark"},
            confirmed_slots=frozenset({"name"}),
            current_step_id="phone",
            status=StepStatus.AWAITING_INPUT,
            turn=2,
            meta={"ask_count": {"phone": 1}},
        )
        assert BookingState.from_dict(state.to_dict()) == state

    def test_to_dict_plain(self):
        data = BookingState(confirmed_slots=frozenset({"phone", "name"})).to_dict()
        assert data["confirmed_slots"] == ["name", "phone"]
        assert data["status"] == "awaiting_input"

    def test_from_empty(self):
        assert BookingState.from_dict(None) == BookingState()
        assert BookingState.from_dict({}) == BookingState()
