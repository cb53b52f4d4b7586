from slotfill.sanitizer import sanitize_booking_state
from slotfill.session import BookingState
from slotfill.slots import Slot


def _state(**kwargs):
    base = dict(
        company_id="acme",
        call_id="call_1",
        slots={
            "name": Slot("Mark", 0.9),
            "phone": Slot("(512) 555-1234", 1.0, confirmed=True),
        },
        collected={"name": "Mark", "phone": "(512) 555-1234"},
        confirmed_slots=frozenset({"name", "phone"}),
        current_step_id="address",
    )
    base.update(kwargs)
    return BookingState(**base)


class TestSanitizeBookingState:
    def test_clean_state_untouched(self, flow):
        state = _state()
        result = sanitize_booking_state(state, flow)
        assert not result.fixed
        assert result.fixed_slots == ()
        assert result.rewind_to is None
        assert result.state is state

    def test_address_without_house_number(self, flow, sink):
        state = _state(
            slots={"name": Slot("Mark", 0.9), "address": Slot("Super Hot", 0.9)},
            collected={"name": "Mark", "address": "Super Hot"},
            confirmed_slots=frozenset({"name", "address"}),
            current_step_id="propertyType",
            meta={"pending_confirmation": "address"},
        )
        result = sanitize_booking_state(state, flow, sink)
        assert result.fixed
        assert result.fixed_slots == ("address",)
        assert result.rewind_to == "address"
        assert "address" not in result.state.slots
        assert "address" not in result.state.collected
        assert result.state.confirmed_slots == frozenset({"name"})
        assert "pending_confirmation" not in result.state.meta
        assert result.state.slot_value("name") == "Mark"

        name, payload = sink.events[0]
        assert name == "BOOKING_STATE_SANITIZED"
        assert payload["rewind_to"] == "address"
        assert payload["removed"] == {"address": {"value": "Super Hot"}}

    def test_rewinds_to_earliest_step(self, flow):
        state = _state(
            collected={"name": "Super Hot", "phone": "(512) 555-1234", "address": "Oak"},
        )
        result = sanitize_booking_state(state, flow)
        assert set(result.fixed_slots) == {"name", "address"}
        assert result.rewind_to == "name"

    def test_slot_checked_even_when_collected_is_valid(self, flow):
        state = _state(slots={"name": Slot("Super Hot", 0.6)})
        result = sanitize_booking_state(state, flow)
        assert result.fixed_slots == ("name",)
        assert "name" not in result.state.collected

    def test_invalid_choice(self, flow):
        state = _state(collected={"name": "Mark", "propertyType": "castle"})
        assert sanitize_booking_state(state, flow).rewind_to == "propertyType"

    def test_key_outside_flow(self, flow):
        state = _state(collected={"name": "Mark", "email": "not an email", "notes": "N/A"})
        result = sanitize_booking_state(state, flow)
        assert set(result.fixed_slots) == {"email", "notes"}
        assert result.rewind_to is None

    def test_pending_confirmation_kept_for_valid_key(self, flow):
        state = _state(
            collected={"name": "Mark", "address": "Oak"},
            meta={"pending_confirmation": "phone"},
        )
        result = sanitize_booking_state(state, flow)
        assert result.state.meta["pending_confirmation"] == "phone"
