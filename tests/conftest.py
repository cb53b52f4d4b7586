import pytest
from slotfill.extraction import ExtractionContext
from slotfill.flow import build_default_flow, get_step
from slotfill.session import BookingState
from slotfill.state_machine import StepSequencer
from slotfill.trace import MemoryTraceSink


@pytest.fixture
def flow():
    return build_default_flow(company_id="acme")


@pytest.fixture
def state():
    return BookingState(company_id="acme", call_id="call_1")


@pytest.fixture
def sink():
    return MemoryTraceSink()


@pytest.fixture
def sequencer(sink):
    return StepSequencer(sink=sink, clock=lambda: 1_700_000_000.0)


@pytest.fixture
def at_step(flow):
    """Build an extraction context positioned on a default-flow step."""
    def _context(step_id=None, **kwargs):
        step = get_step(flow, step_id) if step_id else None
        active = kwargs.pop("booking_active", False) or step is not None
        return ExtractionContext(current_step=step, booking_active=active, **kwargs)
    return _context
