import logging
import os

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from slotfill.config import Settings, build_trace_sink, load_flow_config, validate_config
from slotfill.extraction import ExtractionContext, extract_all
from slotfill.flow import Flow, build_default_flow, get_step, resolve_flow
from slotfill.merge import merge_slots
from slotfill.sanitizer import sanitize_booking_state
from slotfill.session import BookingState
from slotfill.slots import Candidate, slots_from_dict, slots_to_dict
from slotfill.state_machine import StepSequencer

load_dotenv()
validate_config()

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

sink = build_trace_sink(settings)
default_flow = resolve_flow(load_flow_config(settings.flow_config_path)) \
    if settings.flow_config_path else build_default_flow()

app = FastAPI(title="Slotfill Booking Core")


def _bad_request(what: str, e: Exception) -> HTTPException:
    logger.warning("Rejected %s payload: %s", what, e)
    return HTTPException(status_code=400, detail=f"invalid {what}: {e}")


def _state_from(payload: dict) -> BookingState:
    try:
        state = BookingState.from_dict(payload.get("state"))
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise _bad_request("state", e)
    if "locale" not in state.meta:
        state = state.with_meta(locale=settings.locale)
    return state


def _flow_from(payload: dict) -> Flow:
    try:
        if payload.get("flow"):
            return Flow.from_dict(payload["flow"])
        if payload.get("config"):
            return resolve_flow(payload["config"])
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise _bad_request("flow", e)
    return default_flow


@app.get("/health")
async def health():
    return PlainTextResponse("ok")


@app.post("/extract")
async def extract(payload: dict = Body(...)):
    state = _state_from(payload)
    flow = _flow_from(payload)
    step = get_step(flow, payload.get("step_id") or state.current_step_id)
    context = ExtractionContext.for_state(state, step, payload.get("caller_phone"))
    fragment = extract_all(payload.get("utterance", ""), context, sink)
    return {"slots": {key: candidate.to_dict() for key, candidate in fragment.items()}}


@app.post("/merge")
async def merge(payload: dict = Body(...)):
    try:
        existing = slots_from_dict(payload.get("existing"))
        incoming = {key: Candidate.from_dict(value) for key, value in (payload.get("incoming") or {}).items()}
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise _bad_request("slots", e)
    outcome = merge_slots(existing, incoming, sink=sink)
    return {
        "merged": slots_to_dict(outcome.merged),
        "decisions": [decision.to_dict() for decision in outcome.decisions],
    }


@app.post("/flows/resolve")
async def flows_resolve(payload: dict = Body(...)):
    return resolve_flow(payload.get("config", payload)).to_dict()


@app.post("/step")
async def step(payload: dict = Body(...)):
    state = _state_from(payload)
    flow = _flow_from(payload)
    result = StepSequencer(sink=sink).run_step(
        flow, state, payload.get("user_input", ""), payload.get("caller_phone"),
    )
    return result.to_dict()


@app.post("/sanitize")
async def sanitize(payload: dict = Body(...)):
    state = _state_from(payload)
    flow = _flow_from(payload)
    result = sanitize_booking_state(state, flow, sink)
    return {
        "fixed": result.fixed,
        "fixed_slots": list(result.fixed_slots),
        "rewind_to": result.rewind_to,
        "state": result.state.to_dict(),
    }


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("slotfill.server:app", host="0.0.0.0", port=port)
