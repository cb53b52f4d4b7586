#!/usr/bin/env python3
"""Replay the caller's side of a booking call through the step sequencer.

Usage:
    python scripts/replay_call.py turns.txt                       # one utterance per line
    python scripts/replay_call.py turns.txt --caller +15125551234 # with caller ID
    python scripts/replay_call.py turns.txt --flow flow.json      # company flow config
    python scripts/replay_call.py turns.txt --raw                 # JSON records
    cat turns.txt | python scripts/replay_call.py -               # read stdin
"""

import argparse
import json
import re
import sys

from slotfill.config import load_flow_config
from slotfill.flow import Flow, build_default_flow, resolve_flow
from slotfill.session import BookingState
from slotfill.state_machine import StepSequencer
from slotfill.trace import MemoryTraceSink

SPEAKER_PREFIX = re.compile(r"^(?P<role>caller|user|agent|assistant)\s*:\s*", re.IGNORECASE)


def parse_turn_lines(lines: list[str]) -> list[str]:
    """Caller utterances from a plain list or a "caller: ..." / "agent: ..." transcript.

    Blank lines, # comments and agent lines are skipped.
    """
    utterances = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = SPEAKER_PREFIX.match(line)
        if match:
            if match.group("role").lower() in ("agent", "assistant"):
                continue
            line = line[match.end():].strip()
        if line:
            utterances.append(line)
    return utterances


def replay(utterances: list[str], flow: Flow | None = None, caller_phone: str | None = None,
           call_id: str = "replay") -> list[dict]:
    """Run each utterance as one turn. Stops early when the flow finishes or escalates."""
    flow = flow or build_default_flow()
    sink = MemoryTraceSink()
    sequencer = StepSequencer(sink=sink)
    state = BookingState(call_id=call_id)

    opening = sequencer.run_step(flow, state, "", caller_phone)
    state = opening.state
    records = [{
        "turn": 0,
        "caller": "",
        "agent": opening.response.text,
        "kind": opening.response.kind.value,
        "step": opening.response.step_id,
        "decisions": [],
        "fixed": [],
        "done": opening.done,
    }]
    for utterance in utterances:
        if records[-1]["done"]:
            break
        result = sequencer.run_step(flow, state, utterance, caller_phone)
        state = result.state
        records.append({
            "turn": state.turn,
            "caller": utterance,
            "agent": result.response.text,
            "kind": result.response.kind.value,
            "step": result.response.step_id,
            "decisions": [d.to_dict() for d in result.decisions],
            "fixed": list(result.fixed_slots),
            "done": result.done,
        })
    records[-1]["collected"] = dict(state.collected)
    records[-1]["events"] = sink.names()
    return records


def format_replay(records: list[dict]) -> str:
    lines = []
    for record in records:
        if record["caller"]:
            lines.append(f"[{record['turn']}] CALLER: {record['caller']}")
        for decision in record["decisions"]:
            lines.append(f"      {decision['slot']}: {decision['action']} ({decision['reason']}) {decision['value']!r}")
        if record["fixed"]:
            lines.append(f"      sanitized: {', '.join(record['fixed'])}")
        step = f"/{record['step']}" if record["step"] else ""
        lines.append(f"    AGENT ({record['kind']}{step}): {record['agent']}")

    last = records[-1] if records else {}
    if last.get("collected"):
        lines.append("")
        lines.append("Collected:")
        for key, value in last["collected"].items():
            lines.append(f"  {key}: {value}")
    if last.get("done"):
        lines.append("")
        lines.append("*** FLOW FINISHED ***" if last["kind"] == "confirmation" else "*** ESCALATED ***")
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Replay caller turns through the booking sequencer")
    parser.add_argument("path", help="File with one caller utterance per line, or - for stdin")
    parser.add_argument("--caller", help="Caller ID phone number")
    parser.add_argument("--flow", help="JSON flow configuration file")
    parser.add_argument("--raw", action="store_true", help="Output raw JSON records")
    args = parser.parse_args()

    if args.path == "-":
        lines = sys.stdin.read().splitlines()
    else:
        try:
            with open(args.path, encoding="utf-8") as fh:
                lines = fh.read().splitlines()
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    flow = resolve_flow(load_flow_config(args.flow)) if args.flow else None
    records = replay(parse_turn_lines(lines), flow, args.caller)

    if args.raw:
        print(json.dumps(records, indent=2))
    else:
        print(format_replay(records))


if __name__ == "__main__":
    main()
