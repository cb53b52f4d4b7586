"""Startup configuration.

Everything is optional: with no environment at all the service runs the
default booking flow and traces to the log. Variables that only make sense
together are checked as a group so a half-configured trace endpoint fails at
startup instead of silently dropping events mid-call.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

from slotfill.patterns import DEFAULT_LOCALE
from slotfill.trace import HttpTraceSink, LoggingTraceSink

logger = logging.getLogger(__name__)

OPTIONAL_VARS = [
    "SLOTFILL_TRACE_URL",
    "SLOTFILL_FLOW_CONFIG",
    "SLOTFILL_LOCALE",
    "LOG_LEVEL",
]

# A key on the left requires every variable on the right
DEPENDENT_VARS = {
    "SLOTFILL_TRACE_URL": ["SLOTFILL_TRACE_SECRET"],
}


@dataclass(frozen=True)
class Settings:
    trace_url: str = ""
    trace_secret: str = ""
    flow_config_path: str = ""
    locale: str = DEFAULT_LOCALE
    log_level: str = "INFO"
    port: int = 8765

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            trace_url=env.get("SLOTFILL_TRACE_URL", ""),
            trace_secret=env.get("SLOTFILL_TRACE_SECRET", ""),
            flow_config_path=env.get("SLOTFILL_FLOW_CONFIG", ""),
            locale=env.get("SLOTFILL_LOCALE") or DEFAULT_LOCALE,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            port=int(env.get("PORT") or 8765),
        )


def validate_config(environ: Optional[dict] = None) -> None:
    """Exit with a clear error if a variable is set without its companions."""
    env = os.environ if environ is None else environ
    missing = []
    for var, needs in DEPENDENT_VARS.items():
        if env.get(var):
            missing.extend(f"{need} (required by {var})" for need in needs if not env.get(need))

    if missing:
        print(
            f"\nFATAL: Missing environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env or unset the variable that needs them.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not env.get(var):
            logger.info("Optional env var %s is not set", var)


def load_flow_config(path: str | None) -> Optional[dict]:
    """Read a JSON flow configuration. Returns None if it cannot be used."""
    if not path:
        return None
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not load flow config %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Flow config %s is not a JSON object, ignoring", path)
        return None
    return data


def build_trace_sink(settings: Settings):
    if settings.trace_url:
        return HttpTraceSink(settings.trace_url, settings.trace_secret)
    return LoggingTraceSink(level=logging.DEBUG)
