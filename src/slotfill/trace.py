"""Optional trace sinks for extraction, merge and sequencing events.

The core never depends on a sink: every call goes through ``emit_safely``,
which swallows sink failures, and the HTTP sink schedules its POST on the
running loop instead of awaiting it. Phone numbers are masked before an
event leaves the process.
"""

import asyncio
import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

PHONE_KEYS = frozenset({"phone", "caller_phone", "callerPhone"})
VALUE_KEYS = frozenset({"value", "previous_value", "conflicting_value"})


class TraceSink(Protocol):
    def emit(self, event_name: str, payload: dict) -> None: ...


def mask_phone(value) -> str:
    """Keep the last four digits: "(512) 555-1234" -> "(***) ***-1234"."""
    digits = re.sub(r"\D", "", str(value or ""))
    if len(digits) < 4:
        return "***"
    return f"(***) ***-{digits[-4:]}"


def mask_phone_fields(payload):
    """Return a copy of payload with every phone-keyed value masked."""
    if isinstance(payload, dict):
        masked = {}
        for key, value in payload.items():
            if key in PHONE_KEYS:
                if isinstance(value, dict):
                    masked[key] = {
                        k: mask_phone(v) if k in VALUE_KEYS and v is not None else mask_phone_fields(v)
                        for k, v in value.items()
                    }
                elif isinstance(value, str):
                    masked[key] = mask_phone(value)
                else:
                    masked[key] = mask_phone_fields(value)
            else:
                masked[key] = mask_phone_fields(value)
        return masked
    if isinstance(payload, (list, tuple)):
        return [mask_phone_fields(item) for item in payload]
    return payload


def emit_safely(sink: Optional[TraceSink], event_name: str, payload: dict) -> None:
    if sink is None:
        return
    try:
        sink.emit(event_name, payload)
    except Exception as e:
        logger.warning("Trace sink %s failed on %s: %s", type(sink).__name__, event_name, e)


class NullTraceSink:
    def emit(self, event_name: str, payload: dict) -> None:
        return None


class LoggingTraceSink:
    def __init__(self, level: int = logging.INFO, mask: Callable = mask_phone_fields):
        self.level = level
        self.mask = mask

    def emit(self, event_name: str, payload: dict) -> None:
        logger.log(self.level, "TRACE %s %s", event_name, json.dumps(self.mask(payload), default=str))


@dataclass
class MemoryTraceSink:
    """Keeps events in memory. Used by tests and the replay script."""

    events: list = field(default_factory=list)

    def emit(self, event_name: str, payload: dict) -> None:
        self.events.append((event_name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@dataclass
class FailureGate:
    """Stops posting after N consecutive failures until a cooldown passes."""

    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic

    _failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self._failures >= self.failure_threshold

    def allows(self) -> bool:
        if not self.is_open:
            return True
        return self._opened_at is not None and self.clock() - self._opened_at >= self.cooldown_seconds

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self.is_open:
            self._opened_at = self.clock()
            logger.warning("Trace posting paused for %.0fs after %d consecutive failures",
                           self.cooldown_seconds, self._failures)


class HttpTraceSink:
    """POSTs trace events as JSON without blocking the caller.

    With a running event loop each event becomes a background task; otherwise
    events queue in a bounded buffer until ``flush()`` is awaited.
    """

    def __init__(
        self,
        url: str,
        secret: str = "",
        *,
        timeout: float = 5.0,
        mask: Callable = mask_phone_fields,
        gate: Optional[FailureGate] = None,
        max_buffer: int = 500,
    ):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.mask = mask
        self.gate = gate or FailureGate()
        self.buffer: deque = deque(maxlen=max_buffer)
        self._tasks: set = set()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    def emit(self, event_name: str, payload: dict) -> None:
        event = {"event": event_name, "payload": self.mask(payload), "ts": time.time()}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.buffer.append(event)
            return
        task = loop.create_task(self._post(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, event: dict) -> bool:
        if not self.gate.allows():
            logger.debug("Trace gate open, dropping %s", event["event"])
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=event, headers=self._headers())
                resp.raise_for_status()
        except Exception as e:
            logger.warning("Trace post of %s failed: %s", event["event"], e)
            self.gate.record_failure()
            return False
        self.gate.record_success()
        return True

    async def flush(self) -> int:
        """Post buffered events and wait for in-flight ones. Returns the number delivered."""
        delivered = 0
        while self.buffer:
            if await self._post(self.buffer.popleft()):
                delivered += 1
        if self._tasks:
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            delivered += sum(1 for r in results if r is True)
        return delivered
