"""In-process telemetry for session, ledger and mirror activity.

Every event is a name plus a flat payload. Listeners run synchronously on the
emitting thread; a listener that raises is logged and skipped so that
observability never changes the outcome of a session operation. Payload keys
that can carry secrets are masked before the event reaches a listener or the
log line.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List

logger = logging.getLogger("learnsync.telemetry")

SENSITIVE_KEYS = frozenset({"password", "credential_hash", "access_token", "refresh_token", "api_key"})
REDACTED = "***"


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]


Listener = Callable[[TelemetryEvent], None]


class TelemetryHub:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = RLock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def reset(self) -> None:
        with self._lock:
            self._listeners.clear()

    def publish(self, name: str, fields: Dict[str, Any]) -> TelemetryEvent:
        event = TelemetryEvent(name=name, payload={key: _coerce(key, value) for key, value in fields.items()})
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Telemetry listener failed for %s", name)
        logger.info("TELEMETRY %s", json.dumps({"event": name, **event.payload}, default=str, sort_keys=True))
        return event


_hub = TelemetryHub()


def register_listener(listener: Listener) -> Callable[[], None]:
    """Subscribe ``listener``; the returned callable unsubscribes it."""
    return _hub.subscribe(listener)


def clear_listeners() -> None:
    _hub.reset()


def emit_event(name: str, **fields: Any) -> TelemetryEvent:
    return _hub.publish(name, fields)


@contextmanager
def captured_events() -> Iterator[List[TelemetryEvent]]:
    """Collect every event emitted inside the block."""
    captured: List[TelemetryEvent] = []
    unsubscribe = register_listener(captured.append)
    try:
        yield captured
    finally:
        unsubscribe()


def _coerce(key: str, value: Any) -> Any:
    if key in SENSITIVE_KEYS and value is not None:
        return REDACTED
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, Path):
        return str(value)
    return value


__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "TelemetryEvent",
    "TelemetryHub",
    "captured_events",
    "clear_listeners",
    "emit_event",
    "register_listener",
]
