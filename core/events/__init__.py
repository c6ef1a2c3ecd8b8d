"""Relay lifecycle events + any-subscriber listeners.

Handlers registered with ``on``/``subscribe`` receive ``(name, payload)``
for every event. A built-in collector turns lifecycle events into metrics;
handler exceptions are counted and never reach the relay.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from time import time
from typing import Any, Callable, Dict, List, Protocol

from core import metrics as _metrics

EventHandler = Callable[[str, Dict[str, Any]], None]

logger = logging.getLogger("chatrelay.events")


class SupportsEvent(Protocol):  # pragma: no cover
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        ...


@dataclass(slots=True)
class BaseEvent:
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        data = asdict(self)
        data["ts"] = data.get("ts") or time()
        return data


@dataclass(slots=True)
class RelayStarted(BaseEvent):
    session_id: str
    model: str
    prompt_chars: int
    history_len: int


@dataclass(slots=True)
class RelayCompleted(BaseEvent):
    session_id: str
    model: str
    chunks: int
    latency_ms: int
    # upstream = finished chunk / [DONE]; eof = stream ended without one
    stop_reason: str = "upstream"


@dataclass(slots=True)
class RelayCancelled(BaseEvent):
    """Relay stopped by a client stop request.

    cancel_latency_ms: time from the stop request to the relay observing it.
    """
    session_id: str
    model: str
    chunks: int
    latency_ms: int
    cancel_latency_ms: int | None = None


@dataclass(slots=True)
class RelayFailed(BaseEvent):
    session_id: str
    model: str
    error_type: str  # see core.errors taxonomy
    message: str
    chunks: int
    latency_ms: int


_ANY_SUBS: List[EventHandler] = []


def _metrics_collector(
    name: str, payload: Dict[str, Any]
) -> None:  # noqa: D401
    if name == "RelayStarted":
        _metrics.inc("relay_sessions_started_total")
        return
    status = {
        "RelayCompleted": "completed",
        "RelayCancelled": "cancelled",
        "RelayFailed": "failed",
    }.get(name)
    if status is None:
        return
    _metrics.inc_terminal(status)
    _metrics.observe(
        "relay_duration_ms", payload.get("latency_ms", 0), {"status": status}
    )
    if name == "RelayFailed":
        _metrics.inc(
            "relay_failures_total",
            {"error_type": payload.get("error_type", "unknown")},
        )
    elif name == "RelayCancelled" and payload.get("cancel_latency_ms") is not None:
        _metrics.observe("cancel_latency_ms", payload["cancel_latency_ms"])


_ANY_SUBS.append(_metrics_collector)


def emit(ev: BaseEvent | SupportsEvent) -> None:
    name = ev.__class__.__name__
    payload = ev.to_event()
    _metrics.inc("events_emitted_total", {"event": name})
    for h in list(_ANY_SUBS):  # copy for isolation
        try:
            h(name, dict(payload))
        except Exception:  # noqa: BLE001
            _metrics.inc("handler_exceptions_total", {"event": name})
            logger.exception("event handler failed event=%s", name)


def on(handler: EventHandler) -> None:
    _ANY_SUBS.append(handler)


def subscribe(handler: EventHandler):
    on(handler)

    def _unsub() -> None:  # noqa: D401
        try:
            _ANY_SUBS.remove(handler)
        except ValueError:
            pass
    return _unsub


def reset_listeners_for_tests() -> None:  # pragma: no cover
    _ANY_SUBS.clear()
    _ANY_SUBS.append(_metrics_collector)


__all__ = [
    "emit",
    "on",
    "subscribe",
    "BaseEvent",
    "RelayStarted",
    "RelayCompleted",
    "RelayCancelled",
    "RelayFailed",
    "reset_listeners_for_tests",
]
