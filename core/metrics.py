"""Minimal in-memory metrics collector.

Core API:
    inc(name, labels=None, value=1)
    observe(name, value, labels=None)
    snapshot() -> dict (copy for safe reading)

Thread-safety: coarse RLock; the stop route and the relay loop write
concurrently.

Relay metric names (documented for discoverability):
    - relay_sessions_started_total
    - relay_chunks_total
    - relay_chunks_dropped_total{reason}
    - relay_terminal_total{status}
    - relay_cancel_requests_total{known}
    - relay_first_chunk_latency_ms
    - relay_duration_ms{status}
    - relay_serialization_errors_total
    - api_request_total{route,method} / api_request_latency_ms
    - env_override_total{path}, config_validation_errors_total{path,code}
"""
from __future__ import annotations

from threading import RLock
from time import time
from typing import Dict, Tuple, Any

_COUNTERS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
_HIST: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], list] = {}
_LOCK = RLock()


def _norm_labels(labels: dict[str, Any] | None) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _label_str(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def inc(
    name: str,
    labels: dict[str, Any] | None = None,
    value: float = 1.0,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0.0) + value


def observe(
    name: str,
    value: float,
    labels: dict[str, Any] | None = None,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _HIST.setdefault(key, []).append(value)


def snapshot() -> dict[str, Any]:
    with _LOCK:
        counters = {
            name + _label_str(labels): v
            for (name, labels), v in _COUNTERS.items()
        }
        hist = {}
        for (name, labels), vals in _HIST.items():
            if not vals:
                continue
            ordered = sorted(vals)
            hist[name + _label_str(labels)] = {
                "count": len(vals),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": ordered[len(ordered) // 2],
                "last": vals[-1],
            }
        return {
            "ts": time(),
            "counters": counters,
            "histograms": hist,
        }


def counter_value(name: str, labels: dict[str, Any] | None = None) -> float:
    with _LOCK:
        return _COUNTERS.get((name, _norm_labels(labels)), 0.0)


def reset_for_tests() -> None:  # pragma: no cover
    with _LOCK:
        _COUNTERS.clear()
        _HIST.clear()


__all__ = [
    "inc",
    "observe",
    "snapshot",
    "counter_value",
    "reset_for_tests",
]


# ------------------- Relay helpers -------------------

def inc_terminal(status: str) -> None:
    """Count a finished relay by terminal state.

    status: completed | cancelled | failed
    """
    inc("relay_terminal_total", {"status": status})


def inc_cancel_request(known: bool) -> None:
    """Count stop requests; unknown ids are no-ops but still visible."""
    inc("relay_cancel_requests_total", {"known": str(bool(known)).lower()})


__all__ += ["inc_terminal", "inc_cancel_request"]
