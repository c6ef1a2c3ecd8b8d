"""Event codec: upstream chunk -> NormalizedEvent -> client wire frame.

Decoding is lenient: keep-alive frames, partial payloads and
anything without ``output.text`` are dropped (``None``) instead of failing
the session. Only the literal ``[DONE]`` sentinel and ``finish_reason ==
"stop"`` terminate a stream from the upstream side.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict

from core import metrics
from core.relay.exceptions import SerializationError
from core.relay.types import NormalizedEvent

DONE_SENTINEL = "[DONE]"
STOP_REASON = "stop"

logger = logging.getLogger("chatrelay.codec")


def _drop(reason: str, raw: str) -> None:
    metrics.inc("relay_chunks_dropped_total", {"reason": reason})
    logger.warning("chunk dropped reason=%s data=%.200s", reason, raw)


def decode_chunk(raw: str | None) -> NormalizedEvent | None:
    if raw is None:
        return None
    data = raw.strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return NormalizedEvent.terminal("")
    try:
        payload = json.loads(data)
    except (ValueError, RecursionError):
        # RecursionError: nesting deeper than the decoder can follow
        _drop("malformed", data)
        return None
    output = payload.get("output") if isinstance(payload, dict) else None
    if not isinstance(output, dict) or "text" not in output:
        _drop("no-text", data)
        return None
    text = output.get("text")
    if text is None:
        text = ""
    elif not isinstance(text, str):
        text = json.dumps(text, ensure_ascii=False)
    finished = output.get("finish_reason") == STOP_REASON
    return NormalizedEvent.chunk(text, finished=finished)


def event_to_wire(event: NormalizedEvent) -> Dict[str, Any]:
    obj: Dict[str, Any] = {}
    if event.content is not None:
        obj["content"] = event.content
    obj["finished"] = bool(event.finished)
    if event.error is not None:
        obj["error"] = event.error
    obj["timestamp"] = event.timestamp
    return obj


def encode_event(event: NormalizedEvent) -> str:
    """Serialize an event into the client-facing JSON frame.

    ``json.dumps`` escapes backslash, quote and control characters
    (newline, carriage return, tab, ...). Non-ASCII text is kept verbatim.
    """
    try:
        frame = json.dumps(
            event_to_wire(event), ensure_ascii=False, separators=(",", ":")
        )
        # lone surrogates survive dumps but not the UTF-8 response body
        frame.encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e)) from e
    return frame


__all__ = [
    "DONE_SENTINEL",
    "decode_chunk",
    "encode_event",
    "event_to_wire",
]
