"""Client publisher: NormalizedEvent sequence -> JSON wire frames.

Frames map 1:1 to events and keep their order. If an event cannot be
serialized, a fixed terminal error frame replaces it and the stream ends,
so the client still sees ``finished: true``. The failure is thrown back
into the event source so the relay records the session as failed.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator

from core import metrics
from core.relay.codec import encode_event
from core.relay.exceptions import SerializationError
from core.relay.types import NormalizedEvent

SERIALIZATION_ERROR_FRAME = '{"error":"data conversion error","finished":true}'

logger = logging.getLogger("chatrelay.publisher")


async def _report_failure(
    events: AsyncIterator[NormalizedEvent], error: SerializationError
) -> None:
    athrow = getattr(events, "athrow", None)
    if athrow is None:
        return
    try:
        # relay answers with its own failure event; the fixed frame wins
        await athrow(error)
    except (StopAsyncIteration, SerializationError):
        pass


async def iter_frames(
    events: AsyncIterator[NormalizedEvent],
) -> AsyncIterator[str]:
    try:
        async for event in events:
            try:
                frame = encode_event(event)
            except SerializationError as e:
                metrics.inc("relay_serialization_errors_total")
                logger.exception("event serialization failed")
                await _report_failure(events, e)
                yield SERIALIZATION_ERROR_FRAME
                return
            yield frame
            if event.finished:
                return
    finally:
        # Consumer detached or stream done: let the relay run its cleanup
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


__all__ = ["iter_frames", "SERIALIZATION_ERROR_FRAME"]
