"""SSE utilities."""
from __future__ import annotations

from typing import AsyncIterator


def format_event(event: str | None, data: str) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    # data may contain newlines; one data: line each
    for line in data.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


async def iter_sse(
    frames: AsyncIterator[str], event: str | None = None
) -> AsyncIterator[str]:
    try:
        async for frame in frames:
            yield format_event(event, frame)
    finally:
        aclose = getattr(frames, "aclose", None)
        if aclose is not None:
            await aclose()
