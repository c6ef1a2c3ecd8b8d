"""Upstream streaming transport.

``Transport.open_stream(url, headers, body)`` yields raw text chunks and
raises ``TransportError`` for anything that prevents reading them. The
default implementation POSTs with httpx and, for ``text/event-stream``
responses, yields the ``data:`` payload of each SSE event (``id:``,
``event:`` and comment lines are metadata and are skipped).
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Mapping, Protocol

import httpx

from core.relay.exceptions import TransportError

logger = logging.getLogger("chatrelay.transport")


class Transport(Protocol):  # pragma: no cover - interface
    def open_stream(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Dict[str, Any],
    ) -> AsyncIterator[str]:
        ...


def _check_cap(size: int, cap: int) -> None:
    if cap and size > cap:
        raise TransportError(
            f"upstream frame exceeds buffer limit ({size} > {cap} bytes)"
        )


async def iter_sse_data(
    lines: AsyncIterator[str], max_bytes: int = 0
) -> AsyncIterator[str]:
    """Group SSE lines into events and yield each event's data field."""
    buf: list[str] = []
    size = 0
    async for line in lines:
        if not line:
            if buf:
                yield "\n".join(buf)
            buf, size = [], 0
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field != "data":
            continue
        if value.startswith(" "):
            value = value[1:]
        size += len(value.encode("utf-8"))
        _check_cap(size, max_bytes)
        buf.append(value)
    if buf:
        yield "\n".join(buf)


class HttpTransport:
    """httpx based transport; one POST per relay, no retries."""

    def __init__(
        self,
        max_in_memory_bytes: int = 0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._max_bytes = max_in_memory_bytes
        self._client = client

    async def open_stream(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Dict[str, Any],
    ) -> AsyncIterator[str]:
        owned = self._client is None
        # Deadline is enforced by the relay; no per-read timeout here.
        client = self._client or httpx.AsyncClient(timeout=None)
        try:
            async with client.stream(
                "POST", url, headers=dict(headers), json=body
            ) as response:
                if not response.is_success:
                    detail = await self._error_detail(response)
                    raise TransportError(
                        f"upstream returned HTTP {response.status_code}"
                        + (f": {detail}" if detail else ""),
                        status_code=response.status_code,
                    )
                ctype = response.headers.get("content-type", "")
                logger.debug(
                    "upstream stream opened status=%s content-type=%s",
                    response.status_code,
                    ctype,
                )
                if "text/event-stream" in ctype:
                    async for data in iter_sse_data(
                        response.aiter_lines(), self._max_bytes
                    ):
                        yield data
                else:
                    async for line in response.aiter_lines():
                        _check_cap(len(line.encode("utf-8")), self._max_bytes)
                        if line.strip():
                            yield line
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e
        finally:
            if owned:
                await client.aclose()

    async def _error_detail(self, response: httpx.Response) -> str:
        try:
            raw = await response.aread()
        except httpx.HTTPError:
            return ""
        if self._max_bytes:
            raw = raw[: self._max_bytes]
        return raw.decode("utf-8", errors="replace").strip()[:500]


__all__ = ["Transport", "HttpTransport", "iter_sse_data"]
