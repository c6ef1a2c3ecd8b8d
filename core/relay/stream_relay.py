"""Stream relay: one chat turn -> ordered NormalizedEvent sequence.

State machine per session::

    STARTING -> STREAMING -> COMPLETED | CANCELLED | FAILED

Every path ends with exactly one ``finished=True`` event and a single
registry cleanup, including when the consumer stops iterating early.
Cancellation is cooperative: the session handle is checked once per raw
upstream chunk, before that chunk is decoded.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator

from core import metrics
from core.config.schemas.upstream import UpstreamConfig
from core.errors import map_exception, validate_error_type
from core.events import (
    RelayCancelled,
    RelayCompleted,
    RelayFailed,
    RelayStarted,
    emit,
)
from core.relay.codec import decode_chunk
from core.relay.exceptions import TransportError, UpstreamTimeout
from core.relay.publisher import iter_frames
from core.relay.request_builder import build_headers, build_request
from core.relay.session_registry import SessionHandle, SessionRegistry
from core.relay.transport import HttpTransport, Transport
from core.relay.types import ChatRequest, NormalizedEvent, RelayState

UNAVAILABLE_PREFIX = "AI service temporarily unavailable: "

logger = logging.getLogger("chatrelay.relay")

_EOF = object()


def new_session_id() -> str:
    return str(uuid.uuid4())


def describe_failure(e: BaseException) -> str:
    if isinstance(e, (TransportError, UpstreamTimeout)):
        return str(e) or e.__class__.__name__
    msg = str(e)
    return f"{e.__class__.__name__}: {msg}" if msg else e.__class__.__name__


async def _anext(stream: AsyncIterator[str]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _EOF


async def _close(stream: AsyncIterator[str] | None) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # noqa: BLE001
        logger.debug("upstream stream close failed", exc_info=True)


class StreamRelay:
    def __init__(
        self,
        config: UpstreamConfig,
        registry: SessionRegistry | None = None,
        transport: Transport | None = None,
    ) -> None:
        self.config = config
        self.registry = registry if registry is not None else SessionRegistry()
        self.transport = (
            transport
            if transport is not None
            else HttpTransport(config.max_in_memory_bytes)
        )

    # Control path (may be called from another thread) -------------------
    def cancel(self, session_id: str) -> bool:
        known = self.registry.cancel(session_id)
        metrics.inc_cancel_request(known)
        if not known:
            logger.info("stop requested for unknown session: %s", session_id)
        return known

    def is_active(self, session_id: str) -> bool:
        return self.registry.is_active(session_id)

    # Data path ---------------------------------------------------------
    def start_relay(self, request: ChatRequest) -> AsyncIterator[str]:
        """Lazy sequence of client wire frames (JSON strings)."""
        return iter_frames(self.relay(request))

    async def _next_chunk(
        self, stream: AsyncIterator[str], deadline: float
    ) -> Any:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise UpstreamTimeout(self._timeout_message())
        try:
            return await asyncio.wait_for(_anext(stream), remaining)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(self._timeout_message()) from e

    def _timeout_message(self) -> str:
        return (
            "upstream did not complete within "
            f"{self.config.timeout_s:g}s"
        )

    async def relay(
        self, request: ChatRequest
    ) -> AsyncIterator[NormalizedEvent]:
        session_id = request.session_id or new_session_id()
        handle = self.registry.begin(session_id)
        state = RelayState.STARTING
        t_start = time.time()
        deadline = asyncio.get_running_loop().time() + self.config.timeout_s
        chunks_out = 0
        stop_reason = "upstream"
        failure: BaseException | None = None
        stream: AsyncIterator[str] | None = None
        logger.info(
            "relay start session=%s model=%s history=%d",
            session_id,
            self.config.model,
            len(request.history or ()),
        )
        try:
            upstream_req = build_request(
                request.message, request.history, self.config
            )
            emit(
                RelayStarted(
                    session_id=session_id,
                    model=upstream_req.model,
                    prompt_chars=len(upstream_req.prompt),
                    history_len=len(request.history or ()),
                )
            )
            stream = self.transport.open_stream(
                self.config.url,
                build_headers(self.config),
                upstream_req.to_payload(),
            )
            state = RelayState.STREAMING
            while True:
                raw = await self._next_chunk(stream, deadline)
                if raw is _EOF:
                    break
                if handle.cancelled:
                    state = RelayState.CANCELLED
                    logger.info("relay interrupted session=%s", session_id)
                    break
                metrics.inc("relay_chunks_total")
                event = decode_chunk(raw)
                if event is None:
                    continue
                if chunks_out == 0:
                    metrics.observe(
                        "relay_first_chunk_latency_ms",
                        (time.time() - t_start) * 1000.0,
                    )
                chunks_out += 1
                if event.finished:
                    state = RelayState.COMPLETED
                yield event
                if state is RelayState.COMPLETED:
                    break
            if state is RelayState.STREAMING:
                # Upstream closed without [DONE] / finish_reason=stop
                state = RelayState.COMPLETED
                stop_reason = "eof"
                yield NormalizedEvent.terminal("")
            elif state is RelayState.CANCELLED:
                yield NormalizedEvent.terminal("")
        except Exception as e:  # noqa: BLE001
            state = RelayState.FAILED
            failure = e
            logger.error(
                "relay failed session=%s error=%s",
                session_id,
                describe_failure(e),
            )
            yield NormalizedEvent.failure(
                UNAVAILABLE_PREFIX + describe_failure(e)
            )
        finally:
            await _close(stream)
            self.registry.end(session_id, handle)
            self._record_end(
                session_id, handle, state, chunks_out, t_start,
                stop_reason, failure,
            )

    def _record_end(
        self,
        session_id: str,
        handle: SessionHandle,
        state: RelayState,
        chunks_out: int,
        t_start: float,
        stop_reason: str,
        failure: BaseException | None,
    ) -> None:
        latency_ms = int((time.time() - t_start) * 1000)
        model = self.config.model
        if state is RelayState.COMPLETED:
            emit(
                RelayCompleted(
                    session_id=session_id,
                    model=model,
                    chunks=chunks_out,
                    latency_ms=latency_ms,
                    stop_reason=stop_reason,
                )
            )
        elif state is RelayState.FAILED and failure is not None:
            emit(
                RelayFailed(
                    session_id=session_id,
                    model=model,
                    error_type=validate_error_type(map_exception(failure)),
                    message=describe_failure(failure),
                    chunks=chunks_out,
                    latency_ms=latency_ms,
                )
            )
        else:
            # Cancelled by stop request, or consumer detached mid-stream
            cancel_latency_ms = None
            if handle.cancelled_at is not None:
                cancel_latency_ms = int(
                    (time.time() - handle.cancelled_at) * 1000
                )
            emit(
                RelayCancelled(
                    session_id=session_id,
                    model=model,
                    chunks=chunks_out,
                    latency_ms=latency_ms,
                    cancel_latency_ms=cancel_latency_ms,
                )
            )
        logger.info(
            "relay end session=%s state=%s chunks=%d latency_ms=%d",
            session_id,
            state.value if state.terminal else "detached",
            chunks_out,
            latency_ms,
        )


__all__ = [
    "StreamRelay",
    "UNAVAILABLE_PREFIX",
    "new_session_id",
    "describe_failure",
]
