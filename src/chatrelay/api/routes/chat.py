"""/api/chat routes: streaming relay, stop, status, health."""
from __future__ import annotations

import logging
import time
from typing import List

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from core.relay import ChatMessage, ChatRequest, StreamRelay
from core.relay.stream_relay import new_session_id
from chatrelay.api.sse import iter_sse

router = APIRouter(prefix="/api/chat")

logger = logging.getLogger("chatrelay.api")


class ChatMessageIn(BaseModel):  # noqa: D401
    role: str
    content: str = ""
    timestamp: int | None = None

    def to_message(self) -> ChatMessage:
        if self.timestamp is None:
            return ChatMessage(role=self.role, content=self.content)
        return ChatMessage(
            role=self.role, content=self.content, timestamp=self.timestamp
        )


class ChatRequestIn(BaseModel):  # noqa: D401
    message: str
    history: List[ChatMessageIn] | None = None
    # accepted for client compatibility; the relay always streams
    stream: bool = True


def _relay(request: Request) -> StreamRelay:
    return request.app.state.relay


@router.post("/stream")
def stream_chat(
    body: ChatRequestIn,
    request: Request,
    session_id_param: str = Query("", alias="sessionIdParam"),
):  # noqa: D401
    session_id = session_id_param or new_session_id()
    chat_request = ChatRequest(
        message=body.message,
        history=[m.to_message() for m in body.history or []],
        session_id=session_id,
    )
    logger.info(
        "stream requested session=%s message_chars=%d",
        session_id,
        len(body.message),
    )
    frames = _relay(request).start_relay(chat_request)
    return StreamingResponse(
        iter_sse(frames),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Session-Id": session_id},
    )


@router.post("/stop/{session_id}")
def stop_stream(session_id: str, request: Request):  # noqa: D401
    logger.info("stop requested session=%s", session_id)
    _relay(request).cancel(session_id)
    return {
        "success": True,
        "message": "Stream stopped",
        "sessionId": session_id,
    }


@router.get("/status/{session_id}")
def stream_status(session_id: str, request: Request):  # noqa: D401
    return {
        "sessionId": session_id,
        "active": _relay(request).is_active(session_id),
    }


@router.get("/health")
def chat_health():  # noqa: D401
    return {
        "status": "ok",
        "service": "chat-relay",
        "timestamp": int(time.time() * 1000),
    }


__all__ = ["router", "ChatRequestIn", "ChatMessageIn"]
