"""Relay data model: chat turn input and normalized stream events."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import List, Optional


def now_ms() -> int:
    return int(time() * 1000)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class RelayState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {
    RelayState.COMPLETED,
    RelayState.CANCELLED,
    RelayState.FAILED,
}


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str  # user|assistant (others are ignored by the prompt builder)
    content: str
    timestamp: int = field(default_factory=now_ms)


@dataclass(slots=True)
class ChatRequest:
    message: str
    history: List[ChatMessage] = field(default_factory=list)
    session_id: Optional[str] = None


@dataclass(slots=True)
class NormalizedEvent:
    """One piece of streamed output, independent of the upstream format.

    finished=True marks the terminal event of a session; nothing follows it.
    """

    content: Optional[str] = None
    finished: bool = False
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def chunk(cls, text: str, finished: bool = False) -> "NormalizedEvent":
        return cls(content=text, finished=finished)

    @classmethod
    def terminal(cls, content: str = "") -> "NormalizedEvent":
        return cls(content=content, finished=True)

    @classmethod
    def failure(cls, message: str) -> "NormalizedEvent":
        return cls(content=message, finished=True, error=message)


__all__ = [
    "Role",
    "RelayState",
    "ChatMessage",
    "ChatRequest",
    "NormalizedEvent",
    "now_ms",
]
