"""Streaming chat relay core."""

from .types import (  # noqa: F401
    ChatMessage,
    ChatRequest,
    NormalizedEvent,
    RelayState,
    Role,
)
from .session_registry import SessionHandle, SessionRegistry  # noqa: F401
from .stream_relay import StreamRelay, UNAVAILABLE_PREFIX  # noqa: F401
from .exceptions import (  # noqa: F401
    RelayError,
    SerializationError,
    TransportError,
    UpstreamTimeout,
)

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "NormalizedEvent",
    "RelayState",
    "Role",
    "SessionHandle",
    "SessionRegistry",
    "StreamRelay",
    "UNAVAILABLE_PREFIX",
    "RelayError",
    "SerializationError",
    "TransportError",
    "UpstreamTimeout",
]
