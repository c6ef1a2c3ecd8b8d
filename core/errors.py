"""Central error taxonomy for relay failures and config validation."""
from __future__ import annotations

_ALLOWED_ERROR_TYPES = {
    # upstream
    "transport-error",
    "timeout",
    # per chunk / per frame (recovered locally)
    "decode-error",
    "serialization-error",
    # lifecycle
    "cancelled",
    "relay-internal",
    # config
    "config-out-of-range",
    # infra
    "event-handler-error",
}


def validate_error_type(code: str) -> str:
    assert (
        code in _ALLOWED_ERROR_TYPES
    ), f"Unknown error_type '{code}' (not in taxonomy)"
    return code


def map_exception(e: BaseException) -> str:
    """Classify an exception raised while relaying into a taxonomy code."""
    # Local import keeps core.errors importable without the relay package.
    from core.relay.exceptions import (
        SerializationError,
        TransportError,
        UpstreamTimeout,
    )

    if isinstance(e, UpstreamTimeout):
        return "timeout"
    if isinstance(e, TransportError):
        return "transport-error"
    if isinstance(e, SerializationError):
        return "serialization-error"
    name = e.__class__.__name__.lower()
    if "cancel" in name:
        return "cancelled"
    if isinstance(e, TimeoutError) or "timeout" in name:
        return "timeout"
    return "relay-internal"


__all__ = ["validate_error_type", "map_exception"]
