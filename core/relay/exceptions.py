"""Relay related exception hierarchy."""
from __future__ import annotations


class RelayError(Exception):
    """Base relay exception."""


class TransportError(RelayError):
    """Raised when the upstream stream cannot be opened or read.

    Typical reasons: connection refused/reset, non-success HTTP status,
    a single frame exceeding the in-memory buffer cap.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeout(RelayError, TimeoutError):
    """Raised when the absolute upstream deadline is exceeded."""


class SerializationError(RelayError):
    """Raised when a normalized event cannot be encoded for the wire."""
