"""Session registry for in-flight relays.

Thread-safe mapping session_id -> cancellation handle. The relay polls its
handle once per upstream chunk; the stop route flips it from another
thread. Cancellation is one-shot: the entry is removed as soon as it is
flagged, and ``end`` is an idempotent removal for every terminal path.
"""
from __future__ import annotations

import logging
from threading import Event, RLock
from time import time
from typing import Dict, List

logger = logging.getLogger("chatrelay.sessions")


class SessionHandle:
    __slots__ = ("session_id", "started_at", "cancelled_at", "_flag")

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.started_at = time()
        self.cancelled_at: float | None = None
        self._flag = Event()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def _cancel(self) -> None:
        if self.cancelled_at is None:
            self.cancelled_at = time()
        self._flag.set()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"SessionHandle({self.session_id!r}, "
            f"cancelled={self.cancelled})"
        )


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionHandle] = {}
        self._lock = RLock()

    def begin(self, session_id: str) -> SessionHandle:
        handle = SessionHandle(session_id)
        with self._lock:
            displaced = self._sessions.get(session_id)
            # Colliding ids overwrite; the displaced relay keeps its own
            # handle but is no longer reachable through cancel().
            self._sessions[session_id] = handle
        if displaced is not None:
            logger.warning("session id reused, entry replaced: %s", session_id)
        return handle

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            handle = self._sessions.pop(session_id, None)
            if handle is None:
                return False
            handle._cancel()
        logger.info("session cancelled: %s", session_id)
        return True

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            handle = self._sessions.get(session_id)
            return handle is not None and not handle.cancelled

    def end(self, session_id: str, handle: SessionHandle | None = None) -> None:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return
            if handle is not None and current is not handle:
                return
            del self._sessions[session_id]

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def list_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)


__all__ = ["SessionHandle", "SessionRegistry"]
