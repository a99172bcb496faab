"""Process-local session tracking for captured tool calls."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from mcp_telemetry.kernel.ids import new_event_id

logger = structlog.get_logger()

ANONYMOUS_SESSION_KEY = "anonymous"


@dataclass
class Session:
    id: str
    key: str
    start_time: float
    last_activity: float
    calls: int = 0


def session_key(context: Mapping[str, Any] | None) -> str:
    """User id, then IP, then `anonymous`."""
    context = context or {}
    return str(
        context.get("user_id")
        or context.get("userId")
        or context.get("ip")
        or ANONYMOUS_SESSION_KEY
    )


class SessionManager:
    """
    Maps a caller identity to a session id.

    A session idle for longer than `timeout_seconds` is replaced by a new
    one on the next call; `sweep()` evicts idle sessions.
    """

    def __init__(
        self,
        timeout_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def get_session_id(self, context: Mapping[str, Any] | None = None) -> str:
        key = session_key(context)
        now = self._clock()
        session = self._sessions.get(key)

        if session is None or now - session.last_activity > self.timeout_seconds:
            if session is not None:
                logger.debug("Session rotated after idle timeout", session_key=key, previous_session=session.id)
            session = Session(id=new_event_id(), key=key, start_time=now, last_activity=now)
            self._sessions[key] = session

        session.last_activity = now
        session.calls += 1
        return session.id

    def sweep(self) -> int:
        """Drop idle sessions. Returns how many were removed."""
        now = self._clock()
        expired = [
            key
            for key, session in self._sessions.items()
            if now - session.last_activity > self.timeout_seconds
        ]
        for key in expired:
            del self._sessions[key]
        if expired:
            logger.debug("Expired sessions swept", count=len(expired), active=len(self._sessions))
        return len(expired)

    def clear(self) -> None:
        self._sessions.clear()
