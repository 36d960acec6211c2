"""Explicit per-request context passed into every guard call."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from starlette.requests import HTTPConnection

from ladder_guard.core.security import fingerprint

Clock = Callable[[], float]


@dataclass(frozen=True)
class RequestContext:
    """Client signals and the request's notion of "now"."""

    ip: str = ""
    user_agent: str = ""
    accept_language: str = ""
    accept_encoding: str = ""
    session_id: str | None = None
    now: float = field(default_factory=time.time)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.user_agent, self.accept_language, self.accept_encoding)

    def with_session(self, session_id: str | None) -> RequestContext:
        """Return a copy bound to another session identifier."""
        return RequestContext(
            ip=self.ip,
            user_agent=self.user_agent,
            accept_language=self.accept_language,
            accept_encoding=self.accept_encoding,
            session_id=session_id,
            now=self.now,
        )

    @classmethod
    def from_connection(
        cls,
        conn: HTTPConnection,
        *,
        session_cookie: str,
        clock: Clock = time.time,
    ) -> RequestContext:
        """Build a context from a Starlette request or websocket."""
        headers = conn.headers
        return cls(
            ip=client_ip(conn),
            user_agent=headers.get("user-agent", ""),
            accept_language=headers.get("accept-language", ""),
            accept_encoding=headers.get("accept-encoding", ""),
            session_id=conn.cookies.get(session_cookie) or None,
            now=clock(),
        )


def client_ip(conn: HTTPConnection) -> str:
    """Return the transport-level client address."""
    return conn.client.host if conn.client else "unknown"
