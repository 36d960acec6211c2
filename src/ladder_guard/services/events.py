"""Security event sink used by every guard."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("ladder_guard.security")


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    IDENTIFIER_BLOCKED = "identifier_blocked"
    IDENTIFIER_UNBLOCKED = "identifier_unblocked"
    CSRF_REJECTED = "csrf_rejected"
    SESSION_INVALIDATED = "session_invalidated"
    SESSION_ROTATED = "session_rotated"
    STORE_UNAVAILABLE = "store_unavailable"


_SEVERITY: dict[SecurityEventType, int] = {
    SecurityEventType.LOGIN_SUCCESS: logging.INFO,
    SecurityEventType.SESSION_ROTATED: logging.INFO,
    SecurityEventType.IDENTIFIER_UNBLOCKED: logging.INFO,
    SecurityEventType.LOGIN_FAILED: logging.WARNING,
    SecurityEventType.ACCOUNT_LOCKED: logging.WARNING,
    SecurityEventType.RATE_LIMIT_EXCEEDED: logging.WARNING,
    SecurityEventType.IDENTIFIER_BLOCKED: logging.WARNING,
    SecurityEventType.CSRF_REJECTED: logging.WARNING,
    SecurityEventType.SESSION_INVALIDATED: logging.WARNING,
    SecurityEventType.STORE_UNAVAILABLE: logging.WARNING,
}


@dataclass(frozen=True)
class SecurityEvent:
    """Structured record of something an operator may want to alert on."""

    event_type: SecurityEventType
    identifier: str = ""
    purpose: str = ""
    ip: str = ""
    user_agent: str = ""
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return logging.getLevelName(_SEVERITY.get(self.event_type, logging.INFO))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity
        return data


class SecurityEventSink(Protocol):
    """Anything that can receive security events (logger, audit trail, SIEM)."""

    def emit(self, event: SecurityEvent) -> None: ...


class LoggingEventSink:
    """Write events to the ``ladder_guard.security`` logger."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or security_logger

    def emit(self, event: SecurityEvent) -> None:
        level = _SEVERITY.get(event.event_type, logging.INFO)
        self._logger.log(
            level,
            "security event %s purpose=%s identifier=%s",
            event.event_type.value,
            event.purpose,
            event.identifier,
            extra={"security_event": event.to_dict()},
        )


class MemoryEventSink:
    """Collect events in a list; handy for tests and admin dashboards."""

    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    def emit(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: SecurityEventType) -> list[SecurityEvent]:
        return [event for event in self.events if event.event_type is event_type]


def emit_safely(sink: SecurityEventSink, event: SecurityEvent) -> None:
    """Deliver ``event``; sink failures are logged and never reach the caller."""
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Security event sink failed for %s", event.event_type.value)
