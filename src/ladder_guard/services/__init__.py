# src/ladder_guard/services/__init__.py
"""Guard services built on the shared key-value store."""

from __future__ import annotations

from dataclasses import dataclass

from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.store.base import TTLStore

from .csrf_guard import CsrfGuard, DoubleSubmitCookie
from .events import (
    LoggingEventSink,
    MemoryEventSink,
    SecurityEvent,
    SecurityEventSink,
    SecurityEventType,
)
from .identity import IdentityProvider, StaticIdentityProvider
from .lockout import LockoutService
from .rate_limiter import DEFAULT_LIMITS, RateLimiter
from .session_guard import LOGIN_PURPOSE, SessionGuard


@dataclass
class Guards:
    """The guard services wired to one store, one settings object and one sink."""

    settings: GuardSettings
    store: TTLStore
    sink: SecurityEventSink
    rate_limiter: RateLimiter
    lockout: LockoutService
    sessions: SessionGuard
    csrf: CsrfGuard

    @classmethod
    def build(
        cls,
        store: TTLStore,
        guard_settings: GuardSettings | None = None,
        sink: SecurityEventSink | None = None,
    ) -> Guards:
        cfg = guard_settings if guard_settings is not None else default_settings
        event_sink = sink if sink is not None else LoggingEventSink()
        rate_limiter = RateLimiter(store, cfg, event_sink)
        lockout = LockoutService(rate_limiter, cfg)
        return cls(
            settings=cfg,
            store=store,
            sink=event_sink,
            rate_limiter=rate_limiter,
            lockout=lockout,
            sessions=SessionGuard(store, lockout, cfg, event_sink),
            csrf=CsrfGuard(store, cfg, event_sink),
        )


__all__ = [
    "DEFAULT_LIMITS",
    "LOGIN_PURPOSE",
    "CsrfGuard",
    "DoubleSubmitCookie",
    "Guards",
    "IdentityProvider",
    "LockoutService",
    "LoggingEventSink",
    "MemoryEventSink",
    "RateLimiter",
    "SecurityEvent",
    "SecurityEventSink",
    "SecurityEventType",
    "SessionGuard",
    "StaticIdentityProvider",
]
