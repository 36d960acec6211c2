"""Session lifecycle: fingerprint binding, idle timeout, rotation and login.

Session records live in the shared store under ``session_<id>``. Every change
to a record is an atomic :meth:`TTLStore.update`, so concurrent requests on
the same session never overwrite each other's ``last_activity`` or CSRF
tokens. Unlike the rate limiter this guard fails closed: if the store cannot
be read the session is treated as invalid.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Any

from ladder_guard.core.context import RequestContext
from ladder_guard.core.errors import (
    AccountLocked,
    SessionInvalid,
    SessionInvalidReason,
    StoreUnavailable,
)
from ladder_guard.core.security import generate_session_id, session_key, timing_safe_equals
from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.models.records import Identity, LockoutRecord, SessionRecord, SessionState
from ladder_guard.services.events import (
    LoggingEventSink,
    SecurityEvent,
    SecurityEventSink,
    SecurityEventType,
    emit_safely,
)
from ladder_guard.services.lockout import LockoutService
from ladder_guard.store.base import UNCHANGED, TTLStore

logger = logging.getLogger(__name__)

LOGIN_PURPOSE = "login"

# Records outlive the idle timeout slightly so validate() can still see
# them and report a timeout rather than an unknown session.
SESSION_TTL_GRACE = 60

_TERMINAL_REASONS = {
    SessionState.TIMED_OUT: SessionInvalidReason.TIMEOUT,
    SessionState.FINGERPRINT_MISMATCH: SessionInvalidReason.FINGERPRINT_MISMATCH,
    SessionState.LOGGED_OUT: SessionInvalidReason.LOGGED_OUT,
}


def session_ttl(guard_settings: GuardSettings) -> int:
    """Store TTL for session records under ``guard_settings``."""
    return guard_settings.session_timeout + SESSION_TTL_GRACE


class SessionGuard:
    """Enforce the ``UNINITIALIZED -> ACTIVE -> terminal`` session lifecycle."""

    def __init__(
        self,
        store: TTLStore,
        lockout: LockoutService,
        guard_settings: GuardSettings | None = None,
        sink: SecurityEventSink | None = None,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.settings = guard_settings if guard_settings is not None else default_settings
        self.sink = sink if sink is not None else LoggingEventSink()

    @property
    def record_ttl(self) -> int:
        return session_ttl(self.settings)

    def _emit(
        self,
        event_type: SecurityEventType,
        ctx: RequestContext,
        *,
        session_id: str | None = None,
        identifier: str = "",
        **details: Any,
    ) -> None:
        emit_safely(
            self.sink,
            SecurityEvent(
                event_type=event_type,
                identifier=identifier,
                purpose="session",
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                session_id=session_id,
                timestamp=ctx.now,
                details=details,
            ),
        )

    def _invalidate(
        self,
        record: SessionRecord,
        reason: SessionInvalidReason,
        ctx: RequestContext,
    ) -> SessionInvalid:
        logger.warning("Session invalidated: %s", reason.value)
        self._emit(
            SecurityEventType.SESSION_INVALIDATED,
            ctx,
            session_id=record.session_id,
            identifier=record.user_id or "",
            reason=reason.value,
        )
        return SessionInvalid(reason)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, ctx: RequestContext) -> SessionRecord:
        """Load the record named by ``ctx.session_id`` or create a fresh one.

        Unknown identifiers supplied by the client are never adopted; a new
        random identifier is issued instead.
        """
        try:
            if ctx.session_id:
                raw = self.store.get(session_key(ctx.session_id))
                if raw is not None:
                    return SessionRecord.from_dict(raw)
            return self._create(ctx)
        except StoreUnavailable as err:
            logger.warning("Session store unavailable on start: %s", err.message)
            raise SessionInvalid(SessionInvalidReason.STORE_UNAVAILABLE) from err

    def _create(self, ctx: RequestContext) -> SessionRecord:
        for _ in range(3):
            record = SessionRecord(
                session_id=generate_session_id(),
                created_at=ctx.now,
                last_activity=ctx.now,
            )
            if self.store.compare_and_swap(
                session_key(record.session_id), None, record.to_dict(), self.record_ttl
            ):
                logger.debug("Created new session")
                return record
        raise StoreUnavailable(self.store.backend_name, "could not allocate a session identifier")

    def validate(self, record: SessionRecord, ctx: RequestContext) -> SessionRecord:
        """Apply timeout, fingerprint and rotation policy to ``record``.

        Returns the live record, possibly under a new identifier after
        rotation. Raises :class:`SessionInvalid` after destroying the record
        when the session can no longer be used.
        """
        if record.state.is_terminal:
            self.destroy(record)
            raise self._invalidate(record, _TERMINAL_REASONS[record.state], ctx)

        now = ctx.now
        timeout = self.settings.session_timeout
        presented = ctx.fingerprint

        def touch(current: Any) -> tuple[Any, tuple[SessionRecord | None, SessionState | None]]:
            if current is None:
                return UNCHANGED, (None, SessionState.TIMED_OUT)
            stored = SessionRecord.from_dict(current)
            if now - stored.last_activity > timeout:
                return None, (stored, SessionState.TIMED_OUT)
            if stored.fingerprint is None:
                stored = replace(stored, fingerprint=presented)
            elif not timing_safe_equals(stored.fingerprint, presented):
                return None, (stored, SessionState.FINGERPRINT_MISMATCH)
            stored = replace(
                stored,
                state=SessionState.ACTIVE,
                last_activity=max(stored.last_activity, now),
            )
            return stored.to_dict(), (stored, None)

        try:
            live, terminal = self.store.update(session_key(record.session_id), touch, self.record_ttl)
        except StoreUnavailable as err:
            logger.warning("Session store unavailable on validate: %s", err.message)
            raise self._invalidate(record, SessionInvalidReason.STORE_UNAVAILABLE, ctx) from err

        if terminal is not None:
            dead = replace(live or record, state=terminal)
            raise self._invalidate(dead, _TERMINAL_REASONS[terminal], ctx)
        assert live is not None

        if now - live.created_at > self.settings.session_rotation_interval:
            live = self.rotate(live, ctx)
        return live

    def resume(self, ctx: RequestContext) -> SessionRecord:
        """``start`` followed by ``validate``; the usual per-request entry point."""
        return self.validate(self.start(ctx), ctx)

    def rotate(self, record: SessionRecord, ctx: RequestContext, **changes: Any) -> SessionRecord:
        """Move ``record`` to a fresh identifier, resetting ``created_at``.

        Extra keyword arguments are applied to the record during the move.
        """
        old_key = session_key(record.session_id)

        def take(current: Any) -> tuple[Any, Any]:
            if current is None:
                return UNCHANGED, None
            return None, current

        try:
            current = self.store.update(old_key, take, self.record_ttl)
            if current is None:
                raise self._invalidate(record, SessionInvalidReason.TIMEOUT, ctx)
            moved = replace(SessionRecord.from_dict(current), created_at=ctx.now, **changes)
            for _ in range(3):
                moved = replace(moved, session_id=generate_session_id())
                if self.store.compare_and_swap(
                    session_key(moved.session_id), None, moved.to_dict(), self.record_ttl
                ):
                    break
            else:
                raise StoreUnavailable(
                    self.store.backend_name, "could not allocate a session identifier"
                )
        except StoreUnavailable as err:
            logger.warning("Session store unavailable on rotate: %s", err.message)
            raise self._invalidate(record, SessionInvalidReason.STORE_UNAVAILABLE, ctx) from err

        logger.info("Rotated session identifier")
        self._emit(
            SecurityEventType.SESSION_ROTATED,
            ctx,
            session_id=moved.session_id,
            identifier=moved.user_id or "",
        )
        return moved

    def destroy(self, record: SessionRecord) -> bool:
        try:
            return self.store.delete(session_key(record.session_id))
        except StoreUnavailable as err:
            logger.warning("Could not destroy session: %s", err.message)
            return False

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def login(self, record: SessionRecord, identity: Identity, ctx: RequestContext) -> SessionRecord:
        """Bind ``identity`` to the session under a freshly rotated identifier."""
        authenticated = self.rotate(
            record,
            ctx,
            identity=identity,
            login_time=ctx.now,
            last_activity=ctx.now,
            state=SessionState.ACTIVE,
            fingerprint=record.fingerprint or ctx.fingerprint,
        )
        self.lockout.reset(LOGIN_PURPOSE, identity.username)
        logger.info("User %s logged in", identity.username)
        self._emit(
            SecurityEventType.LOGIN_SUCCESS,
            ctx,
            session_id=authenticated.session_id,
            identifier=identity.username,
        )
        return authenticated

    def logout(self, record: SessionRecord, ctx: RequestContext) -> bool:
        """Destroy the session; the caller clears the cookie."""
        destroyed = self.destroy(record)
        logger.info("Session logged out")
        self._emit(
            SecurityEventType.SESSION_INVALIDATED,
            ctx,
            session_id=record.session_id,
            identifier=record.user_id or "",
            reason=SessionInvalidReason.LOGGED_OUT.value,
        )
        return destroyed

    def record_failed_login(self, username: str, ctx: RequestContext) -> LockoutRecord:
        record = self.lockout.record_failure(LOGIN_PURPOSE, username, now=ctx.now, ip=ctx.ip)
        logger.warning("Failed login for %s (%d attempts)", username, record.attempt_count)
        self._emit(
            SecurityEventType.LOGIN_FAILED,
            ctx,
            session_id=ctx.session_id,
            identifier=username,
            attempts=record.attempt_count,
        )
        return record

    def is_locked(self, username: str, ctx: RequestContext) -> bool:
        return self.lockout.is_locked(LOGIN_PURPOSE, username, now=ctx.now)

    def ensure_not_locked(self, username: str, ctx: RequestContext) -> None:
        """Raise :class:`AccountLocked` while ``username`` is locked out."""
        if not self.is_locked(username, ctx):
            return
        block = self.lockout.rate_limiter.is_blocked(LOGIN_PURPOSE, username, now=ctx.now)
        if block is not None:
            raise AccountLocked(block, ctx.now)

    def get_lockout_remaining(self, username: str, ctx: RequestContext) -> int:
        """Whole seconds until ``username`` may try again."""
        return int(math.ceil(self.lockout.remaining(LOGIN_PURPOSE, username, now=ctx.now)))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @staticmethod
    def is_authenticated(record: SessionRecord | None) -> bool:
        return record is not None and record.is_authenticated

    def session_info(self, record: SessionRecord, ctx: RequestContext) -> dict[str, Any]:
        if not record.is_authenticated:
            return {}
        assert record.identity is not None
        timeout = self.settings.session_timeout
        return {
            "user_id": record.identity.user_id,
            "username": record.identity.username,
            "display_name": record.identity.display_name,
            "groups": list(record.identity.groups),
            "login_time": record.login_time,
            "last_activity": record.last_activity,
            "session_timeout": timeout,
            "time_remaining": max(0, int(timeout - (ctx.now - record.last_activity))),
        }

    def cookie_params(self, record: SessionRecord) -> dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``."""
        return {
            "key": self.settings.session_cookie_name,
            "value": record.session_id,
            "max_age": self.settings.session_timeout,
            "path": "/",
            "secure": self.settings.session_cookie_secure,
            "httponly": True,
            "samesite": "strict",
        }
