"""CSRF tokens: one-time session tokens and the stateless double-submit mode."""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from ladder_guard.core.context import RequestContext
from ladder_guard.core.errors import SessionInvalid, SessionInvalidReason, StoreUnavailable
from ladder_guard.core.security import (
    cookie_name_for_action,
    generate_token,
    is_token_shaped,
    session_key,
    timing_safe_equals,
)
from ladder_guard.core.settings import MIN_CSRF_TOKEN_LIFETIME, GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.models.records import SessionRecord, TokenRecord
from ladder_guard.services.events import (
    LoggingEventSink,
    SecurityEvent,
    SecurityEventSink,
    SecurityEventType,
    emit_safely,
)
from ladder_guard.services.session_guard import session_ttl
from ladder_guard.store.base import UNCHANGED, TTLStore

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "default"
CSRF_HEADER = "x-csrf-token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_BEARER_PATTERN = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class DoubleSubmitCookie:
    """Token plus the attributes of the cookie that carries it."""

    token: str
    cookie_name: str
    max_age: int
    secure: bool = True
    path: str = "/"

    def set_cookie_kwargs(self) -> dict[str, Any]:
        # Must stay readable by scripts so the page can echo it back.
        return {
            "key": self.cookie_name,
            "value": self.token,
            "max_age": self.max_age,
            "path": self.path,
            "secure": self.secure,
            "httponly": False,
            "samesite": "strict",
        }


class CsrfGuard:
    """Issue and check per-action tokens kept in the session record."""

    def __init__(
        self,
        store: TTLStore,
        guard_settings: GuardSettings | None = None,
        sink: SecurityEventSink | None = None,
    ) -> None:
        self.store = store
        self.settings = guard_settings if guard_settings is not None else default_settings
        self.sink = sink if sink is not None else LoggingEventSink()
        self._token_lifetime = max(MIN_CSRF_TOKEN_LIFETIME, self.settings.csrf_token_lifetime)

    @property
    def token_lifetime(self) -> int:
        return self._token_lifetime

    @token_lifetime.setter
    def token_lifetime(self, seconds: int) -> None:
        self._token_lifetime = max(MIN_CSRF_TOKEN_LIFETIME, int(seconds))

    @property
    def token_name(self) -> str:
        return self.settings.csrf_token_name

    def _reject(
        self, reason: str, action: str, record: SessionRecord | None, ctx: RequestContext
    ) -> bool:
        logger.warning("CSRF token rejected for action=%s: %s", action, reason)
        emit_safely(
            self.sink,
            SecurityEvent(
                event_type=SecurityEventType.CSRF_REJECTED,
                identifier=(record.user_id or "") if record else "",
                purpose=action,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                session_id=record.session_id if record else ctx.session_id,
                timestamp=ctx.now,
                details={"reason": reason},
            ),
        )
        return False

    # ------------------------------------------------------------------
    # Session-bound tokens
    # ------------------------------------------------------------------
    def issue_token(self, record: SessionRecord, action: str, ctx: RequestContext) -> str:
        """Store a fresh token for ``action`` and purge expired ones."""
        now = ctx.now
        lifetime = self._token_lifetime
        token = TokenRecord(
            value=generate_token(),
            created_at=now,
            action=action,
            bound_ip=ctx.ip,
            bound_user_agent=ctx.user_agent,
        )

        def add(current: Any) -> tuple[Any, bool]:
            if current is None:
                return UNCHANGED, False
            stored = SessionRecord.from_dict(current)
            tokens = {
                name: existing
                for name, existing in stored.csrf_tokens.items()
                if not existing.is_expired(now, lifetime)
            }
            stale = len(stored.csrf_tokens) - len(tokens)
            if stale:
                logger.debug("Purged %d stale CSRF tokens", stale)
            tokens[action] = token
            return replace(stored, csrf_tokens=tokens).to_dict(), True

        try:
            issued = self.store.update(session_key(record.session_id), add, session_ttl(self.settings))
        except StoreUnavailable as err:
            logger.warning("Cannot issue CSRF token, session store unavailable: %s", err.message)
            raise SessionInvalid(SessionInvalidReason.STORE_UNAVAILABLE) from err
        if not issued:
            raise SessionInvalid(SessionInvalidReason.TIMEOUT)
        return token.value

    def validate_token(
        self,
        record: SessionRecord,
        token: str | None,
        action: str,
        ctx: RequestContext,
    ) -> bool:
        """Consume the token for ``action``; True only for an exact, fresh match.

        The stored token is removed whatever the outcome, so a token can be
        presented at most once.
        """

        def take(current: Any) -> tuple[Any, TokenRecord | None]:
            if current is None:
                return UNCHANGED, None
            stored = SessionRecord.from_dict(current)
            found = stored.csrf_tokens.get(action)
            if found is None:
                return UNCHANGED, None
            remaining = {name: t for name, t in stored.csrf_tokens.items() if name != action}
            return replace(stored, csrf_tokens=remaining).to_dict(), found

        try:
            stored = self.store.update(session_key(record.session_id), take, session_ttl(self.settings))
        except StoreUnavailable as err:
            return self._reject(f"store unavailable: {err.message}", action, record, ctx)

        if stored is None:
            return self._reject("no token issued", action, record, ctx)
        if not is_token_shaped(token):
            return self._reject("malformed token", action, record, ctx)
        assert token is not None
        if not timing_safe_equals(stored.value, token):
            return self._reject("token mismatch", action, record, ctx)
        if stored.is_expired(ctx.now, self._token_lifetime):
            return self._reject("token expired", action, record, ctx)
        if self.settings.csrf_check_ip and stored.bound_ip != ctx.ip:
            return self._reject("ip mismatch", action, record, ctx)
        if self.settings.csrf_check_user_agent and stored.bound_user_agent != ctx.user_agent:
            return self._reject("user agent mismatch", action, record, ctx)
        return True

    def token_stats(self, record: SessionRecord, now: float) -> dict[str, int]:
        """Counts for the tokens currently held by ``record``."""
        try:
            raw = self.store.get(session_key(record.session_id))
        except StoreUnavailable:
            raw = None
        tokens = SessionRecord.from_dict(raw).csrf_tokens if raw else record.csrf_tokens
        expired = sum(1 for t in tokens.values() if t.is_expired(now, self._token_lifetime))
        return {"total": len(tokens), "expired": expired, "active": len(tokens) - expired}

    def clear_all_tokens(self, record: SessionRecord) -> None:
        def clear(current: Any) -> tuple[Any, None]:
            if current is None:
                return UNCHANGED, None
            return replace(SessionRecord.from_dict(current), csrf_tokens={}).to_dict(), None

        try:
            self.store.update(session_key(record.session_id), clear, session_ttl(self.settings))
        except StoreUnavailable as err:
            logger.warning("Could not clear CSRF tokens: %s", err.message)

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------
    def embed_token(self, record: SessionRecord, action: str, ctx: RequestContext) -> str:
        token = self.issue_token(record, action, ctx)
        return '<input type="hidden" name="{}" value="{}">'.format(
            html.escape(self.token_name, quote=True),
            html.escape(token, quote=True),
        )

    def embed_meta_token(self, record: SessionRecord, action: str, ctx: RequestContext) -> str:
        token = self.issue_token(record, action, ctx)
        return f'<meta name="csrf-token" content="{html.escape(token, quote=True)}">'

    def token_for_ajax(self, record: SessionRecord, action: str, ctx: RequestContext) -> dict[str, str]:
        return {
            "token": self.issue_token(record, action, ctx),
            "name": self.token_name,
            "action": action,
        }

    def extract_token(
        self,
        headers: Mapping[str, str],
        fields: Mapping[str, Any] | None = None,
    ) -> str | None:
        """Find the submitted token in form/query fields or request headers."""
        if fields:
            value = fields.get(self.token_name)
            if isinstance(value, str) and value:
                return value
        header = headers.get(CSRF_HEADER)
        if header:
            return header
        if headers.get("x-requested-with"):
            match = _BEARER_PATTERN.match(headers.get("authorization", ""))
            if match:
                return match.group(1)
        return None

    # ------------------------------------------------------------------
    # Double submit cookie
    # ------------------------------------------------------------------
    def double_submit_token(self, action: str = DEFAULT_ACTION) -> DoubleSubmitCookie:
        """Mint a token that lives only in a client-readable cookie."""
        return DoubleSubmitCookie(
            token=generate_token(),
            cookie_name=cookie_name_for_action(action),
            max_age=self._token_lifetime,
            secure=self.settings.session_cookie_secure,
        )

    def validate_double_submit(
        self,
        action: str,
        cookies: Mapping[str, str],
        submitted: str | None,
        ctx: RequestContext | None = None,
    ) -> bool:
        cookie_value = cookies.get(cookie_name_for_action(action))
        ok = (
            bool(cookie_value)
            and is_token_shaped(submitted)
            and timing_safe_equals(cookie_value or "", submitted or "")
        )
        if not ok and ctx is not None:
            self._reject("double submit mismatch", action, None, ctx)
        return ok
