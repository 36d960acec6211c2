"""Tests for the session lifecycle guard."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from ladder_guard.core.errors import (
    AccountLocked,
    SessionInvalid,
    SessionInvalidReason,
    StoreUnavailable,
)
from ladder_guard.core.security import session_key
from ladder_guard.models.records import Identity, SessionState
from ladder_guard.services import Guards, LockoutService, MemoryEventSink, SecurityEventType, SessionGuard
from ladder_guard.store import TTLStore


@pytest.fixture()
def sessions(guards: Guards) -> SessionGuard:
    return guards.sessions


def test_start_creates_uninitialized_record(sessions: SessionGuard, store, ctx_factory) -> None:
    record = sessions.start(ctx_factory())
    assert record.state is SessionState.UNINITIALIZED
    assert record.identity is None
    assert store.get(session_key(record.session_id)) is not None


def test_unknown_session_id_is_not_adopted(sessions: SessionGuard, ctx_factory) -> None:
    record = sessions.start(ctx_factory(session_id="attacker-chosen"))
    assert record.session_id != "attacker-chosen"


def test_first_validate_binds_fingerprint_and_activates(sessions: SessionGuard, ctx_factory) -> None:
    ctx = ctx_factory()
    record = sessions.validate(sessions.start(ctx), ctx)
    assert record.state is SessionState.ACTIVE
    assert record.fingerprint == ctx.fingerprint


def test_resume_loads_existing_session(sessions: SessionGuard, ctx_factory, clock) -> None:
    first = sessions.resume(ctx_factory())
    clock.advance(30)
    again = sessions.resume(ctx_factory(session_id=first.session_id))
    assert again.session_id == first.session_id
    assert again.last_activity == clock()


def test_idle_timeout(sessions: SessionGuard, sink: MemoryEventSink, ctx_factory, clock, store) -> None:
    record = sessions.resume(ctx_factory())
    clock.advance(3601)
    with pytest.raises(SessionInvalid) as exc_info:
        sessions.resume(ctx_factory(session_id=record.session_id))
    assert exc_info.value.reason is SessionInvalidReason.TIMEOUT
    assert store.get(session_key(record.session_id)) is None

    invalidated = sink.of_type(SecurityEventType.SESSION_INVALIDATED)
    assert invalidated[-1].details == {"reason": "timeout"}


def test_activity_at_exact_timeout_is_allowed(sessions: SessionGuard, ctx_factory, clock) -> None:
    record = sessions.resume(ctx_factory())
    clock.advance(3600)
    # Still alive, though old enough to be rotated.
    assert sessions.resume(ctx_factory(session_id=record.session_id)).state is SessionState.ACTIVE


def test_fingerprint_mismatch_destroys_session(sessions: SessionGuard, ctx_factory, store) -> None:
    record = sessions.resume(ctx_factory())
    with pytest.raises(SessionInvalid) as exc_info:
        sessions.resume(ctx_factory(session_id=record.session_id, user_agent="curl/8.5"))
    assert exc_info.value.reason is SessionInvalidReason.FINGERPRINT_MISMATCH
    assert store.get(session_key(record.session_id)) is None


def test_new_session_after_fingerprint_mismatch(sessions: SessionGuard, ctx_factory) -> None:
    record = sessions.resume(ctx_factory())
    hijacker = ctx_factory(session_id=record.session_id, accept_language="de-DE")
    with pytest.raises(SessionInvalid):
        sessions.resume(hijacker)

    fresh = sessions.start(hijacker)
    assert fresh.session_id != record.session_id
    assert fresh.state is SessionState.UNINITIALIZED


def test_ip_change_keeps_session(sessions: SessionGuard, ctx_factory) -> None:
    record = sessions.resume(ctx_factory())
    moved = sessions.resume(ctx_factory(session_id=record.session_id, ip="192.0.2.44"))
    assert moved.session_id == record.session_id


def test_terminal_record_is_rejected(sessions: SessionGuard, ctx_factory) -> None:
    record = sessions.resume(ctx_factory())
    dead = replace(record, state=SessionState.LOGGED_OUT)
    with pytest.raises(SessionInvalid) as exc_info:
        sessions.validate(dead, ctx_factory(session_id=record.session_id))
    assert exc_info.value.reason is SessionInvalidReason.LOGGED_OUT


def test_rotation_after_interval(sessions: SessionGuard, sink: MemoryEventSink, ctx_factory, clock, store) -> None:
    record = sessions.resume(ctx_factory())
    clock.advance(1801)
    rotated = sessions.resume(ctx_factory(session_id=record.session_id))

    assert rotated.session_id != record.session_id
    assert rotated.created_at == clock()
    assert store.get(session_key(record.session_id)) is None
    assert store.get(session_key(rotated.session_id)) is not None
    assert len(sink.of_type(SecurityEventType.SESSION_ROTATED)) == 1


def test_rotation_keeps_csrf_tokens(guards: Guards, ctx_factory, clock) -> None:
    ctx = ctx_factory()
    record = guards.sessions.resume(ctx)
    token = guards.csrf.issue_token(record, "save_inspection", ctx.with_session(record.session_id))
    clock.advance(1801)
    rotated = guards.sessions.resume(ctx_factory(session_id=record.session_id))
    assert rotated.session_id != record.session_id
    assert guards.csrf.validate_token(
        rotated, token, "save_inspection", ctx_factory(session_id=rotated.session_id)
    )


def test_login_rotates_and_binds_identity(
    sessions: SessionGuard, inspector: Identity, sink: MemoryEventSink, ctx_factory, clock
) -> None:
    ctx = ctx_factory()
    anonymous = sessions.resume(ctx)
    authenticated = sessions.login(anonymous, inspector, ctx.with_session(anonymous.session_id))

    assert authenticated.session_id != anonymous.session_id
    assert authenticated.identity == inspector
    assert authenticated.login_time == clock()
    assert authenticated.state is SessionState.ACTIVE
    assert authenticated.fingerprint == ctx.fingerprint
    assert sessions.is_authenticated(authenticated)
    assert authenticated.has_group("inspectors")
    assert not authenticated.has_group("admins")
    assert not anonymous.has_group("inspectors")
    assert sink.of_type(SecurityEventType.LOGIN_SUCCESS)[0].identifier == "jsmith"


def test_login_resets_failed_attempts(sessions: SessionGuard, inspector: Identity, ctx_factory) -> None:
    ctx = ctx_factory()
    for _ in range(3):
        sessions.record_failed_login("jsmith", ctx)
    assert sessions.lockout.attempts("login", "jsmith") == 3

    record = sessions.resume(ctx)
    sessions.login(record, inspector, ctx.with_session(record.session_id))
    assert sessions.lockout.attempts("login", "jsmith") == 0


def test_lockout_after_failed_logins(sessions: SessionGuard, sink: MemoryEventSink, ctx_factory, clock) -> None:
    ctx = ctx_factory()
    for _ in range(5):
        sessions.record_failed_login("jsmith", ctx)

    assert sessions.is_locked("jsmith", ctx)
    assert sessions.get_lockout_remaining("jsmith", ctx) == 900
    with pytest.raises(AccountLocked) as exc_info:
        sessions.ensure_not_locked("jsmith", ctx)
    assert exc_info.value.retry_after == 900
    assert len(sink.of_type(SecurityEventType.LOGIN_FAILED)) == 5

    clock.advance(900)
    later = ctx_factory()
    assert not sessions.is_locked("jsmith", later)
    sessions.ensure_not_locked("jsmith", later)


def test_logout_destroys_record(sessions: SessionGuard, inspector: Identity, ctx_factory, store) -> None:
    ctx = ctx_factory()
    record = sessions.login(sessions.resume(ctx), inspector, ctx)
    assert sessions.logout(record, ctx) is True
    assert store.get(session_key(record.session_id)) is None
    fresh = sessions.resume(ctx_factory(session_id=record.session_id))
    assert fresh.session_id != record.session_id
    assert fresh.identity is None


def test_session_info(sessions: SessionGuard, inspector: Identity, ctx_factory, clock) -> None:
    ctx = ctx_factory()
    anonymous = sessions.resume(ctx)
    assert sessions.session_info(anonymous, ctx) == {}

    record = sessions.login(anonymous, inspector, ctx)
    clock.advance(600)
    info = sessions.session_info(record, ctx_factory())
    assert info["username"] == "jsmith"
    assert info["groups"] == ["inspectors"]
    assert info["session_timeout"] == 3600
    assert info["time_remaining"] == 3000


def test_cookie_params(sessions: SessionGuard, ctx_factory) -> None:
    record = sessions.resume(ctx_factory())
    params = sessions.cookie_params(record)
    assert params["value"] == record.session_id
    assert params["httponly"] is True
    assert params["secure"] is True
    assert params["samesite"] == "strict"


def test_store_outage_fails_closed(guards: Guards, clock, ctx_factory) -> None:
    broken = MagicMock(spec=TTLStore)
    broken.now.side_effect = clock
    broken.get.side_effect = StoreUnavailable("redis", "timeout")
    sessions = SessionGuard(broken, LockoutService(guards.rate_limiter), guards.settings, MemoryEventSink())

    with pytest.raises(SessionInvalid) as exc_info:
        sessions.start(ctx_factory(session_id="abc"))
    assert exc_info.value.reason is SessionInvalidReason.STORE_UNAVAILABLE
