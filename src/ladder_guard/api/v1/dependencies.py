"""Shared API dependencies: request context, guards and the current session."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Annotated, Any

from fastapi import Depends, Request, Response
from starlette.concurrency import run_in_threadpool

from ladder_guard.api.responses import settings_for
from ladder_guard.core.context import Clock, RequestContext
from ladder_guard.core.errors import InvalidOrExpiredCsrfToken, SessionInvalid, SessionInvalidReason
from ladder_guard.core.settings import GuardSettings
from ladder_guard.models.records import SessionRecord
from ladder_guard.services import Guards
from ladder_guard.services.csrf_guard import SAFE_METHODS
from ladder_guard.services.identity import IdentityProvider, get_identity_provider

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def get_guards(request: Request) -> Guards:
    return request.app.state.guards


def get_settings_dep(request: Request) -> GuardSettings:
    return settings_for(request)


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", time.time)


def get_identity_provider_dep() -> IdentityProvider:
    return get_identity_provider()


GuardsDep = Annotated[Guards, Depends(get_guards)]
SettingsDep = Annotated[GuardSettings, Depends(get_settings_dep)]
ClockDep = Annotated[Clock, Depends(get_clock)]
IdentityProviderDep = Annotated[IdentityProvider, Depends(get_identity_provider_dep)]


def get_request_context(request: Request, cfg: SettingsDep, clock: ClockDep) -> RequestContext:
    """Snapshot the client signals and the current time for this request."""
    return RequestContext.from_connection(
        request,
        session_cookie=cfg.session_cookie_name,
        clock=clock,
    )


ContextDep = Annotated[RequestContext, Depends(get_request_context)]


def _bind_cookie(response: Response, guards: Guards, record: SessionRecord, ctx: RequestContext) -> None:
    if record.session_id != ctx.session_id:
        response.set_cookie(**guards.sessions.cookie_params(record))


def get_current_session(response: Response, guards: GuardsDep, ctx: ContextDep) -> SessionRecord:
    """Resume and validate the caller's session.

    Raises:
        SessionInvalid: If the session timed out, changed fingerprint, or the
            store cannot be read.
    """
    record = guards.sessions.resume(ctx)
    _bind_cookie(response, guards, record, ctx)
    return record


def get_session_or_fresh(response: Response, guards: GuardsDep, ctx: ContextDep) -> SessionRecord:
    """Like :func:`get_current_session` but replace a dead session with a new one."""
    try:
        record = guards.sessions.resume(ctx)
    except SessionInvalid as err:
        if err.reason is SessionInvalidReason.STORE_UNAVAILABLE:
            raise
        record = guards.sessions.resume(ctx.with_session(None))
    _bind_cookie(response, guards, record, ctx)
    return record


CurrentSessionDep = Annotated[SessionRecord, Depends(get_current_session)]
FreshSessionDep = Annotated[SessionRecord, Depends(get_session_or_fresh)]


async def submitted_fields(request: Request) -> dict[str, Any]:
    """Collect query, form and JSON body fields that may carry a CSRF token."""
    fields: dict[str, Any] = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        fields.update({key: value for key, value in form.items() if isinstance(value, str)})
    elif content_type.startswith("application/json"):
        body = await request.body()
        if body:
            try:
                payload = await request.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                fields.update(payload)
    return fields


def csrf_protected(action: str) -> Callable[..., Awaitable[SessionRecord]]:
    """Build a dependency that enforces a one-time CSRF token for ``action``.

    Safe methods pass through untouched.
    """

    async def dependency(
        request: Request,
        guards: GuardsDep,
        ctx: ContextDep,
        record: CurrentSessionDep,
    ) -> SessionRecord:
        if request.method.upper() in SAFE_METHODS:
            return record
        token = guards.csrf.extract_token(request.headers, await submitted_fields(request))
        session_ctx = ctx.with_session(record.session_id)
        if not await run_in_threadpool(guards.csrf.validate_token, record, token, action, session_ctx):
            raise InvalidOrExpiredCsrfToken(action)
        return record

    return dependency
