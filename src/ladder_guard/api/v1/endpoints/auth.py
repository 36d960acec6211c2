# src/ladder_guard/api/v1/endpoints/auth.py
"""Authentication endpoints: CSRF token issuance, login and logout."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import ValidationError

from ladder_guard.api.v1.dependencies import (
    ContextDep,
    CurrentSessionDep,
    FreshSessionDep,
    GuardsDep,
    IdentityProviderDep,
    csrf_protected,
    submitted_fields,
)
from ladder_guard.core.errors import InvalidOrExpiredCsrfToken, RateLimitExceeded
from ladder_guard.models.records import SessionRecord
from ladder_guard.schemas.auth import CsrfTokenResponse, LoginRequest, SessionInfoResponse
from ladder_guard.services.csrf_guard import DEFAULT_ACTION
from ladder_guard.services.session_guard import LOGIN_PURPOSE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])

LOGOUT_ACTION = "logout"


async def read_login_request(request: Request) -> LoginRequest:
    """Accept credentials as a form post or a JSON body."""
    fields: dict[str, Any] = await submitted_fields(request)
    try:
        return LoginRequest.model_validate(fields)
    except ValidationError as err:
        raise HTTPException(
            status_code=422,
            detail=err.errors(include_url=False, include_context=False),
        ) from err


LoginRequestDep = Annotated[LoginRequest, Depends(read_login_request)]


@router.get("/csrf", response_model=CsrfTokenResponse)
def issue_csrf_token(
    guards: GuardsDep,
    ctx: ContextDep,
    record: FreshSessionDep,
    action: Annotated[str, Query(min_length=1, max_length=64)] = DEFAULT_ACTION,
) -> dict[str, str]:
    """Issue a one-time token for ``action`` bound to the caller's session."""
    return guards.csrf.token_for_ajax(record, action, ctx.with_session(record.session_id))


@router.post("/login", response_model=SessionInfoResponse)
def login(
    response: Response,
    guards: GuardsDep,
    ctx: ContextDep,
    provider: IdentityProviderDep,
    record: CurrentSessionDep,
    credentials: LoginRequestDep,
    request: Request,
) -> dict[str, Any]:
    """Authenticate the caller and bind the identity to a rotated session.

    Order matters: the session is validated first (dependency), then the
    CSRF token is consumed, then the per-IP login budget and the per-user
    lockout are checked before credentials are verified.
    """
    session_ctx = ctx.with_session(record.session_id)
    token = credentials.csrf_token or guards.csrf.extract_token(request.headers)
    if not guards.csrf.validate_token(record, token, LOGIN_PURPOSE, session_ctx):
        raise InvalidOrExpiredCsrfToken(LOGIN_PURPOSE)

    limiter = guards.rate_limiter
    if not limiter.check_and_record(LOGIN_PURPOSE, ctx.ip, now=ctx.now):
        raise RateLimitExceeded(
            LOGIN_PURPOSE, limiter.get_remaining_requests(LOGIN_PURPOSE, ctx.ip, now=ctx.now)
        )

    guards.sessions.ensure_not_locked(credentials.username, session_ctx)

    identity = provider.authenticate(credentials.username, credentials.password)
    if identity is None:
        guards.sessions.record_failed_login(credentials.username, session_ctx)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    authenticated = guards.sessions.login(record, identity, session_ctx)
    response.set_cookie(**guards.sessions.cookie_params(authenticated))
    return guards.sessions.session_info(authenticated, session_ctx)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    guards: GuardsDep,
    ctx: ContextDep,
    record: Annotated[SessionRecord, Depends(csrf_protected(LOGOUT_ACTION))],
) -> Response:
    """Destroy the session and clear its cookie."""
    guards.sessions.logout(record, ctx.with_session(record.session_id))
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(guards.settings.session_cookie_name, path="/")
    return response


@router.get("/session", response_model=SessionInfoResponse)
def current_session(guards: GuardsDep, ctx: ContextDep, record: CurrentSessionDep) -> dict[str, Any]:
    """Describe the authenticated session."""
    if not guards.sessions.is_authenticated(record):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return guards.sessions.session_info(record, ctx)
