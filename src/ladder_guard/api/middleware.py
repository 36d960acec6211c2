"""Rate limiting middleware for the API surface."""

from __future__ import annotations

import logging
import time

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ladder_guard.api.responses import SESSION_REJECTED, rate_limited_response, settings_for
from ladder_guard.core.context import client_ip
from ladder_guard.core.errors import IdentifierBlocked
from ladder_guard.services import Guards

logger = logging.getLogger(__name__)

API_PURPOSE = "api"

# Health checks must keep working while a client is throttled.
SKIP_PATHS = {"/health"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply the ``api`` fixed-window limit per client IP.

    The window is checked before routing but the request is only counted
    once it has passed session validation, so a dead session never spends
    budget. Every response carries the ``X-RateLimit-*`` headers; rejected
    requests get a 429 before reaching the router.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cfg = settings_for(request)
        if not cfg.api_rate_limit_enabled or request.url.path in SKIP_PATHS:
            return await call_next(request)

        guards: Guards = request.app.state.guards
        limiter = guards.rate_limiter
        now = getattr(request.app.state, "clock", time.time)()
        ip = client_ip(request)
        limit, window = cfg.api_rate_limit_requests, cfg.api_rate_limit_window

        block = await run_in_threadpool(limiter.is_blocked, API_PURPOSE, ip, now=now)
        if block is not None:
            blocked = IdentifierBlocked(block, now)
            return JSONResponse(
                status_code=blocked.status_code,
                content={"error": blocked.message, "code": blocked.error_code},
                headers={"Retry-After": str(blocked.retry_after)},
            )

        allowed = await run_in_threadpool(limiter.check_limit, API_PURPOSE, ip, limit, window, now=now)
        if not allowed:
            limiter.report_rejected("fixed_window", API_PURPOSE, ip, now)
            info = await run_in_threadpool(
                limiter.get_remaining_requests, API_PURPOSE, ip, limit, window, now=now
            )
            return rate_limited_response(info, now)

        response = await call_next(request)
        if not getattr(request.state, SESSION_REJECTED, False):
            await run_in_threadpool(limiter.record_attempt, API_PURPOSE, ip, window, now=now)
        info = await run_in_threadpool(
            limiter.get_remaining_requests, API_PURPOSE, ip, limit, window, now=now
        )
        # Headers set by a stricter, endpoint-specific limit take precedence.
        for name, value in limiter.http_headers(info).items():
            response.headers.setdefault(name, value)
        return response
