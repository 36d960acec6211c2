"""HTTP contracts for guard rejections and the exception handlers that emit them."""

from __future__ import annotations

import logging
import math
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, Response

from ladder_guard.core.errors import (
    GuardError,
    IdentifierBlocked,
    InvalidOrExpiredCsrfToken,
    RateLimitExceeded,
    SessionInvalid,
    StoreUnavailable,
)
from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.models.records import RateLimitInfo
from ladder_guard.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Request state flag read by the rate limit middleware: the request never
# reached a valid session and must not be counted.
SESSION_REJECTED = "session_rejected"

CSRF_ERROR_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>Forbidden</title>
</head>
<body>
    <h1>403 Forbidden</h1>
    <p>CSRF token validation failed. Please refresh the page and try again.</p>
</body>
</html>
"""


def settings_for(request: Request) -> GuardSettings:
    return getattr(request.app.state, "guard_settings", None) or default_settings


def wants_json(request: Request) -> bool:
    """True for programmatic callers (XHR header or a JSON ``Accept``)."""
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    return "application/json" in request.headers.get("accept", "").lower()


def rate_limited_response(info: RateLimitInfo, now: float) -> JSONResponse:
    headers = RateLimiter.http_headers(info)
    headers["X-RateLimit-Remaining"] = "0"
    headers["Retry-After"] = str(max(0, int(math.ceil(info.reset_at - now))))
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Too many requests. Please try again later.",
            "code": RateLimitExceeded.error_code,
        },
        headers=headers,
    )


def csrf_rejected_response(request: Request) -> Response:
    if wants_json(request):
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "error": "CSRF token validation failed",
                "code": InvalidOrExpiredCsrfToken.error_code,
            },
        )
    return HTMLResponse(content=CSRF_ERROR_PAGE, status_code=status.HTTP_403_FORBIDDEN)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    clock = getattr(request.app.state, "clock", time.time)
    return rate_limited_response(exc.info, clock())


async def identifier_blocked_handler(request: Request, exc: IdentifierBlocked) -> Response:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.error_code, "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


async def csrf_error_handler(request: Request, exc: InvalidOrExpiredCsrfToken) -> Response:
    return csrf_rejected_response(request)


async def session_invalid_handler(request: Request, exc: SessionInvalid) -> Response:
    setattr(request.state, SESSION_REJECTED, True)
    response = JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.error_code, "reason": exc.reason.value},
    )
    response.delete_cookie(settings_for(request).session_cookie_name, path="/")
    return response


async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> Response:
    logger.error("Store unavailable on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "Service temporarily unavailable", "code": exc.error_code},
    )


async def guard_error_handler(request: Request, exc: GuardError) -> Response:
    logger.warning("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.error_code},
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the guard error handlers on ``app``."""
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IdentifierBlocked, identifier_blocked_handler)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidOrExpiredCsrfToken, csrf_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SessionInvalid, session_invalid_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)  # type: ignore[arg-type]
    app.add_exception_handler(GuardError, guard_error_handler)  # type: ignore[arg-type]
