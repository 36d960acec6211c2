"""System and transparency endpoints."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter

from ladder_guard.api.middleware import API_PURPOSE
from ladder_guard.api.v1.dependencies import ContextDep, GuardsDep

router = APIRouter(prefix="/system", tags=["system", "transparency"])


@router.get("/config")
def get_public_config(guards: GuardsDep) -> dict[str, Any]:
    """Return the non-secret guard policy.

    Store locations and connection strings are never included.
    """
    cfg = guards.settings
    return {
        "app": {
            "name": cfg.app_name,
            "version": cfg.app_version,
        },
        "guard": cfg.public_config,
        "rate_limits": {
            purpose: asdict(limit) for purpose, limit in guards.rate_limiter.all_limits().items()
        },
        "api_rate_limit": {
            "enabled": cfg.api_rate_limit_enabled,
            "requests": cfg.api_rate_limit_requests,
            "window": cfg.api_rate_limit_window,
        },
    }


@router.get("/rate-limit")
def get_rate_limit_stats(guards: GuardsDep, ctx: ContextDep) -> dict[str, Any]:
    """Report the caller's own API budget and block status."""
    cfg = guards.settings
    limiter = guards.rate_limiter
    stats = limiter.get_stats(API_PURPOSE, ctx.ip, now=ctx.now)
    # The middleware enforces the configured API limit, not the built-in default.
    stats["limits"] = {"requests": cfg.api_rate_limit_requests, "window": cfg.api_rate_limit_window}
    stats["remaining"] = asdict(
        limiter.get_remaining_requests(
            API_PURPOSE,
            ctx.ip,
            cfg.api_rate_limit_requests,
            cfg.api_rate_limit_window,
            now=ctx.now,
        )
    )
    stats.pop("identifier", None)
    return stats
