# src/ladder_guard/main.py
"""Main entry point for the Ladder Inspection guard API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ladder_guard.api.middleware import RateLimitMiddleware
from ladder_guard.api.responses import setup_exception_handlers
from ladder_guard.api.v1 import auth_router, system_router
from ladder_guard.core.logging_config import setup_logging
from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.services import Guards, SecurityEventSink
from ladder_guard.store import TTLStore, get_store


def create_app(
    guard_settings: GuardSettings | None = None,
    *,
    store: TTLStore | None = None,
    sink: SecurityEventSink | None = None,
) -> FastAPI:
    """Build the application around one store and one set of guards.

    Tests pass their own settings, a store bound to a fake clock, and an
    in-memory event sink.
    """
    cfg = guard_settings if guard_settings is not None else default_settings
    guard_store = store if store is not None else get_store()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        setup_logging(cfg.log_level, cfg.log_json)
        yield
        close = getattr(guard_store, "close", None)
        if close is not None:
            close()

    app = FastAPI(
        title=cfg.app_name,
        description="Rate limiting, session integrity and CSRF protection",
        version=cfg.app_version,
        lifespan=lifespan,
    )
    app.state.guard_settings = cfg
    app.state.guards = Guards.build(guard_store, cfg, sink)
    # Requests read "now" from the store clock so TTLs and policy agree.
    app.state.clock = guard_store.now

    setup_exception_handlers(app)
    app.add_middleware(RateLimitMiddleware)

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(system_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ladder_guard.main:app", host="0.0.0.0", port=8000, reload=default_settings.debug)
