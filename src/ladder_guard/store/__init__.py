# src/ladder_guard/store/__init__.py
"""Key-value stores with expiry and compare-and-swap."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings

from .base import UNCHANGED, TTLStore
from .file_store import FileStore
from .memory import MemoryStore

logger = logging.getLogger(__name__)


def build_store(
    guard_settings: GuardSettings | None = None,
    *,
    clock: Callable[[], float] = time.time,
) -> TTLStore:
    """Instantiate the backend named by ``store_backend``."""
    cfg = guard_settings if guard_settings is not None else default_settings
    common = {"clock": clock, "max_retries": cfg.cas_max_retries}

    if cfg.store_backend == "file":
        store: TTLStore = FileStore(cfg.cache_root, **common)
    elif cfg.store_backend == "redis":
        from .redis_store import RedisStore

        store = RedisStore(cfg.redis_url, **common)
    elif cfg.store_backend == "sql":
        from ladder_guard.db.session import create_tables, make_engine, make_session_factory

        from .sql_store import SqlStore

        engine = make_engine(cfg.database_url, echo=cfg.sql_debug)
        create_tables(engine)
        store = SqlStore(make_session_factory(engine), **common)
    else:
        store = MemoryStore(**common)

    logger.info("Using %s store backend", store.backend_name)
    return store


_STORE: TTLStore | None = None


def get_store() -> TTLStore:
    """Return the process-wide store built from the global settings."""
    global _STORE
    if _STORE is None:
        _STORE = build_store()
    return _STORE


def set_store(store: TTLStore | None) -> None:
    """Replace the process-wide store (tests and application startup)."""
    global _STORE
    _STORE = store


__all__ = [
    "UNCHANGED",
    "FileStore",
    "MemoryStore",
    "TTLStore",
    "build_store",
    "get_store",
    "set_store",
]
