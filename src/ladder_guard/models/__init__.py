# src/ladder_guard/models/__init__.py
"""Record types and SQLAlchemy models for the guard layer."""

from .records import (
    BlockRecord,
    BucketRecord,
    Identity,
    LockoutRecord,
    RateLimit,
    RateLimitInfo,
    SessionRecord,
    SessionState,
    TokenRecord,
    WindowRecord,
)
from .store_entry import StoreEntry

__all__ = [
    "BlockRecord",
    "BucketRecord",
    "Identity",
    "LockoutRecord",
    "RateLimit",
    "RateLimitInfo",
    "SessionRecord",
    "SessionState",
    "StoreEntry",
    "TokenRecord",
    "WindowRecord",
]
