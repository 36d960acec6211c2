"""Tagged record types persisted in the key-value store.

Each record serializes to a plain JSON-compatible dict so any store backend
can hold it; ``from_dict`` is the only way back in.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class RateLimit:
    """A request budget: ``requests`` per ``window`` seconds."""

    requests: int
    window: int


@dataclass(frozen=True)
class RateLimitInfo:
    """Read-only snapshot used to build ``X-RateLimit-*`` headers."""

    remaining: int
    reset_at: float
    total: int
    window: int


@dataclass(frozen=True)
class WindowRecord:
    """Request timestamps inside the trailing window, oldest first."""

    requests: tuple[float, ...] = ()
    last_request: float | None = None

    def purged(self, now: float, window: float) -> WindowRecord:
        """Drop timestamps at or before ``now - window``."""
        start = now - window
        kept = tuple(ts for ts in self.requests if ts > start)
        return replace(self, requests=kept)

    def count(self, now: float, window: float) -> int:
        return len(self.purged(now, window).requests)

    def appended(self, now: float, window: float) -> WindowRecord:
        return WindowRecord(
            requests=self.purged(now, window).requests + (now,),
            last_request=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"requests": list(self.requests), "last_request": self.last_request}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> WindowRecord:
        if not data:
            return cls()
        return cls(
            requests=tuple(sorted(float(ts) for ts in data.get("requests", []))),
            last_request=data.get("last_request"),
        )


@dataclass(frozen=True)
class BucketRecord:
    """Token bucket state. ``0 <= tokens <= capacity`` always holds."""

    tokens: float
    last_refill: float

    def refilled(self, now: float, capacity: float, refill_rate: float) -> BucketRecord:
        elapsed = max(0.0, now - self.last_refill)
        tokens = min(float(capacity), self.tokens + elapsed * refill_rate)
        return BucketRecord(tokens=max(0.0, tokens), last_refill=max(now, self.last_refill))

    def withdrawn(self, cost: float) -> BucketRecord:
        return replace(self, tokens=max(0.0, self.tokens - cost))

    def to_dict(self) -> dict[str, Any]:
        return {"tokens": self.tokens, "last_refill": self.last_refill}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BucketRecord:
        return cls(tokens=float(data["tokens"]), last_refill=float(data["last_refill"]))


@dataclass(frozen=True)
class BlockRecord:
    """Explicit deny-list entry; meaningful only while ``now < blocked_until``."""

    identifier: str
    blocked_until: float
    reason: str = ""
    blocked_at: float = 0.0

    def is_active(self, now: float) -> bool:
        return now < self.blocked_until

    def remaining(self, now: float) -> float:
        return max(0.0, self.blocked_until - now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockRecord:
        return cls(
            identifier=str(data.get("identifier", "")),
            blocked_until=float(data["blocked_until"]),
            reason=str(data.get("reason", "")),
            blocked_at=float(data.get("blocked_at", 0.0)),
        )


@dataclass(frozen=True)
class LockoutRecord:
    """Failed attempt counter; ``locked_until`` is set only at the threshold."""

    identifier: str
    attempt_count: int = 0
    locked_until: float | None = None
    last_attempt: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockoutRecord:
        locked_until = data.get("locked_until")
        return cls(
            identifier=str(data.get("identifier", "")),
            attempt_count=int(data.get("attempt_count", 0)),
            locked_until=float(locked_until) if locked_until is not None else None,
            last_attempt=data.get("last_attempt"),
        )


@dataclass(frozen=True)
class TokenRecord:
    """One-time CSRF token bound to an action and, optionally, the client."""

    value: str
    created_at: float
    action: str
    bound_ip: str = ""
    bound_user_agent: str = ""

    def is_expired(self, now: float, lifetime: float) -> bool:
        return now - self.created_at > lifetime

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenRecord:
        return cls(
            value=str(data["value"]),
            created_at=float(data["created_at"]),
            action=str(data["action"]),
            bound_ip=str(data.get("bound_ip", "")),
            bound_user_agent=str(data.get("bound_user_agent", "")),
        )


@dataclass(frozen=True)
class Identity:
    """Resolved user identity handed over by the directory lookup."""

    user_id: str
    username: str
    display_name: str = ""
    email: str = ""
    groups: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["groups"] = list(self.groups)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Identity:
        return cls(
            user_id=str(data["user_id"]),
            username=str(data["username"]),
            display_name=str(data.get("display_name", "")),
            email=str(data.get("email", "")),
            groups=tuple(data.get("groups", ())),
        )


class SessionState(str, Enum):
    """Lifecycle of a session record."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    TIMED_OUT = "timed_out"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    LOGGED_OUT = "logged_out"

    @property
    def is_terminal(self) -> bool:
        return self in {
            SessionState.TIMED_OUT,
            SessionState.FINGERPRINT_MISMATCH,
            SessionState.LOGGED_OUT,
        }


@dataclass(frozen=True)
class SessionRecord:
    """Server-side session state keyed by the transport session identifier."""

    session_id: str
    created_at: float
    last_activity: float
    state: SessionState = SessionState.UNINITIALIZED
    fingerprint: str | None = None
    identity: Identity | None = None
    login_time: float | None = None
    csrf_tokens: dict[str, TokenRecord] = field(default_factory=dict)

    @property
    def user_id(self) -> str | None:
        return self.identity.user_id if self.identity else None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None and self.state is SessionState.ACTIVE

    def has_group(self, group: str) -> bool:
        return self.identity is not None and group in self.identity.groups

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "state": self.state.value,
            "fingerprint": self.fingerprint,
            "identity": self.identity.to_dict() if self.identity else None,
            "login_time": self.login_time,
            "csrf_tokens": {
                action: token.to_dict() for action, token in self.csrf_tokens.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        identity = data.get("identity")
        return cls(
            session_id=str(data["session_id"]),
            created_at=float(data["created_at"]),
            last_activity=float(data["last_activity"]),
            state=SessionState(data.get("state", SessionState.UNINITIALIZED.value)),
            fingerprint=data.get("fingerprint"),
            identity=Identity.from_dict(identity) if identity else None,
            login_time=data.get("login_time"),
            csrf_tokens={
                action: TokenRecord.from_dict(token)
                for action, token in (data.get("csrf_tokens") or {}).items()
            },
        )
