# tests/conftest.py
from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ladder_guard.api.v1.dependencies import get_identity_provider_dep
from ladder_guard.core.context import RequestContext
from ladder_guard.core.settings import GuardSettings
from ladder_guard.main import create_app
from ladder_guard.models.records import Identity
from ladder_guard.services import Guards, MemoryEventSink, StaticIdentityProvider
from ladder_guard.store import MemoryStore

START_TIME = 1_700_000_000.0
TEST_PASSWORD = "correct horse battery staple"


class FakeClock:
    """Manually advanced clock shared by the store and the guards."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture()
def sink() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture()
def guard_settings() -> GuardSettings:
    """Settings pinned to the defaults regardless of the environment."""
    return GuardSettings(
        max_login_attempts=5,
        lockout_duration=900,
        session_timeout=3600,
        session_rotation_interval=1800,
        csrf_token_lifetime=3600,
        csrf_check_ip=False,
        csrf_check_user_agent=True,
        store_backend="memory",
        api_rate_limit_enabled=True,
        api_rate_limit_requests=100,
        api_rate_limit_window=3600,
    )


@pytest.fixture()
def guards(store: MemoryStore, guard_settings: GuardSettings, sink: MemoryEventSink) -> Guards:
    return Guards.build(store, guard_settings, sink)


def make_context(clock: FakeClock, **overrides: object) -> RequestContext:
    """Build a request context for a desktop browser at the clock's time."""
    values: dict[str, object] = {
        "ip": "203.0.113.7",
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64)",
        "accept_language": "en-GB,en;q=0.9",
        "accept_encoding": "gzip, deflate, br",
        "session_id": None,
        "now": clock(),
    }
    values.update(overrides)
    return RequestContext(**values)  # type: ignore[arg-type]


@pytest.fixture()
def ctx_factory(clock: FakeClock):
    def _factory(**overrides: object) -> RequestContext:
        return make_context(clock, **overrides)

    return _factory


@pytest.fixture()
def inspector() -> Identity:
    return Identity(
        user_id="u-1001",
        username="jsmith",
        display_name="Jo Smith",
        email="jsmith@example.org",
        groups=("inspectors",),
    )


@pytest.fixture()
def identity_provider(inspector: Identity) -> StaticIdentityProvider:
    provider = StaticIdentityProvider()
    provider.add_user(inspector, TEST_PASSWORD)
    return provider


@pytest.fixture()
def app(
    guard_settings: GuardSettings,
    store: MemoryStore,
    sink: MemoryEventSink,
    identity_provider: StaticIdentityProvider,
) -> Iterator[FastAPI]:
    application = create_app(guard_settings, store=store, sink=sink)
    application.dependency_overrides[get_identity_provider_dep] = lambda: identity_provider
    try:
        yield application
    finally:
        application.dependency_overrides.clear()


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    # https so the secure session cookie is sent back
    return TestClient(app, base_url="https://testserver")
