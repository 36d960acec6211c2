"""Tests for key derivation, token helpers, request context and store selection."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from ladder_guard.core.context import RequestContext
from ladder_guard.core.security import (
    cookie_name_for_action,
    fingerprint,
    generate_session_id,
    generate_token,
    hash_key,
    is_token_shaped,
    timing_safe_equals,
)
from ladder_guard.core.settings import GuardSettings
from ladder_guard.services.identity import get_identity_provider, set_identity_provider
from ladder_guard.store import FileStore, MemoryStore, build_store, get_store, set_store


def test_hash_key_is_stable_and_namespaced() -> None:
    key = hash_key("login", "203.0.113.7")
    assert key == hash_key("login", "203.0.113.7")
    assert key.startswith("rate_limit_")
    assert len(key) == len("rate_limit_") + 64
    assert key != hash_key("login_bucket", "203.0.113.7")


def test_tokens_are_unique_hex() -> None:
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(is_token_shaped(token) for token in tokens)
    assert generate_session_id() != generate_session_id()


def test_timing_safe_equals() -> None:
    assert timing_safe_equals("abc", "abc")
    assert not timing_safe_equals("abc", "abd")
    assert not timing_safe_equals("abc", "ab")


def test_cookie_name_for_action() -> None:
    assert cookie_name_for_action("upload").startswith("csrf_")
    assert cookie_name_for_action("upload") != cookie_name_for_action("download")


def test_context_fingerprint_ignores_ip() -> None:
    home = RequestContext(ip="10.0.0.1", user_agent="UA", accept_language="en", accept_encoding="gzip", now=1.0)
    roaming = home.with_session("abc")
    assert roaming.session_id == "abc"
    assert roaming.fingerprint == home.fingerprint == fingerprint("UA", "en", "gzip")


def test_settings_reject_unknown_backend() -> None:
    with pytest.raises(ValidationError):
        GuardSettings(store_backend="cassandra")


def test_build_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(build_store(GuardSettings(store_backend="memory")), MemoryStore)
    file_store = build_store(GuardSettings(store_backend="file", cache_root=str(tmp_path / "limits")))
    assert isinstance(file_store, FileStore)
    assert (tmp_path / "limits").is_dir()


def test_process_wide_store_can_be_replaced(clock) -> None:
    replacement = MemoryStore(clock=clock)
    set_store(replacement)
    try:
        assert get_store() is replacement
    finally:
        set_store(None)


def test_identity_provider_seam(inspector, identity_provider) -> None:
    original = get_identity_provider()
    set_identity_provider(identity_provider)
    try:
        assert get_identity_provider().authenticate("jsmith", "correct horse battery staple") == inspector
        assert get_identity_provider().authenticate("jsmith", "wrong") is None
        assert get_identity_provider().authenticate("nobody", "") is None
    finally:
        set_identity_provider(original)
