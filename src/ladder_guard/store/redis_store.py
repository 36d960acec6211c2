"""Redis-backed store using optimistic WATCH/MULTI transactions."""

from __future__ import annotations

import json
import logging
from typing import Any

import redis
from redis.exceptions import RedisError, WatchError

from ladder_guard.core.errors import StoreUnavailable
from ladder_guard.store.base import TTLStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "ladder_guard:"


class RedisStore(TTLStore):
    """Store envelopes in redis with native key expiry.

    The envelope keeps ``expires`` alongside redis' own TTL so reads agree
    with the injected clock even when redis has not evicted the key yet.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: redis.Redis | None = None,
        prefix: str = KEY_PREFIX,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if client is None:
            if redis_url is None:
                raise ValueError("redis_url or client is required")
            client = redis.from_url(redis_url)  # type: ignore[no-untyped-call]
        self._redis = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _envelope(self, value: Any, ttl: float) -> str:
        now = self.now()
        return self.encode({"data": value, "created": now, "expires": now + ttl})

    def _live_value(self, raw: bytes | str | None) -> Any | None:
        if raw is None:
            return None
        try:
            envelope = self.decode(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Discarding corrupt redis store entry")
            return None
        if not isinstance(envelope, dict) or self.now() >= float(envelope.get("expires", 0)):
            return None
        return envelope.get("data")

    @staticmethod
    def _ttl_ms(ttl: float) -> int:
        return max(1, int(ttl * 1000))

    def _discard(self, full_key: str, raw: bytes | str) -> None:
        """Delete ``full_key`` only while it still holds the expired ``raw`` payload."""
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(full_key)
                if pipe.get(full_key) != raw:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(full_key)
                pipe.execute()
            except WatchError:
                logger.debug("Expired entry was rewritten before removal")

    def get(self, key: str) -> Any | None:
        full_key = self._key(key)
        try:
            raw = self._redis.get(full_key)
            value = self._live_value(raw)
            if raw is not None and value is None:
                self._discard(full_key, raw)
            return value
        except RedisError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def put(self, key: str, value: Any, ttl: float) -> None:
        try:
            if ttl <= 0 or value is None:
                self._redis.delete(self._key(key))
            else:
                self._redis.set(self._key(key), self._envelope(value, ttl), px=self._ttl_ms(ttl))
        except RedisError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def delete(self, key: str) -> bool:
        try:
            raw = self._redis.get(self._key(key))
            self._redis.delete(self._key(key))
        except RedisError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err
        return self._live_value(raw) is not None

    def compare_and_swap(self, key: str, expected: Any | None, new: Any | None, ttl: float) -> bool:
        full_key = self._key(key)
        try:
            with self._redis.pipeline() as pipe:
                try:
                    pipe.watch(full_key)
                    if self._live_value(pipe.get(full_key)) != expected:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    if new is None or ttl <= 0:
                        pipe.delete(full_key)
                    else:
                        pipe.set(full_key, self._envelope(new, ttl), px=self._ttl_ms(ttl))
                    pipe.execute()
                    return True
                except WatchError:
                    return False
        except RedisError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def sweep(self) -> int:
        # Redis evicts expired keys natively.
        return 0

    def close(self) -> None:
        try:
            self._redis.close()
        except RedisError as err:  # pragma: no cover - shutdown path
            logger.warning("Error closing redis store: %s", err)
