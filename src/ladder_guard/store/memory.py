"""In-process store for development, tests and single-worker deployments."""

from __future__ import annotations

from threading import Lock
from typing import Any

from ladder_guard.store.base import TTLStore


class MemoryStore(TTLStore):
    """Dictionary-backed store guarded by a single lock.

    Values are kept JSON-encoded so callers never share mutable state with
    the store.
    """

    backend_name = "memory"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        # key -> (encoded value, created, expires)
        self._entries: dict[str, tuple[str, float, float]] = {}
        self._lock = Lock()

    def _live(self, key: str, now: float) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        encoded, _created, expires = entry
        if now >= expires:
            self._entries.pop(key, None)
            return None
        return self.decode(encoded)

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._live(key, self.now())

    def put(self, key: str, value: Any, ttl: float) -> None:
        now = self.now()
        with self._lock:
            if ttl <= 0 or value is None:
                self._entries.pop(key, None)
                return
            self._entries[key] = (self.encode(value), now, now + ttl)

    def delete(self, key: str) -> bool:
        now = self.now()
        with self._lock:
            live = self._live(key, now) is not None
            self._entries.pop(key, None)
            return live

    def compare_and_swap(self, key: str, expected: Any | None, new: Any | None, ttl: float) -> bool:
        now = self.now()
        with self._lock:
            if self._live(key, now) != expected:
                return False
            if new is None or ttl <= 0:
                self._entries.pop(key, None)
            else:
                self._entries[key] = (self.encode(new), now, now + ttl)
            return True

    def sweep(self) -> int:
        now = self.now()
        with self._lock:
            expired = [key for key, (_, _, expires) in self._entries.items() if now >= expires]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
