"""File-backed store: one self-describing JSON envelope per key."""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ladder_guard.core.errors import StoreUnavailable
from ladder_guard.store.base import TTLStore

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


class FileStore(TTLStore):
    """Persist ``{data, created, expires}`` envelopes under ``root``.

    Writers serialize on an exclusive ``flock`` of one of a fixed pool of lock
    files chosen by key hash, so compare-and-swap is atomic across worker
    processes sharing the directory and the directory stays bounded by the
    live entries.
    Files are replaced with ``os.replace`` so lock-free readers never observe
    a partial write.
    """

    backend_name = "file"

    def __init__(
        self, root: str | os.PathLike[str], *, lock_stripes: int = LOCK_STRIPES, **kwargs: Any
    ) -> None:
        super().__init__(**kwargs)
        self._root = Path(root)
        self._lock_dir = self._root / "locks"
        self._lock_stripes = max(1, lock_stripes)
        try:
            self._lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def _data_path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    def _lock_path(self, key: str) -> Path:
        # Keys sharing a stripe only serialize with each other.
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        stripe = int.from_bytes(digest[:4], "big") % self._lock_stripes
        return self._lock_dir / f"{stripe:03d}.lock"

    @contextlib.contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        try:
            with open(self._lock_path(key), "a+b") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err
        try:
            envelope = json.loads(content)
        except json.JSONDecodeError:
            logger.error("Discarding corrupt store entry %s", path.name)
            return None
        if not isinstance(envelope, dict) or "expires" not in envelope:
            logger.error("Discarding malformed store entry %s", path.name)
            return None
        return envelope

    def _write_envelope(self, path: Path, value: Any, ttl: float) -> None:
        now = self.now()
        envelope = {"data": value, "created": now, "expires": now + ttl}
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._root, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.encode(envelope))
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, path)
        except OSError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def _remove(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def _live_value(self, path: Path) -> Any | None:
        envelope = self._read_envelope(path)
        if envelope is None:
            return None
        if self.now() >= float(envelope["expires"]):
            return None
        return envelope.get("data")

    def get(self, key: str) -> Any | None:
        path = self._data_path(key)
        envelope = self._read_envelope(path)
        if envelope is None:
            return None
        if self.now() >= float(envelope["expires"]):
            with self._locked(key):
                # Re-check under the lock; a writer may have refreshed it.
                if self._live_value(path) is None:
                    self._remove(path)
            return None
        return envelope.get("data")

    def put(self, key: str, value: Any, ttl: float) -> None:
        path = self._data_path(key)
        with self._locked(key):
            if ttl <= 0 or value is None:
                self._remove(path)
            else:
                self._write_envelope(path, value, ttl)

    def delete(self, key: str) -> bool:
        path = self._data_path(key)
        with self._locked(key):
            live = self._live_value(path) is not None
            self._remove(path)
        return live

    def compare_and_swap(self, key: str, expected: Any | None, new: Any | None, ttl: float) -> bool:
        path = self._data_path(key)
        with self._locked(key):
            if self._live_value(path) != expected:
                return False
            if new is None or ttl <= 0:
                self._remove(path)
            else:
                self._write_envelope(path, new, ttl)
            return True

    def sweep(self) -> int:
        cleaned = 0
        try:
            candidates = list(self._root.glob("*.json"))
        except OSError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err
        for path in candidates:
            key = path.stem
            with self._locked(key):
                if path.exists() and self._live_value(path) is None:
                    self._remove(path)
                    cleaned += 1
        if cleaned:
            logger.debug("Swept %d expired entries from %s", cleaned, self._root)
        return cleaned
