"""Abstract key-value store with expiry and compare-and-swap."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Final, TypeVar

from ladder_guard.core.errors import StoreContention

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES: Final[int] = 16


class _Unchanged:
    """Marker telling :meth:`TTLStore.update` to skip the write."""

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "UNCHANGED"


UNCHANGED: Final = _Unchanged()

Mutation = Callable[[Any], tuple[Any, T]]


class TTLStore(ABC):
    """Map string keys to JSON-compatible values that expire.

    Implementations must make :meth:`compare_and_swap` atomic against every
    other writer of the same key, including writers in other processes.
    Expired entries are treated as absent on read; :meth:`sweep` is only a
    storage-bounding convenience.
    """

    backend_name: str = "abstract"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self._clock = clock
        self._max_retries = max_retries

    def now(self) -> float:
        return self._clock()

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the live value for ``key`` or None; expired entries are removed."""

    @abstractmethod
    def put(self, key: str, value: Any, ttl: float) -> None:
        """Unconditionally store ``value`` for ``ttl`` seconds (``ttl <= 0`` deletes)."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; return True if a live entry was removed."""

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Any | None, new: Any | None, ttl: float) -> bool:
        """Replace ``expected`` with ``new`` atomically.

        ``expected=None`` matches an absent or expired key and ``new=None``
        deletes the key. Returns False when another writer got there first.
        """

    @abstractmethod
    def sweep(self) -> int:
        """Purge expired entries and return how many were removed."""

    def update(self, key: str, mutate: Mutation[T], ttl: float) -> T:
        """Apply ``mutate`` as an atomic read-modify-write, retrying on contention.

        ``mutate`` receives the current value (or None) and returns
        ``(new_value, result)``. Returning :data:`UNCHANGED` as the new value
        skips the write entirely. The function may run several times and
        must not have side effects.
        """
        for attempt in range(1, self._max_retries + 1):
            current = self.get(key)
            new, result = mutate(current)
            if new is UNCHANGED:
                return result
            if self.compare_and_swap(key, current, new, ttl):
                return result
            logger.debug("CAS conflict on %s (attempt %d)", key, attempt)
        logger.error("CAS retries exhausted for %s after %d attempts", key, self._max_retries)
        raise StoreContention(self.backend_name, "compare-and-swap retries exhausted")

    @staticmethod
    def encode(value: Any) -> str:
        return json.dumps(value, separators=(",", ":"), sort_keys=True)

    @staticmethod
    def decode(raw: str | bytes) -> Any:
        return json.loads(raw)
