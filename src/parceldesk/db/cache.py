"""
ParcelDesk - Result cache.

Time-boxed memoization for adapter reads. Entries expire lazily on read;
any write invalidates everything.
"""

import copy
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot build a cache key from {type(value).__name__}")


def make_key(operation: str, arguments: Any = None) -> str:
    """Deterministic key for (operation, arguments)."""
    return json.dumps([operation, arguments], sort_keys=True, default=_json_default, separators=(",", ":"))


class ResultCache:
    """
    Mutex-guarded TTL map.

    Values are deep-copied in and out so callers can't mutate cached state.
    `clock` is injectable for tests (defaults to time.monotonic).
    """

    def __init__(self, default_ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        """Bumped by every invalidate_all()."""
        return self._generation

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISSING
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return MISSING
            return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl_seconds: float | None = None, generation: int | None = None) -> bool:
        """
        Store a value. Returns False if nothing was stored.

        Pass the `generation` observed before loading the value: if a write
        invalidated the cache in the meantime, the (possibly stale) value
        is dropped instead of stored.
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return False
        entry = CacheEntry(key=key, value=copy.deepcopy(value), expires_at=self._clock() + ttl)
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[key] = entry
        return True

    def invalidate_all(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self._generation += 1
        if dropped:
            logger.debug(f"Cache invalidated ({dropped} entries)")

    def stats(self) -> dict[str, Any]:
        """Live entries only; expired ones are pruned here too."""
        with self._lock:
            now = self._clock()
            for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
                del self._entries[key]
            keys = list(self._entries)
        return {"size": len(keys), "keys": keys}

    def __len__(self) -> int:
        return self.stats()["size"]
