from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple


class MemoryCache:
    """In-process TTL cache with the same surface as ``RedisCache``.

    Used when Redis is not configured in development and by unit tests.
    Entries expire lazily on access; writes also purge expired entries at
    most once per ``sweep_interval_seconds`` so keys that are never read
    again, such as abandoned OAuth states, do not accumulate.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[Any, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    def verify_connection(self) -> None:
        return None

    def _expired(self, expires_at: float) -> bool:
        return self._clock() >= expires_at

    def _purge_locked(self) -> int:
        now = self._clock()
        stale = [k for k, (_, expires_at) in self._values.items() if now >= expires_at]
        for key in stale:
            del self._values[key]
        stale_sets = [k for k, (_, expires_at) in self._sets.items() if now >= expires_at]
        for key in stale_sets:
            del self._sets[key]
        self._next_sweep = now + self._sweep_interval
        return len(stale) + len(stale_sets)

    def _maybe_purge_locked(self) -> None:
        if self._clock() >= self._next_sweep:
            self._purge_locked()

    def sweep(self) -> int:
        """Drop every expired entry now; returns how many were removed."""
        with self._lock:
            return self._purge_locked()

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._maybe_purge_locked()
            self._values[key] = (
                copy.deepcopy(value),
                self._clock() + max(1, int(ttl_seconds)),
            )

    async def get_json(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                self._values.pop(key, None)
                return None
            return copy.deepcopy(value)

    async def pop_json(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._values.pop(key, None)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                return None
            return value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._sets.pop(key, None)

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            self._maybe_purge_locked()
            current, expires_at = self._sets.get(key, (set(), 0.0))
            if self._expired(expires_at):
                current = set()
            current.add(member)
            self._sets[key] = (current, self._clock() + max(1, int(ttl_seconds)))

    async def members(self, key: str) -> Set[str]:
        with self._lock:
            entry = self._sets.get(key)
            if entry is None:
                return set()
            current, expires_at = entry
            if self._expired(expires_at):
                self._sets.pop(key, None)
                return set()
            return set(current)

    async def remove_member(self, key: str, member: str) -> None:
        with self._lock:
            entry = self._sets.get(key)
            if entry is not None:
                entry[0].discard(member)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
