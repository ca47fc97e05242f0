from __future__ import annotations

import asyncio
import contextlib
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Mapping, Optional

from portfolio_auth.logging import get_logger, log_security_event

logger = get_logger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer; writers are not starved."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class RateLimitConfig:
    max_attempts: int
    window_seconds: float
    block_seconds: float


@dataclass
class RateLimitEntry:
    attempts: int = 0
    last_attempt: float = 0.0
    blocked: bool = False
    block_until: float = 0.0


class RateLimiter:
    """Failed-attempt counter per client key with temporary blocking.

    An entry is Open while ``attempts < max_attempts`` and becomes Blocked
    when the threshold is reached; it returns to Open once ``block_until``
    has passed or after ``reset``. Failures outside the sliding window start
    a fresh count.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        name: str = "general",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.name = name
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = ReadWriteLock()
        self._sweep_task: Optional[asyncio.Task] = None

    def record_failure(self, key: str) -> RateLimitEntry:
        now = self._clock()
        with self._lock.write():
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry()
                self._entries[key] = entry
            elif entry.blocked and now >= entry.block_until:
                entry.blocked = False
                entry.block_until = 0.0
                entry.attempts = 0
            if entry.last_attempt and now - entry.last_attempt > self.config.window_seconds:
                entry.attempts = 0
            entry.attempts += 1
            entry.last_attempt = now
            newly_blocked = False
            if not entry.blocked and entry.attempts >= self.config.max_attempts:
                entry.blocked = True
                entry.block_until = now + self.config.block_seconds
                newly_blocked = True
            snapshot = replace(entry)
        if newly_blocked:
            log_security_event(
                "rate_limit_blocked",
                limiter=self.name,
                key=key,
                attempts=snapshot.attempts,
                block_seconds=self.config.block_seconds,
            )
        return snapshot

    def is_blocked(self, key: str) -> bool:
        now = self._clock()
        with self._lock.read():
            entry = self._entries.get(key)
            return bool(entry and entry.blocked and now < entry.block_until)

    def retry_after(self, key: str) -> int:
        """Whole seconds until ``key`` is unblocked, 0 when not blocked."""
        now = self._clock()
        with self._lock.read():
            entry = self._entries.get(key)
            if not entry or not entry.blocked or now >= entry.block_until:
                return 0
            return max(1, math.ceil(entry.block_until - now))

    def entry(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock.read():
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def reset(self, key: str) -> None:
        with self._lock.write():
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop stale unblocked entries and unblock expired ones.

        Returns the number of entries removed.
        """
        now = self._clock()
        removed = 0
        with self._lock.write():
            for key, entry in list(self._entries.items()):
                if entry.blocked:
                    if now >= entry.block_until:
                        entry.blocked = False
                        entry.block_until = 0.0
                        entry.attempts = 0
                elif now - entry.last_attempt > self.config.window_seconds:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.debug("rate_limit_swept", limiter=self.name, removed=removed)
        return removed

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("rate_limit_sweep_failed", limiter=self.name, error=str(exc))

    def start(self, interval_seconds: float) -> asyncio.Task:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))
            logger.info(
                "rate_limit_sweeper_started", limiter=self.name, interval=interval_seconds
            )
        return self._sweep_task

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("rate_limit_sweeper_stopped", limiter=self.name)


def client_address(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """Resolve the caller address from proxy headers or the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if not peer:
        return "unknown"
    # Strip a port from "host:port" but leave bare IPv6 addresses intact
    if peer.count(":") == 1:
        return peer.rsplit(":", 1)[0]
    if peer.startswith("[") and "]:" in peer:
        return peer[1 : peer.index("]")]
    return peer


def auth_key(address: str) -> str:
    return f"auth:{address}"


def mfa_key(user_id: str) -> str:
    return f"mfa:{user_id}"
