"""Tests for the failed-attempt limiter and client address resolution."""

import asyncio
import threading

import pytest

from portfolio_auth.service.ratelimit import (
    RateLimitConfig,
    RateLimiter,
    auth_key,
    client_address,
    mfa_key,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(
        RateLimitConfig(max_attempts=5, window_seconds=300, block_seconds=900),
        name="auth",
        clock=clock,
    )


class TestBlocking:
    def test_blocks_at_threshold(self, limiter):
        key = auth_key("10.0.0.5")
        for _ in range(4):
            limiter.record_failure(key)
            assert not limiter.is_blocked(key)
        entry = limiter.record_failure(key)

        assert entry.blocked
        assert entry.attempts == 5
        assert limiter.is_blocked(key)
        assert limiter.retry_after(key) == 900

    def test_block_expires(self, limiter, clock):
        key = "10.0.0.5"
        for _ in range(5):
            limiter.record_failure(key)
        clock.now += 899
        assert limiter.is_blocked(key)
        assert limiter.retry_after(key) == 1
        clock.now += 2
        assert not limiter.is_blocked(key)
        assert limiter.retry_after(key) == 0

    def test_failure_after_block_starts_fresh(self, limiter, clock):
        key = "10.0.0.5"
        for _ in range(5):
            limiter.record_failure(key)
        clock.now += 901
        entry = limiter.record_failure(key)
        assert not entry.blocked
        assert entry.attempts == 1

    def test_window_resets_count(self, limiter, clock):
        key = "10.0.0.5"
        for _ in range(4):
            limiter.record_failure(key)
        clock.now += 301
        entry = limiter.record_failure(key)
        assert entry.attempts == 1
        assert not limiter.is_blocked(key)

    def test_reset_clears_entry(self, limiter):
        key = "10.0.0.5"
        for _ in range(5):
            limiter.record_failure(key)
        limiter.reset(key)
        assert not limiter.is_blocked(key)
        assert limiter.entry(key) is None

    def test_keys_are_independent(self, limiter):
        for _ in range(5):
            limiter.record_failure("a")
        assert limiter.is_blocked("a")
        assert not limiter.is_blocked("b")

    def test_entry_is_a_snapshot(self, limiter):
        limiter.record_failure("a")
        snapshot = limiter.entry("a")
        snapshot.attempts = 99
        assert limiter.entry("a").attempts == 1


class TestSweep:
    def test_sweep_removes_stale_and_unblocks_expired(self, limiter, clock):
        limiter.record_failure("stale")
        for _ in range(5):
            limiter.record_failure("blocked")
        clock.now += 901

        removed = limiter.sweep()

        assert removed == 1
        assert limiter.entry("stale") is None
        blocked = limiter.entry("blocked")
        assert blocked is not None and not blocked.blocked
        assert len(limiter) == 1

    def test_sweep_keeps_recent_entries(self, limiter, clock):
        limiter.record_failure("recent")
        clock.now += 10
        assert limiter.sweep() == 0
        assert len(limiter) == 1

    async def test_background_sweep_start_stop(self, limiter, clock):
        limiter.record_failure("stale")
        clock.now += 301
        task = limiter.start(0.01)
        assert limiter.start(0.01) is task
        await asyncio.sleep(0.05)
        await limiter.stop()
        assert task.cancelled() or task.done()
        assert len(limiter) == 0
        await limiter.stop()


class TestConcurrency:
    def test_parallel_failures_are_counted(self, clock):
        limiter = RateLimiter(
            RateLimitConfig(max_attempts=1000, window_seconds=300, block_seconds=60),
            clock=clock,
        )

        def worker():
            for _ in range(100):
                limiter.record_failure("shared")
                limiter.is_blocked("shared")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert limiter.entry("shared").attempts == 800


class TestClientAddress:
    def test_forwarded_for_first_hop(self):
        headers = {"x-forwarded-for": "10.0.0.5, 172.16.0.1"}
        assert client_address(headers, "127.0.0.1") == "10.0.0.5"

    def test_real_ip(self):
        assert client_address({"x-real-ip": " 10.0.0.7 "}, "127.0.0.1") == "10.0.0.7"

    @pytest.mark.parametrize(
        "peer,expected",
        [
            ("192.168.1.2:5555", "192.168.1.2"),
            ("192.168.1.2", "192.168.1.2"),
            ("[::1]:8080", "::1"),
            ("2001:db8::1", "2001:db8::1"),
            (None, "unknown"),
        ],
    )
    def test_peer_fallback(self, peer, expected):
        assert client_address({}, peer) == expected

    def test_key_helpers(self):
        assert auth_key("10.0.0.5") == "auth:10.0.0.5"
        assert mfa_key("user-1") == "mfa:user-1"
