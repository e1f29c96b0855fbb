"""
Tests for per-identity rate limiting.
"""
import os
import shutil
import tempfile
import threading

import pytest

from ai_coach_guard.config.loader import RateLimitBackend, RateLimitConfig
from ai_coach_guard.core.rate_limiter import (
    InMemoryRateLimiter,
    SharedRateLimiter,
    create_rate_limiter,
)
from ai_coach_guard.storage.repository import initialize_schema


class ManualClock:
    """Clock in plain seconds."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RateLimiterContract:
    """Behaviour every rate limiter implementation must show."""

    def make_limiter(self, config: RateLimitConfig, clock: ManualClock):
        raise NotImplementedError

    def test_first_request_allowed_second_denied(self):
        """Test one request per window for the default configuration."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(), clock)

        assert limiter.allow("alice@example.com") is True
        clock.now += 5
        assert limiter.allow("alice@example.com") is False

    def test_window_reopens_after_expiry(self):
        """Test a new window starts once the old one has passed."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(), clock)

        assert limiter.allow("alice@example.com") is True
        clock.now += 10.5
        assert limiter.allow("alice@example.com") is True

    def test_window_still_closed_at_exact_reset_time(self):
        """Test the window only reopens strictly after its reset time."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(), clock)

        assert limiter.allow("alice@example.com") is True
        clock.now += 10
        assert limiter.allow("alice@example.com") is False

    def test_identities_are_independent(self):
        """Test one identity's window does not affect another."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(), clock)

        assert limiter.allow("alice@example.com") is True
        assert limiter.allow("bob@example.com") is True
        assert limiter.allow("alice@example.com") is False

    def test_max_requests_per_window(self):
        """Test several requests per window when configured."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(max_requests=3), clock)

        results = [limiter.allow("alice@example.com") for _ in range(4)]

        assert results == [True, True, True, False]

    def test_burst_across_window_boundary_is_accepted(self):
        """Test the fixed-window tradeoff: bursts straddling a boundary pass."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(max_requests=2), clock)

        assert limiter.allow("alice@example.com") is True
        clock.now += 9.9
        assert limiter.allow("alice@example.com") is True
        clock.now += 0.2
        # New window: two more requests within 0.3 seconds of the last two
        assert limiter.allow("alice@example.com") is True
        assert limiter.allow("alice@example.com") is True
        assert limiter.allow("alice@example.com") is False

    def test_sweep_removes_only_expired_windows(self):
        """Test sweep evicts expired entries and keeps live ones."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(), clock)

        limiter.allow("alice@example.com")
        clock.now += 8
        limiter.allow("bob@example.com")
        clock.now += 3

        removed = limiter.sweep()

        assert removed == 1
        # Bob's window survived the sweep
        assert limiter.allow("bob@example.com") is False
        assert limiter.allow("alice@example.com") is True

    def test_seconds_until_reset(self):
        """Test remaining window time is reported."""
        clock = ManualClock()
        limiter = self.make_limiter(RateLimitConfig(), clock)

        assert limiter.seconds_until_reset("alice@example.com") == 0.0
        limiter.allow("alice@example.com")
        clock.now += 4

        assert limiter.seconds_until_reset("alice@example.com") == pytest.approx(6.0)


class TestInMemoryRateLimiter(RateLimiterContract):
    """Test the process-local limiter."""

    def make_limiter(self, config, clock):
        return InMemoryRateLimiter(config, clock=clock)

    def test_sweep_bounds_memory(self):
        """Test entries are dropped from the map by the sweep."""
        clock = ManualClock()
        limiter = InMemoryRateLimiter(RateLimitConfig(), clock=clock)
        for i in range(50):
            limiter.allow(f"user{i}@example.com")
        assert len(limiter) == 50

        clock.now += 11
        limiter.sweep()

        assert len(limiter) == 0

    def test_concurrent_requests_same_identity(self):
        """Test only one of many simultaneous requests is admitted."""
        limiter = InMemoryRateLimiter(RateLimitConfig(), clock=ManualClock())
        results = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            results.append(limiter.allow("alice@example.com"))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 19

    def test_sweeper_lifecycle(self):
        """Test the sweeper thread starts once and stops on close."""
        limiter = InMemoryRateLimiter(RateLimitConfig(sweep_multiplier=360))

        limiter.start_sweeper()
        sweeper = limiter._sweeper
        limiter.start_sweeper()
        assert limiter._sweeper is sweeper
        assert sweeper.is_alive()

        limiter.close()
        assert not sweeper.is_alive()
        assert limiter._sweeper is None

    def test_close_without_sweeper(self):
        """Test close is safe when no sweeper was started."""
        limiter = InMemoryRateLimiter(RateLimitConfig())
        limiter.close()


class TestSharedRateLimiter(RateLimiterContract):
    """Test the database-backed limiter."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_limiter(self, config, clock):
        return SharedRateLimiter(config, self.db_path, clock=clock)

    def test_instances_share_windows(self):
        """Test two limiters on one database enforce a single throttle."""
        clock = ManualClock()
        first = SharedRateLimiter(RateLimitConfig(), self.db_path, clock=clock)
        second = SharedRateLimiter(RateLimitConfig(), self.db_path, clock=clock)

        assert first.allow("alice@example.com") is True
        assert second.allow("alice@example.com") is False

    def test_concurrent_requests_same_identity(self):
        """Test the transaction admits exactly one simultaneous request."""
        clock = ManualClock()
        results = []
        lock = threading.Lock()

        def worker():
            limiter = SharedRateLimiter(RateLimitConfig(), self.db_path, clock=clock)
            allowed = limiter.allow("alice@example.com")
            with lock:
                results.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestRateLimiterFactory:
    """Test backend selection."""

    def test_memory_backend(self):
        """Test the default backend is in-memory."""
        limiter = create_rate_limiter(RateLimitConfig(), "unused.db")
        assert isinstance(limiter, InMemoryRateLimiter)

    def test_shared_backend(self):
        """Test the shared backend is selected by configuration."""
        limiter = create_rate_limiter(
            RateLimitConfig(backend=RateLimitBackend.SHARED), "shared.db"
        )
        assert isinstance(limiter, SharedRateLimiter)
        assert limiter.repository.db_path == "shared.db"
