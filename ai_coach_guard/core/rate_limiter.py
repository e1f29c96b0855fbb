"""
Per-identity request throttling.

Fixed-window counter: each identity gets a window of `window_seconds`
starting at its first request, admitting at most `max_requests` inside it.
Two requests straddling a window boundary are both admitted; that burst is
an accepted property of fixed windows.

Two implementations share the interface:
1. InMemoryRateLimiter - process-local dict with a periodic sweep
2. SharedRateLimiter - SQLite-backed windows shared by every process
   using the same database file
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ai_coach_guard.config.loader import RateLimitBackend, RateLimitConfig
from ai_coach_guard.storage.repository import RateWindowRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class RateLimitEntry:
    """Request count inside one identity's current window."""
    count: int
    window_reset_at: float


class RateLimiter(ABC):
    """Interface for per-identity throttles."""

    def __init__(self, config: RateLimitConfig, clock: Clock = time.time):
        self.window_seconds = config.window_seconds
        self.max_requests = config.max_requests
        self.sweep_interval = config.sweep_interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @abstractmethod
    def allow(self, identity: str) -> bool:
        """Record a request for identity and report whether it is admitted."""

    @abstractmethod
    def sweep(self, now: Optional[float] = None) -> int:
        """Remove expired windows.

        Returns:
            Number of removed entries
        """

    def seconds_until_reset(self, identity: str) -> float:
        """Seconds until the identity's current window closes (0 if none)."""
        return 0.0

    def start_sweeper(self) -> None:
        """Run sweep() on a daemon thread every sweep_interval seconds."""
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name=f"{type(self).__name__}-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def close(self) -> None:
        """Stop the sweeper thread if it is running."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                removed = self.sweep()
                logger.debug("Rate limit sweep removed %d entries", removed)
            except Exception:
                logger.exception("Rate limit sweep failed")


class InMemoryRateLimiter(RateLimiter):
    """Process-local fixed-window throttle.

    Every operation on the entry map is a short dict update, so a single
    lock covers it.
    """

    def __init__(self, config: RateLimitConfig, clock: Clock = time.time):
        super().__init__(config, clock)
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def allow(self, identity: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None or now > entry.window_reset_at:
                self._entries[identity] = RateLimitEntry(
                    count=1,
                    window_reset_at=now + self.window_seconds,
                )
                return True
            if entry.count < self.max_requests:
                entry.count += 1
                return True
            return False

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                identity for identity, entry in self._entries.items()
                if now > entry.window_reset_at
            ]
            for identity in expired:
                del self._entries[identity]
        return len(expired)

    def seconds_until_reset(self, identity: str) -> float:
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None:
                return 0.0
            return max(0.0, entry.window_reset_at - self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SharedRateLimiter(RateLimiter):
    """Fixed-window throttle whose windows live in the database.

    Uses wall-clock time since windows are compared across processes.
    """

    def __init__(self, config: RateLimitConfig, db_path: str, clock: Clock = time.time):
        super().__init__(config, clock)
        self.repository = RateWindowRepository(db_path)

    def allow(self, identity: str) -> bool:
        return self.repository.hit(
            identity,
            now=self._clock(),
            window_seconds=self.window_seconds,
            max_requests=self.max_requests,
        )

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        return self.repository.delete_expired(now)

    def seconds_until_reset(self, identity: str) -> float:
        reset_at = self.repository.window_reset_at(identity)
        if reset_at is None:
            return 0.0
        return max(0.0, reset_at - self._clock())


def create_rate_limiter(
    config: RateLimitConfig,
    db_path: str,
    clock: Clock = time.time,
) -> RateLimiter:
    """Build the rate limiter selected by configuration.

    Args:
        config: Rate limit configuration
        db_path: Database used by the shared backend
        clock: Source of the current time in seconds

    Returns:
        A RateLimiter implementation
    """
    if config.backend == RateLimitBackend.SHARED:
        return SharedRateLimiter(config, db_path, clock)
    return InMemoryRateLimiter(config, clock)
