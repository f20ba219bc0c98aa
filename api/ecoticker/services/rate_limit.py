"""
In-memory request rate limiting.

Counters are process-local. Each limiter owns its store and clock so tests can
drive time explicitly, and a shared store can be swapped in later without
touching the check/get_reset_time contract.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, MutableMapping, Optional

import structlog

logger = structlog.get_logger()

Clock = Callable[[], float]


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


class RateLimiter:
    """Fixed-size window per identifier, reopened once its reset time passes."""

    def __init__(self, window_seconds: float, max_requests: int,
                 clock: Clock = time.time,
                 store: Optional[MutableMapping[str, RateLimitEntry]] = None,
                 cleanup_interval: float = 300):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock
        self.store = store if store is not None else {}
        self.cleanup_interval = cleanup_interval
        self._lock = threading.Lock()
        self._next_cleanup = clock() + cleanup_interval

    def check(self, identifier: str) -> bool:
        """Return True if the request is allowed, counting it if so."""
        with self._lock:
            now = self.clock()
            if now >= self._next_cleanup:
                self._purge(now)

            entry = self.store.get(identifier)
            if entry is None or now > entry.reset_time:
                self.store[identifier] = RateLimitEntry(count=1, reset_time=now + self.window_seconds)
                return True

            if entry.count >= self.max_requests:
                return False

            entry.count += 1
            return True

    def get_reset_time(self, identifier: str) -> float:
        """Epoch seconds at which the identifier's window reopens."""
        with self._lock:
            entry = self.store.get(identifier)
            return entry.reset_time if entry else self.clock()

    def cleanup(self) -> int:
        with self._lock:
            return self._purge(self.clock())

    def _purge(self, now: float) -> int:
        expired = [key for key, entry in self.store.items() if now > entry.reset_time]
        for key in expired:
            del self.store[key]
        self._next_cleanup = now + self.cleanup_interval
        if expired:
            logger.debug("rate_limit: purged expired entries", count=len(expired))
        return len(expired)


class RateLimiters:
    """The three tiers applied to distinct operation classes."""

    def __init__(self, read: RateLimiter, write: RateLimiter, batch: RateLimiter):
        self.read = read
        self.write = write
        self.batch = batch

    @classmethod
    def from_settings(cls, settings, clock: Clock = time.time) -> "RateLimiters":
        cleanup = settings.RATE_LIMIT_CLEANUP_SECONDS
        return cls(
            read=RateLimiter(settings.RATE_LIMIT_READ_WINDOW, settings.RATE_LIMIT_READ_MAX,
                             clock=clock, cleanup_interval=cleanup),
            write=RateLimiter(settings.RATE_LIMIT_WRITE_WINDOW, settings.RATE_LIMIT_WRITE_MAX,
                              clock=clock, cleanup_interval=cleanup),
            batch=RateLimiter(settings.RATE_LIMIT_BATCH_WINDOW, settings.RATE_LIMIT_BATCH_MAX,
                              clock=clock, cleanup_interval=cleanup),
        )

    def for_request(self, path: str, method: str) -> tuple[str, RateLimiter]:
        if "/batch" in path:
            return "batch", self.batch
        if method.upper() not in ("GET", "HEAD"):
            return "write", self.write
        return "read", self.read
