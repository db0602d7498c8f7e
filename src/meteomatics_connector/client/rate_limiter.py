"""Thread-safe request throttling for Meteomatics API calls."""
from __future__ import annotations
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

class RateLimiter:
    """
    Throttle requests by spacing and by parallelism.

    Accounts are limited both in requests per minute and in requests in
    flight ("requests in parallel" in the user statistics). Requests are
    spaced at least ``60 / max_requests_per_minute`` seconds apart, and at
    most ``max_parallel`` requests hold a slot at once. Either limit is
    disabled when set to 0 or a negative value.

    Example:
        >>> limiter = RateLimiter(max_requests_per_minute=60, max_parallel=2)
        >>> with limiter.slot():
        ...     make_request()
    """

    def __init__(self, max_requests_per_minute: float = 0, max_parallel: int = 0) -> None:
        self._interval = 0.0
        if max_requests_per_minute > 0:
            self._interval = 60.0 / max_requests_per_minute
        self._last_request: Optional[float] = None
        self._lock = threading.Lock()
        self._max_parallel = max_parallel if max_parallel > 0 else 0
        self._semaphore: Optional[threading.BoundedSemaphore] = (
            threading.BoundedSemaphore(self._max_parallel) if self._max_parallel else None
        )

    @property
    def interval(self) -> float:
        """Return the minimum interval between requests in seconds."""
        return self._interval

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    @property
    def is_enabled(self) -> bool:
        """Return True if either limit is active."""
        return self._interval > 0 or self._semaphore is not None

    def wait(self) -> None:
        """Block until the next request is allowed by the spacing limit."""
        if self._interval <= 0:
            return

        with self._lock:
            now = time.monotonic()
            if self._last_request is not None:
                delay = self._last_request + self._interval - now
                if delay > 0:
                    time.sleep(delay)
                    now = time.monotonic()
            self._last_request = now

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold a parallel-request slot for the duration of one request."""
        if self._semaphore is not None:
            self._semaphore.acquire()
        try:
            self.wait()
            yield
        finally:
            if self._semaphore is not None:
                self._semaphore.release()

    def reset(self) -> None:
        """Reset the spacing state, allowing an immediate request."""
        with self._lock:
            self._last_request = None


__all__ = ["RateLimiter"]
