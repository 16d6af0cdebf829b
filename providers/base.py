"""
Shared plumbing for external model providers: a client-side rate limiter
and a retry loop with exponential backoff.
"""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderError(RuntimeError):
    """An embedding or text-generation provider call failed."""


class RateLimiter:
    """
    Enforces a fixed minimum delay between consecutive requests.
    Thread-safe; every attempt, including retries, goes through `wait()`.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None

    def wait(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last_request is not None:
                remaining = self.min_interval - (now - self._last_request)
                if remaining > 0:
                    self._sleep(remaining)
                    now = self._clock()
            self._last_request = now


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_attempts: int,
    base_delay: float,
    rate_limiter: Optional[RateLimiter] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "provider call",
) -> T:
    """
    Call `fn` up to `max_attempts` times, sleeping `base_delay * 2**attempt`
    between failures. The last failure is re-raised as ProviderError.
    """
    attempts = max(1, max_attempts)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        if rate_limiter is not None:
            rate_limiter.wait()
        try:
            return fn()
        except Exception as e:
            last_error = e
            logger.warning(f"{description} failed (attempt {attempt + 1}/{attempts}): {e}")
            if attempt < attempts - 1:
                sleep(base_delay * (2 ** attempt))

    if isinstance(last_error, ProviderError):
        raise last_error
    raise ProviderError(f"{description} failed after {attempts} attempts: {last_error}") from last_error
