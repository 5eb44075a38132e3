"""
Rate-limit aware retry policy.

Every upstream call returns an ``ApiResult``:

  - ``Ok(value)``               - the call succeeded
  - ``RateLimited(msg, at)``    - retry once the epoch time ``at`` is reached
  - ``Fatal(error)``            - give up and raise ``error``

``RetryScheduler.run_with_retry`` is the single place that consumes these
results: it idles while rate limited, raises fatal errors and returns values.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from loguru import logger

from .utils import RetryDeferredError

T = TypeVar("T")

DEFAULT_WAIT_SECONDS = 60


@dataclass
class Ok(Generic[T]):
    value: T = None


@dataclass
class RateLimited:
    message: str
    retry_at: float  # epoch seconds


@dataclass
class Fatal:
    error: Exception


ApiResult = Union[Ok, RateLimited, Fatal]


def _to_int(value: Any) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError):
        return 0


def compute_retry_at(
    retry_after: Any = None,
    reset: Any = None,
    now: Optional[float] = None,
    default_wait: float = DEFAULT_WAIT_SECONDS,
) -> float:
    """
    Compute the epoch time at which a rate-limited call may be retried.

    ``retry_after`` (relative seconds) wins when positive. Otherwise
    ``reset`` (epoch seconds) is used when it lies in the future. If neither
    is usable the default wait applies.
    """
    if now is None:
        now = time.time()
    after = _to_int(retry_after)
    if after > 0:
        return now + after
    reset_at = _to_int(reset)
    if reset_at > now:
        return float(reset_at)
    return now + default_wait


class RetryScheduler:
    """
    Drives a phase function until it stops reporting rate limits.

    Args:
        on_wait: Called with the remaining wait in ms while idling (and 0 at
            the end of a wait). The job uses it to persist ``state.waiting``.
        is_cancelled: Polled while idling; a True result ends the wait early.
        poll_interval: Seconds between ``on_wait`` / ``is_cancelled`` polls.
        max_wait: Longest single wait (seconds) this invocation may idle.
            Longer waits raise ``RetryDeferredError``. 0 means unbounded.
        sleep / clock: Injectable for tests.
    """

    def __init__(
        self,
        on_wait: Optional[Callable[[int], None]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        poll_interval: float = 2.0,
        max_wait: float = 0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.on_wait = on_wait
        self.is_cancelled = is_cancelled
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._sleep = sleep
        self._clock = clock
        self.retries = 0

    def run_with_retry(self, fn: Callable[[], ApiResult], phase_name: str) -> Any:
        """Call ``fn`` until it returns ``Ok`` (value returned) or ``Fatal`` (error raised)."""
        while True:
            result = fn()
            if isinstance(result, Ok):
                return result.value
            if isinstance(result, Fatal):
                raise result.error
            if not isinstance(result, RateLimited):
                raise TypeError(f"{phase_name}: unexpected result {result!r}")

            wait = max(0.0, result.retry_at - self._clock())
            logger.info(
                f"[{phase_name}] rate limited by github ({result.message}). "
                f"waiting for {wait * 1000:.0f}ms"
            )
            if self.max_wait and wait > self.max_wait:
                if self.on_wait:
                    self.on_wait(int(wait * 1000))
                raise RetryDeferredError(
                    f"{phase_name}: rate limit wait of {wait:.0f}s exceeds {self.max_wait}s",
                    result.retry_at,
                )
            self.retries += 1
            if not self.idle_wait(result.retry_at):
                logger.warning(f"[{phase_name}] job cancelled while waiting for rate limit")
                return None

    def idle_wait(self, until: float) -> bool:
        """
        Sleep until the epoch time ``until``, reporting the remaining wait.

        Returns False if the wait ended because the job was cancelled.
        """
        try:
            while True:
                remaining = until - self._clock()
                if remaining <= 0:
                    return True
                if self.on_wait:
                    self.on_wait(int(remaining * 1000))
                if self.is_cancelled and self.is_cancelled():
                    return False
                self._sleep(min(self.poll_interval, remaining))
        finally:
            if self.on_wait:
                self.on_wait(0)


class RequestBudget:
    """
    Caps upstream requests to ``limit`` per ``interval`` seconds.

    Windows are fixed: once a window's budget is spent, ``acquire`` sleeps
    until the next one opens. Shared by the sync workers, so callers queue
    behind the lock while a window is exhausted. A limit of 0 disables it.
    """

    def __init__(
        self,
        limit: int,
        interval: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start: Optional[float] = None
        self._used = 0
        self.waited = 0.0

    def acquire(self) -> float:
        """Take one request from the budget. Returns the seconds spent waiting."""
        if self.limit <= 0:
            return 0.0
        with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.interval:
                self._window_start = now
                self._used = 0
            wait = 0.0
            if self._used >= self.limit:
                wait = self._window_start + self.interval - now
                logger.info(f"[code] request budget of {self.limit} spent. waiting for {wait * 1000:.0f}ms")
                self._sleep(wait)
                self.waited += wait
                self._window_start = self._clock()
                self._used = 0
            self._used += 1
            return wait
