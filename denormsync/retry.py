"""
Retry logic with exponential backoff for handling transient failures.

Provides a decorator and a circuit breaker for store operations that may
fail due to lock contention, lost optimistic concurrency races, or
temporary connectivity errors.
"""

import functools
import threading
import time
from typing import Callable, Optional, Tuple, Type

from .errors import DenormSyncError


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""
    pass


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``max_delay``."""
    return min(base_delay * exponential_base ** (attempt - 1), max_delay)


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between consecutive delays
        exceptions: Exception types that trigger a retry
        on_retry: Optional callback(attempt, exception, delay)

    Raises:
        RetryError: Chained to the last failure once retries run out

    Example:
        @exponential_backoff(max_retries=3, base_delay=1.0, exceptions=(TransientIOError,))
        def run_page():
            return run_backfill(store, DENORMALIZATION_JOB, now)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt > max_retries:
                        raise RetryError(f"Failed after {attempt} attempts: {e}") from e

                    delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
                    if on_retry:
                        on_retry(attempt, e, delay)
                    time.sleep(delay)

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Stops calling a failing document store for a cool-down period.

    States:
    - CLOSED: calls pass through
    - OPEN: ``failure_threshold`` consecutive failures seen; calls are rejected
    - HALF_OPEN: cool-down elapsed; the next call decides

    Safe to share between the threads of one backfill run.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Type[Exception] = Exception,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening
            recovery_timeout: Seconds to stay open before a trial call
            expected_exception: Exception type that counts as a failure
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self._lock = threading.Lock()
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = self.CLOSED

    def call(self, func: Callable, *args, **kwargs):
        """
        Run ``func`` unless the circuit is open.

        Raises:
            CircuitOpenError: If the circuit is open and still cooling down
        """
        with self._lock:
            if self.state == self.OPEN:
                remaining = self._remaining_cooldown()
                if remaining > 0:
                    raise CircuitOpenError(
                        f"Circuit breaker is OPEN. Store unavailable. Retry after {remaining:.0f}s"
                    )
                self.state = self.HALF_OPEN

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record(success=False)
            raise
        self._record(success=True)
        return result

    def _remaining_cooldown(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self.opened_at))

    def _record(self, success: bool):
        with self._lock:
            if success:
                self.failure_count = 0
                self.opened_at = None
                self.state = self.CLOSED
                return

            self.failure_count += 1
            if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = self.OPEN
                self.opened_at = time.monotonic()

    def reset(self):
        """Manually close the circuit."""
        with self._lock:
            self.failure_count = 0
            self.opened_at = None
            self.state = self.CLOSED


TRANSIENT_MESSAGES = (
    "timeout",
    "timed out",
    "connection",
    "database is locked",
    "deadlock",
    "temporarily unavailable",
    "too many connections",
    "server closed the connection",
)


def is_transient_error(exception: Exception) -> bool:
    """
    Decide whether ``exception`` is worth retrying.

    Engine errors answer through their ``retryable`` flag; anything else is
    judged by lock/connection/timeout wording in its message.
    """
    if isinstance(exception, DenormSyncError):
        return exception.retryable

    message = str(exception).lower()
    return any(keyword in message for keyword in TRANSIENT_MESSAGES)
