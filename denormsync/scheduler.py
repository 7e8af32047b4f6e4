"""
Supervising scheduler.

Runs propagation and backfill tasks, retrying retryable failures with
exponential backoff behind a circuit breaker. Configuration errors are
never retried.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .backfill import BackfillJob, BackfillResult, run_backfill
from .config import Settings
from .errors import DenormSyncError, PartialBatchFailure, TransientIOError
from .logger import get_logger
from .retry import (
    CircuitBreaker,
    CircuitOpenError,
    RetryError,
    exponential_backoff,
    is_transient_error,
)
from .store import DocumentStore
from .triggers import SyncOutcome, utc_now

logger = get_logger()

RETRYABLE_ERRORS = (TransientIOError, PartialBatchFailure)


@dataclass
class TaskReport:
    name: str
    succeeded: bool
    attempts: int
    result: Any = None
    error: Optional[BaseException] = None


class Supervisor:
    """Retry-with-backoff wrapper for scheduled and event-driven tasks."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5, recovery_timeout=60, expected_exception=DenormSyncError
        )

    def run(self, name: str, task: Callable[[], Any]) -> TaskReport:
        """
        Run ``task`` until it succeeds, fails permanently, or retries run out.

        A task may report failure by raising, or by returning a SyncOutcome
        whose error is retryable.
        """
        attempts = [0]

        def on_retry(attempt, exc, delay):
            logger.warning(
                f"Retrying {name}",
                attempt=attempt,
                delay=delay,
                error=type(exc).__name__,
            )

        @exponential_backoff(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exceptions=RETRYABLE_ERRORS,
            on_retry=on_retry,
        )
        def attempt():
            attempts[0] += 1
            try:
                result = self.breaker.call(task)
            except DenormSyncError:
                raise
            except Exception as exc:
                # Untranslated driver errors that look like lock or connection trouble.
                if is_transient_error(exc):
                    raise TransientIOError(f"{name} failed: {exc}") from exc
                raise
            if isinstance(result, SyncOutcome) and result.failed and result.retryable:
                raise result.error
            return result

        try:
            result = attempt()
        except RetryError as exc:
            logger.error(f"{name} failed after retries", attempts=attempts[0], error=str(exc))
            return TaskReport(name, False, attempts[0], error=exc.__cause__ or exc)
        except (DenormSyncError, CircuitOpenError) as exc:
            logger.error(f"{name} failed", attempts=attempts[0], error=str(exc))
            return TaskReport(name, False, attempts[0], error=exc)

        succeeded = not (isinstance(result, SyncOutcome) and result.failed)
        return TaskReport(name, succeeded, attempts[0], result=result)


def run_scheduled_backfill(
    store: DocumentStore,
    job: BackfillJob,
    settings: Settings,
    supervisor: Optional[Supervisor] = None,
    clock=utc_now,
) -> TaskReport:
    """Advance ``job`` by one page per collection under supervision."""
    supervisor = supervisor or Supervisor()
    page_size, dry_run = settings.backfill_options(job.job_id)

    def task() -> BackfillResult:
        return run_backfill(store, job, clock(), page_size=page_size, dry_run=dry_run)

    report = supervisor.run(f"backfill:{job.job_id}", task)
    if report.succeeded:
        logger.info(f"Backfill {job.job_id} complete", **report.result.to_dict())
    return report
