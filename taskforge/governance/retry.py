"""RetryService for wrapping phase executions with bounded exponential backoff.

Retries only errors classified TRANSIENT (network, timeout, rate limit).
Validation/blocking, budget and fatal errors propagate on the first
failure. When every attempt fails transiently the service raises
RetryExhaustedError, a validation/blocking error, so the caller stops
the run instead of trying again.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, TypeVar

from taskforge.config import RetryConfig
from taskforge.errors import ErrorCategory, ErrorClassifier, ValidationBlockingError

if TYPE_CHECKING:
    from taskforge.logger import TaskLogger


logger = logging.getLogger(__name__)

T = TypeVar("T")

# (attempt, error, delay_seconds)
RetryCallback = Callable[[int, BaseException, float], None]


class RetryExhaustedError(ValidationBlockingError):
    """Raised when a transient failure persists through every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Retry budget exhausted for {operation} after {attempts} attempt(s): {last_error}",
            errors=[str(last_error)],
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class SettledResult(Generic[T]):
    """Outcome of one operation run by execute_all_with_retry."""

    success: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None


class RetryService:
    """Executes callables with retry on transient errors.

    Usage:
        service = RetryService(config.retry)
        result = service.execute_with_retry(lambda: phase.execute(ctx), "task_breakdown")
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        logger: Optional[TaskLogger] = None,
    ) -> None:
        """Initialize the retry service.

        Args:
            config: Retry thresholds. Defaults to RetryConfig().
            sleep: Delay function (injected in tests).
            rng: Source of uniform [0, 1) values for jitter.
            logger: Optional task logger for retry events.
        """
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def classify(self, error: BaseException) -> ErrorCategory:
        return ErrorClassifier.classify(error, extra_transient=self.config.retryable_patterns)

    def is_retryable(self, error: BaseException) -> bool:
        """Check if an error should be retried."""
        return self.classify(error).retryable

    def calculate_backoff_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: The failed attempt number (1-indexed).

        Returns:
            Delay in seconds: exponential growth, +/- jitter, capped at
            max_delay_seconds.
        """
        cfg = self.config
        delay = cfg.initial_delay_seconds * (cfg.backoff_multiplier ** max(attempt - 1, 0))
        delay = min(delay, cfg.max_delay_seconds)
        if cfg.jitter:
            delay *= 1.0 + cfg.jitter * (2.0 * self._rng() - 1.0)
        return max(0.0, min(delay, cfg.max_delay_seconds))

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        operation_name: str = "operation",
        on_retry: Optional[RetryCallback] = None,
        max_retries: Optional[int] = None,
    ) -> T:
        """Run an operation, retrying transient failures.

        Args:
            operation: Zero-argument callable to execute.
            operation_name: Name used in logs and errors.
            on_retry: Called before each retry with (attempt, error, delay).
            max_retries: Override for total attempts.

        Returns:
            The operation's return value.

        Raises:
            RetryExhaustedError: Transient failures on every attempt.
            Exception: Any non-transient error, unchanged, on first occurrence.
        """
        attempts = max_retries if max_retries is not None else self.config.max_retries
        attempts = max(1, attempts)

        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except Exception as e:
                category = self.classify(e)
                if not category.retryable:
                    logger.debug(
                        "%s failed with %s error (no retry): %s",
                        operation_name, category.value, e,
                    )
                    raise

                if attempt == attempts:
                    logger.error(
                        "Transient error persisted after %d attempt(s) of %s: %s - %s",
                        attempts, operation_name, type(e).__name__, e,
                    )
                    self._log("retry_exhausted", {
                        "operation": operation_name,
                        "attempts": attempts,
                        "error": str(e),
                    }, level="error")
                    raise RetryExhaustedError(operation_name, attempts, e) from e

                delay = self.calculate_backoff_delay(attempt)
                retry_after = getattr(e, "retry_after_seconds", None)
                if retry_after:
                    delay = max(delay, float(retry_after))

                logger.warning(
                    "Transient error in %s (attempt %d/%d), retrying in %.1fs: %s - %s",
                    operation_name, attempt, attempts, delay, type(e).__name__, e,
                )
                self._log("retry_scheduled", {
                    "operation": operation_name,
                    "attempt": attempt,
                    "delay_seconds": round(delay, 3),
                    "error": str(e),
                }, level="warn")
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                self._sleep(delay)

        # range() always returns or raises above
        raise AssertionError("unreachable")

    def execute_all_with_retry(
        self,
        operations: list[Callable[[], Any]],
        operation_name: str = "operation",
    ) -> list[SettledResult[Any]]:
        """Run several operations sequentially, each with retry.

        Failures do not stop the remaining operations.

        Returns:
            One SettledResult per operation, in order.
        """
        results: list[SettledResult[Any]] = []
        for index, operation in enumerate(operations):
            try:
                value = self.execute_with_retry(operation, f"{operation_name}[{index}]")
                results.append(SettledResult(success=True, value=value))
            except Exception as e:
                results.append(SettledResult(success=False, error=e))
        return results

    def create_retry_wrapper(self, service_name: str) -> Callable[[Callable[[], T]], T]:
        """Build a function that runs operations with retry and logs each retry.

        Args:
            service_name: Prefix for log lines.
        """

        def log_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.info(
                "[%s] retry attempt %d after %.1fs delay: %s",
                service_name, attempt, delay, error,
            )

        def wrapper(operation: Callable[[], T]) -> T:
            return self.execute_with_retry(operation, service_name, on_retry=log_retry)

        return wrapper
