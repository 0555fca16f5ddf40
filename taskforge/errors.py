"""
Error taxonomy for Taskforge orchestration.

This module provides:
- ErrorCategory enum separating fatal, validation, transient, stagnation
  and budget failures
- Exception classes carrying their category
- ErrorClassifier for deciding the category of arbitrary exceptions
  (boundary errors usually arrive as plain text)
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of orchestration failures.

    Used by RetryService and the coordinator to decide whether to retry,
    stop the run, or hand a story to the next governance step.
    """

    FATAL = "fatal"              # Configuration/ownership problems, unknown errors
    VALIDATION = "validation"    # Blocking: overlapping work, exhausted retries, bad output
    TRANSIENT = "transient"      # Network, timeout, rate limit - retried with backoff
    STAGNATION = "stagnation"    # Supervisor aborted an execution - story-level failure
    BUDGET = "budget"            # Cost ceiling reached - fatal, never retried

    @property
    def retryable(self) -> bool:
        """Only transient failures are retried."""
        return self is ErrorCategory.TRANSIENT


class OrchestrationError(Exception):
    """
    Base exception for orchestration errors.

    Includes the error category for handling decisions.
    """

    category: ErrorCategory = ErrorCategory.FATAL

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category
        self.recoverable = recoverable


class ConfigurationError(OrchestrationError):
    """Missing repositories, credentials, ownership mismatch, bad metadata."""

    category = ErrorCategory.FATAL


class ValidationBlockingError(OrchestrationError):
    """Handled failure that must stop the run at the current phase."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class TransientError(OrchestrationError):
    """Network, timeout or rate-limit class failure from a boundary."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None) -> None:
        super().__init__(message, recoverable=True)
        self.retry_after_seconds = retry_after_seconds


class BudgetExceededError(OrchestrationError):
    """Raised when a phase would push the task past its cost ceiling."""

    category = ErrorCategory.BUDGET

    def __init__(self, phase: str, current_cost: float, ceiling: float, reason: str = "") -> None:
        message = reason or (
            f"Budget exceeded before phase '{phase}': "
            f"${current_cost:.2f} spent, ceiling ${ceiling:.2f}"
        )
        super().__init__(message)
        self.phase = phase
        self.current_cost = current_cost
        self.ceiling = ceiling


class AgentExecutionError(OrchestrationError):
    """Raised when an agent execution fails at the boundary."""

    def __init__(
        self,
        message: str,
        stderr: str = "",
        returncode: int = -1,
        category: Optional[ErrorCategory] = None,
    ) -> None:
        resolved = category or ErrorClassifier.classify_text(f"{message} {stderr}")
        super().__init__(message, category=resolved, recoverable=resolved.retryable)
        self.stderr = stderr
        self.returncode = returncode


class ErrorClassifier:
    """
    Classifies errors into ErrorCategory values.

    Uses the exception's own category when it has one, then the exception
    type, then pattern matching on the message.
    """

    TRANSIENT_PATTERNS = [
        r"rate.?limit",
        r"too\s+many\s+requests",
        r"\b429\b",
        r"\b502\b",
        r"\b503\b",
        r"\b504\b",
        r"\b529\b",
        r"overloaded",
        r"service\s+unavailable",
        r"temporarily\s+unavailable",
        r"timed?\s?out",
        r"timeout",
        r"econnreset",
        r"etimedout",
        r"enotfound",
        r"connection\s+(reset|refused|aborted)",
    ]

    VALIDATION_PATTERNS = [
        r"overlapping",
        r"schema\s+validation",
        r"retry\s+budget\s+exhausted",
    ]

    @classmethod
    def classify_text(cls, text: str, extra_transient: Optional[list[str]] = None) -> ErrorCategory:
        """
        Classify free-form error text.

        Args:
            text: Error message and/or stderr.
            extra_transient: Additional patterns treated as transient.

        Returns:
            ErrorCategory classification (FATAL when nothing matches).
        """
        lowered = text.lower()
        if cls._matches_any(lowered, cls.VALIDATION_PATTERNS):
            return ErrorCategory.VALIDATION
        if cls._matches_any(lowered, cls.TRANSIENT_PATTERNS + list(extra_transient or [])):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.FATAL

    @classmethod
    def classify(cls, error: BaseException, extra_transient: Optional[list[str]] = None) -> ErrorCategory:
        """
        Classify an exception.

        Args:
            error: The exception to classify.
            extra_transient: Additional patterns treated as transient.

        Returns:
            ErrorCategory for the exception.
        """
        if isinstance(error, OrchestrationError):
            return error.category
        if isinstance(error, (TimeoutError, ConnectionError)):
            return ErrorCategory.TRANSIENT
        return cls.classify_text(str(error), extra_transient)

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        """Check if text matches any of the given patterns."""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False


def classify_error(error: BaseException) -> ErrorCategory:
    """Module-level shortcut for ErrorClassifier.classify."""
    return ErrorClassifier.classify(error)
