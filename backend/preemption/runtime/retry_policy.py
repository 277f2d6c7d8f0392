"""
Stage Retry Policy - declarative backoff contract + failure taxonomy.

Every activity the workflow schedules runs under a RetryPolicy. The
activity runner (runtime.activity) owns the backoff delays; stages only
decide which failures are worth retrying.

Kurallar:
- NonRetryableError → never re-invoked (programmer / precondition faults)
- RetryableError    → re-invoked up to maximum_attempts
- Any other exception is retryable (transient until proven otherwise)
- Exhausted retries are treated exactly like a non-retryable failure

Delay before attempt n+1 = min(initial_interval * coefficient**(n-1), maximum_interval)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# application error types (label on ApplicationError.type)
ERR_VSPHERE = "vsphere"
ERR_INTERNAL = "internal"
ERR_NOTIFICATION = "notification"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff/attempt contract applied to a single activity."""
    initial_interval: float = 2.0  # seconds
    backoff_coefficient: float = 2.0
    maximum_interval: float = 10.0  # seconds
    maximum_attempts: int = 3  # 0 = unlimited

    def __post_init__(self):
        if self.initial_interval <= 0:
            raise ValueError(f"initial_interval must be > 0, got {self.initial_interval}")
        if self.backoff_coefficient < 1.0:
            raise ValueError(f"backoff_coefficient must be >= 1.0, got {self.backoff_coefficient}")
        if self.maximum_interval < self.initial_interval:
            raise ValueError(
                f"maximum_interval ({self.maximum_interval}) must be >= "
                f"initial_interval ({self.initial_interval})"
            )
        if self.maximum_attempts < 0:
            raise ValueError(f"maximum_attempts must be >= 0, got {self.maximum_attempts}")

    def delay_after(self, attempt: int) -> float:
        """Backoff delay (seconds) after the given failed attempt (1-based)."""
        if attempt < 1:
            attempt = 1
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)

    def has_attempts_left(self, attempt: int) -> bool:
        """True if another attempt may follow the given (1-based) attempt."""
        if self.maximum_attempts == 0:
            return True
        return attempt < self.maximum_attempts


DEFAULT_RETRY_POLICY = RetryPolicy()


# ═══════════════════════════════════════════════════════════════════════════════
# Failure taxonomy
# ═══════════════════════════════════════════════════════════════════════════════


class ApplicationError(Exception):
    """Failure raised by an activity, labelled with a type and retry flag."""

    non_retryable = False

    def __init__(self, message: str, type: str = ERR_INTERNAL, cause: Optional[BaseException] = None, **details):
        self.message = message
        self.type = type
        self.details = details
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        text = self.message
        if self.details:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        if self.__cause__ is not None:
            text += f": {self.__cause__}"
        return text


class RetryableError(ApplicationError):
    """Transient failure - the runner re-invokes the activity."""


class NonRetryableError(ApplicationError):
    """Programmer/precondition failure - the runner must not re-invoke."""

    non_retryable = True


class HeartbeatTimeoutError(RetryableError):
    """Activity stopped heartbeating within heartbeat_timeout."""

    def __init__(self, activity: str, timeout: float):
        super().__init__(
            f"activity {activity} missed heartbeat", type=ERR_INTERNAL, timeout=f"{timeout}s"
        )


class ActivityError(Exception):
    """Activity failed for good (non-retryable or retries exhausted)."""

    def __init__(self, activity: str, attempts: int, cause: BaseException):
        self.activity = activity
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"activity {activity} failed after {attempts} attempt(s): {cause}")
        self.__cause__ = cause

    @property
    def non_retryable(self) -> bool:
        return is_non_retryable(self.cause)


def is_non_retryable(exc: BaseException) -> bool:
    """NonRetryableError (or any ApplicationError flagged non_retryable)."""
    return isinstance(exc, ApplicationError) and exc.non_retryable


def is_retryable(exc: BaseException) -> bool:
    """
    Retry edilebilir mi?

    True: RetryableError, TimeoutError, unclassified exceptions
    False: NonRetryableError
    """
    return not is_non_retryable(exc)
