"""Bounded retry with exponential backoff.

A single attempt never raises to signal "try again": it returns an
``AttemptResult`` whose outcome is SUCCESS, RETRIABLE or FATAL, and the
loop in ``RetryContext.run`` decides what happens next.  Only the final
verdict is raised, as ``AttemptsExceededError`` once the budget is spent or
as the fatal error itself.

Example:
    >>> policy = RetryPolicy(max_attempts=3, base_delay=0.5)
    >>> ctx = RetryContext(policy, description="upload events_OFFLINE_0")
    >>> ctx.run(lambda: AttemptResult.success("ok"))
    'ok'
"""

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

import structlog

from segment_push.errors import (
    AttemptsExceededError,
    InvalidRequestError,
    SegmentPushError,
    is_retryable,
)

logger = structlog.get_logger()

T = TypeVar("T")


class AttemptOutcome(str, Enum):
    """Discriminant of a single attempt."""

    SUCCESS = "success"
    RETRIABLE = "retriable"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptResult(Generic[T]):
    """Outcome of one attempt at a network or storage operation."""

    outcome: AttemptOutcome
    value: Any = None
    reason: str | None = None
    error: SegmentPushError | None = None

    @classmethod
    def success(cls, value: Any = None) -> "AttemptResult":
        return cls(AttemptOutcome.SUCCESS, value=value)

    @classmethod
    def retriable(cls, reason: str, error: SegmentPushError | None = None) -> "AttemptResult":
        return cls(AttemptOutcome.RETRIABLE, reason=reason, error=error)

    @classmethod
    def fatal(cls, reason: str, error: SegmentPushError | None = None) -> "AttemptResult":
        return cls(AttemptOutcome.FATAL, reason=reason, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome is AttemptOutcome.SUCCESS

    def unwrap(self) -> Any:
        """Return the value or raise the carried error."""
        if self.ok:
            return self.value
        if self.error is not None:
            raise self.error
        raise SegmentPushError(self.reason or "operation failed", retryable=self.outcome is AttemptOutcome.RETRIABLE)


def attempt(func: Callable[..., T], *args: Any, **kwargs: Any) -> AttemptResult:
    """Run an ordinary callable once and classify how it ended."""
    try:
        return AttemptResult.success(func(*args, **kwargs))
    except SegmentPushError as e:
        if e.retryable:
            return AttemptResult.retriable(e.message, error=e)
        return AttemptResult.fatal(e.message, error=e)
    except Exception as e:
        if is_retryable(e):
            return AttemptResult.retriable(f"{type(e).__name__}: {e}")
        return AttemptResult.fatal(
            f"{type(e).__name__}: {e}",
            error=SegmentPushError(f"{type(e).__name__}: {e}", cause=e),
        )


@dataclass
class RetryPolicy:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** retry_index), max_delay) +/- jitter

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the first retry
        max_delay: Cap on any single delay
        multiplier: Exponential multiplier
        jitter: Add randomness to spread out concurrent workers
        jitter_range: Jitter as a fraction of the delay (0.0-1.0)
        sleep: Injected for tests
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidRequestError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def next_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0 = first retry)."""
        delay = min(self.base_delay * (self.multiplier ** retry_index), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)
        return delay

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        """Same backoff, different budget."""
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
            jitter_range=self.jitter_range,
            sleep=self.sleep,
        )

    def run(self, operation: Callable[[], AttemptResult], description: str = "operation") -> Any:
        """Shortcut for a fresh ``RetryContext``."""
        return RetryContext(self, description=description).run(operation)


@dataclass
class RetryContext:
    """Tracks the attempts of one retried operation."""

    policy: RetryPolicy
    description: str = "operation"
    attempts: int = field(default=0, init=False)
    reasons: list[str] = field(default_factory=list, init=False)

    def run(self, operation: Callable[[], AttemptResult]) -> Any:
        """
        Call ``operation`` until it succeeds, fails fatally, or the budget is spent.

        Raises:
            AttemptsExceededError: every attempt was retriable
            SegmentPushError: the first fatal outcome
        """
        while True:
            self.attempts += 1
            result = operation()

            if result.outcome is AttemptOutcome.SUCCESS:
                if self.attempts > 1:
                    logger.info("retry_succeeded", operation=self.description, attempts=self.attempts)
                return result.value

            reason = result.reason or "unknown failure"
            self.reasons.append(reason)

            if result.outcome is AttemptOutcome.FATAL:
                logger.error(
                    "attempt_failed_fatally",
                    operation=self.description,
                    attempt=self.attempts,
                    reason=reason,
                )
                error = result.error or SegmentPushError(reason, retryable=False)
                raise error.with_context(attempts=self.attempts)

            if self.attempts >= self.policy.max_attempts:
                logger.error(
                    "attempts_exceeded",
                    operation=self.description,
                    attempts=self.attempts,
                    last_reason=reason,
                )
                raise AttemptsExceededError(
                    f"{self.description} failed after {self.attempts} attempts: {reason}",
                    attempts=self.attempts,
                    reasons=self.reasons,
                    cause=result.error,
                )

            delay = self.policy.next_delay(self.attempts - 1)
            logger.warning(
                "attempt_failed_retrying",
                operation=self.description,
                attempt=self.attempts,
                max_attempts=self.policy.max_attempts,
                delay_seconds=round(delay, 3),
                reason=reason,
            )
            self.policy.sleep(delay)
