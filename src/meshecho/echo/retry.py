"""Generic retry and polling primitives.

Everything that waits in the harness (forward calls, proxy config polls,
pod readiness, mesh convergence) goes through ``until_success``. It runs a
function until it stops raising a retryable error, bounded by an overall
timeout and an optional attempt cap. Errors outside ``retry_on`` are
permanent and propagate immediately.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from meshecho.echo.errors import FetchError, RetryExhaustedError, WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How long and how often to retry.

    Attributes:
        timeout: Overall budget in seconds. The loop never gives up before
            this has elapsed, unless ``max_attempts`` is reached first.
        delay: Seconds to sleep between attempts.
        max_attempts: Optional cap on the number of attempts.
        converge: Number of consecutive successes required before the
            result is returned.
        backoff: Multiplier applied to ``delay`` after every attempt;
            1.0 keeps the delay fixed.
        max_delay: Upper bound for the backed-off delay.
    """

    timeout: float = 30.0
    delay: float = 0.1
    max_attempts: Optional[int] = None
    converge: int = 1
    backoff: float = 1.0
    max_delay: float = 5.0

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.delay < 0:
            raise ValueError(f"delay must not be negative, got {self.delay}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.converge < 1:
            raise ValueError(f"converge must be at least 1, got {self.converge}")
        if self.backoff < 1.0:
            raise ValueError(f"backoff must be >= 1.0, got {self.backoff}")

    def with_overrides(self, **overrides) -> "RetryPolicy":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)


class NotAcceptedError(Exception):
    """Raised internally when a polled snapshot is rejected."""


class _NotConverged(Exception):
    """Raised internally while waiting for consecutive successes."""


class _AcceptFailed(Exception):
    """Carries an error raised by an accept predicate past the retry loop."""

    def __init__(self, error: Exception):
        super().__init__(str(error))
        self.error = error


def _wait_strategy(policy: RetryPolicy):
    if policy.backoff > 1.0:
        return wait_exponential(
            multiplier=policy.delay, max=policy.max_delay, exp_base=policy.backoff
        )
    return wait_fixed(policy.delay)


def until_success(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``fn`` until it succeeds ``policy.converge`` times in a row.

    Args:
        fn: Zero-argument callable to run.
        policy: Retry policy; defaults to ``RetryPolicy()``.
        retry_on: Exception types treated as transient.

    Returns:
        The value returned by the last successful call.

    Raises:
        RetryExhaustedError: The budget ran out; carries the last transient
            error and the number of attempts made.
    """
    policy = policy or RetryPolicy()
    successes = 0

    def attempt() -> T:
        nonlocal successes
        try:
            result = fn()
        except retry_on:
            successes = 0
            raise
        successes += 1
        if successes < policy.converge:
            raise _NotConverged()
        return result

    stop = stop_after_delay(policy.timeout)
    if policy.max_attempts is not None:
        stop = stop | stop_after_attempt(policy.max_attempts)

    retrying = Retrying(
        stop=stop,
        wait=_wait_strategy(policy),
        retry=retry_if_exception_type(tuple(retry_on) + (_NotConverged,)),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
    )

    last_error: Optional[BaseException] = None
    try:
        for attempt_state in retrying:
            with attempt_state:
                try:
                    return attempt()
                except _NotConverged:
                    raise
                except retry_on as e:
                    last_error = e
                    raise
    except RetryError as e:
        attempts = e.last_attempt.attempt_number
        raise RetryExhaustedError(last_error, attempts) from last_error
    raise AssertionError("unreachable")


def wait_for(
    fetch: Callable[[], T],
    accept: Callable[[T], bool],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Poll ``fetch`` until ``accept`` approves a snapshot.

    A ``FetchError`` from ``fetch`` or a falsy ``accept`` result keeps the
    poll going. Anything ``accept`` raises aborts the poll at once.

    Returns:
        The accepted snapshot.

    Raises:
        WaitTimeoutError: No snapshot was accepted within the budget.
    """

    def attempt() -> T:
        snapshot = fetch()
        try:
            accepted = accept(snapshot)
        except Exception as e:
            raise _AcceptFailed(e) from e
        if not accepted:
            raise NotAcceptedError()
        return snapshot

    try:
        return until_success(attempt, policy, retry_on=(FetchError, NotAcceptedError))
    except _AcceptFailed as e:
        raise e.error from None
    except RetryExhaustedError as e:
        last = e.last_error if isinstance(e.last_error, FetchError) else None
        raise WaitTimeoutError(e.attempts, last) from e.last_error
