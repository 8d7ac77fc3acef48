"""Cancellable polling with exponential backoff.

Provides poll_until() -- repeatedly fetches a value until a ``done``
predicate accepts it, sleeping with exponential backoff between attempts.
Tool handlers use it to wait on long-running external jobs (a remote
build, a deep-research task) without blocking cancellation: every sleep
waits on the cancellation token, so cancelling interrupts the wait at once.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_exponential,
)

from agentloop.exceptions import CancelledByCallerError, RetryExhaustedError

if TYPE_CHECKING:
    from agentloop.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Result of a successful poll.

    Attributes:
        value: The value accepted by ``done``.
        attempts: Total fetches (1 = first fetch was already done).
        elapsed: Seconds spent polling.
    """

    value: T
    attempts: int
    elapsed: float


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    cancel: CancellationToken | None = None,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2.0,
    timeout: float | None = None,
    max_attempts: int | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
) -> PollResult[T]:
    """Call ``fetch`` until ``done(value)`` is true.

    The delay before attempt ``n + 1`` is ``initial_delay * multiplier ** (n - 1)``,
    capped at ``max_delay``.

    Args:
        fetch: Produces the current value (e.g. a job status).
        done: Predicate deciding whether polling can stop.
        cancel: Token checked before every fetch and waited on while sleeping.
        initial_delay: Seconds to wait after the first unfinished fetch.
        max_delay: Upper bound on a single wait.
        multiplier: Backoff growth factor.
        timeout: Give up after this many seconds.
        max_attempts: Give up after this many fetches.
        retry_on: Exception types raised by ``fetch`` that count as an
            unfinished attempt instead of propagating.

    Returns:
        PollResult with the accepted value.

    Raises:
        CancelledByCallerError: If ``cancel`` fires before ``done`` is satisfied.
        RetryExhaustedError: If ``timeout`` or ``max_attempts`` is reached.
    """
    attempts = 0
    started = time.monotonic()

    def attempt() -> T:
        nonlocal attempts
        if cancel is not None:
            cancel.raise_if_cancelled()
        attempts += 1
        return fetch()

    def sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise CancelledByCallerError(cancel.reason or "Cancelled by caller")

    retry = retry_if_result(lambda value: not done(value))
    if retry_on:
        retry = retry | retry_if_exception(
            lambda e: isinstance(e, retry_on) and not isinstance(e, CancelledByCallerError)
        )

    stop = stop_never
    if max_attempts is not None:
        stop = stop_after_attempt(max_attempts)
    if timeout is not None:
        stop = stop_after_delay(timeout) if stop is stop_never else stop | stop_after_delay(timeout)

    retrying = Retrying(
        retry=retry,
        stop=stop,
        wait=wait_exponential(multiplier=initial_delay, exp_base=multiplier, max=max_delay),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.DEBUG),
    )
    try:
        value = retrying(attempt)
    except RetryError as err:
        last = err.last_attempt
        if last.failed:
            raise RetryExhaustedError(attempts) from last.exception()
        raise RetryExhaustedError(attempts, last_value=last.result()) from None

    return PollResult(value=value, attempts=attempts, elapsed=time.monotonic() - started)
