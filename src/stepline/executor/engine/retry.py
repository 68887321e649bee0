"""Bounded retries with backoff for network-sensitive steps."""

from dataclasses import dataclass, replace
from typing import Callable

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .state import StepResult


@dataclass(frozen=True)
class Backoff:
    kind: str = "exponential"  # exponential|fixed
    delay: float = 1.0
    max_delay: float = 60.0

    def wait_strategy(self):
        if self.kind == "fixed":
            return wait_fixed(self.delay)
        if self.kind == "exponential":
            return wait_exponential(multiplier=self.delay, min=self.delay, max=self.max_delay)
        raise ValueError(f"Unknown backoff kind {self.kind!r}")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    backoff: Backoff = Backoff()


def _failed(result: StepResult) -> bool:
    return not result.passed


def _out_of_time(time_left: Callable[[], float | None]):
    def _stop(state: RetryCallState) -> bool:
        left = time_left()
        return left is not None and left <= 0
    return _stop


def _capped(wait, time_left: Callable[[], float | None]):
    def _wait(state: RetryCallState) -> float:
        delay = wait(state)
        left = time_left()
        return delay if left is None else max(0.0, min(delay, left))
    return _wait


def with_retry(
    run_once: Callable[[], StepResult],
    max_attempts: int,
    backoff: Backoff,
    sleep: Callable[[float], None] | None = None,
    before_sleep: Callable[[int, StepResult], None] | None = None,
    time_left: Callable[[], float | None] | None = None,
) -> StepResult:
    """Call ``run_once`` until it passes or ``max_attempts`` calls were made.

    Returns the first passing result, otherwise the last one. Either way the
    returned result carries ``retries`` = number of calls beyond the first.

    When ``time_left`` is given, no further attempt is made once it reports
    zero or less, and each backoff wait is cut to the time left.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def _notify(state: RetryCallState) -> None:
        if before_sleep is not None:
            before_sleep(state.attempt_number, state.outcome.result())

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    stop = stop_after_attempt(max_attempts)
    wait = backoff.wait_strategy()
    if time_left is not None:
        stop = stop | _out_of_time(time_left)
        wait = _capped(wait, time_left)

    retrying = Retrying(
        stop=stop,
        wait=wait,
        retry=retry_if_result(_failed),
        before_sleep=_notify,
        retry_error_callback=lambda state: state.outcome.result(),
        **kwargs,
    )

    attempts = 0

    def _attempt() -> StepResult:
        nonlocal attempts
        attempts += 1
        return run_once()

    result = retrying(_attempt)
    return replace(result, retries=attempts - 1)
