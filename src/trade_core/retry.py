"""Bounded async retry with exponential backoff, built on tenacity."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)
from tenacity import RetryError as AttemptsExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryError(Exception):
    """All attempts failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"{label} failed after {attempts} attempt(s){detail}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 1.0,
    *,
    backoff: float = 2.0,
    max_delay: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
    retry_if_none: bool = False,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    """
    Call *fn* up to *attempts* times, sleeping ``delay * backoff**n`` between tries.

    Parameters
    ----------
    retry_on:
        Exception types that count as a failed attempt. Anything else propagates.
    give_up_on:
        Subclasses of *retry_on* that propagate immediately instead of being retried.
    retry_if_none:
        Treat a ``None`` result as a failed attempt.
    sleep:
        Awaitable used between attempts; tenacity's asyncio sleep by default.

    Raises
    ------
    RetryError
        When every attempt failed.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    retry = retry_if_exception_type(retry_on)
    if give_up_on:
        retry = retry & retry_if_not_exception_type(give_up_on)
    if retry_if_none:
        retry = retry | retry_if_result(lambda result: result is None)

    wait_kwargs: dict[str, float] = {"multiplier": delay, "exp_base": backoff}
    if max_delay is not None:
        wait_kwargs["max"] = max_delay

    def log_failed_attempt(state: RetryCallState) -> None:
        outcome = state.outcome
        if outcome is not None and outcome.failed:
            logger.warning(
                "%s attempt %d/%d failed: %s", label, state.attempt_number, attempts, outcome.exception()
            )
        else:
            logger.warning("%s attempt %d/%d returned nothing", label, state.attempt_number, attempts)

    options = dict(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(**wait_kwargs),
        retry=retry,
        after=log_failed_attempt,
    )
    if sleep is not None:
        options["sleep"] = sleep

    try:
        return await AsyncRetrying(**options)(fn)
    except AttemptsExhausted as exc:
        last = exc.last_attempt
        raise RetryError(label, attempts, last.exception() if last.failed else None) from None
