"""Exponential-backoff retry wrapper for fallible async operations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.telemetry.logger import get_logger

T = TypeVar("T")


class RetryStrategy:
    """Retry an async callable with delays of ``base_delay * 2 ** (attempt - 1)``.

    After the last attempt the error from that attempt is re-raised unchanged;
    the caller decides whether it is fatal.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        never_retry: tuple[type[BaseException], ...] = (),
        on_retry: Callable[[int, BaseException], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the strategy.

        Args:
            max_attempts: Total number of calls, including the first one
            base_delay: Delay in seconds before the first retry
            retry_on: Exception types that trigger a retry
            never_retry: Exception types that are raised immediately
            on_retry: Callback invoked with (attempt_number, error) before sleeping
            sleep: Coroutine used to wait between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.retry_on = retry_on
        self.never_retry = never_retry
        self.on_retry = on_retry
        self._sleep = sleep
        self.logger = get_logger(__name__)

    def delay_for(self, attempt: int) -> float:
        """Delay applied after the given (1-based) failed attempt."""
        return self.base_delay * 2 ** (attempt - 1)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.info(
            f"Attempt {retry_state.attempt_number} failed, retrying: {error}",
            extra={"operation": "retry_attempt", "attempt": retry_state.attempt_number},
        )
        if self.on_retry and error is not None:
            self.on_retry(retry_state.attempt_number, error)

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call ``fn(*args, **kwargs)`` until it succeeds or attempts run out."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            retry=(
                retry_if_exception_type(self.retry_on)
                & retry_if_not_exception_type(self.never_retry)
            ),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._before_sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await fn(*args, **kwargs)
        raise RuntimeError("retry loop exited without a result")
