"""Bounded exponential-backoff retry for storage operations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from mediastore.storage.errors import TransientIOError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


class RetryPolicy:
    """Retry an async operation on transient failures.

    Attempt ``n`` (0-based) that fails is followed by a sleep of
    ``base_delay * 2**n`` seconds plus up to ``jitter`` seconds of random
    delay. After ``max_attempts`` failures the last error is re-raised.
    Errors not listed in ``retry_on`` propagate immediately.

    Wrap a whole transaction in one operation; never retry part of one.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        jitter: float = 0.0,
        retry_on: tuple[type[BaseException], ...] = (TransientIOError,),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.jitter = jitter
        self.retry_on = retry_on

    def _wait(self):
        wait = wait_exponential(multiplier=self.base_delay, min=0)
        if self.jitter:
            wait = wait + wait_random(0, self.jitter)
        return wait

    def _retrying(self, name: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "storage_retry",
                operation=name,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(error),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=log_retry,
            sleep=_sleep,
            reraise=True,
        )

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """Run ``operation`` until it succeeds or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per call
            name: Operation name for logs

        Returns:
            The operation's result
        """
        try:
            async for attempt in self._retrying(name):
                with attempt:
                    return await operation()
        except self.retry_on as e:
            logger.error(
                "storage_retry_exhausted",
                operation=name,
                attempts=self.max_attempts,
                error=str(e),
            )
            raise
        raise AssertionError("unreachable")
