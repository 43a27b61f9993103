"""
Bounded retry with exponential backoff for store calls.

Every external call goes through RetryPolicy.call. Each attempt runs under
asyncio.wait_for; tenacity drives the backoff and stops at the attempt budget,
after which RetryExhausted carries the last error.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import RetryExhausted, TransientStoreError
from .logger import get_logger


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: delay(n) = base_delay * multiplier ** n, capped at max_delay.

    Attempt 0 runs immediately; attempt n waits delay(n - 1) first.
    """
    max_attempts: int = 4
    base_delay: float = 0.05
    multiplier: float = 2.0
    max_delay: float = 2.0
    timeout: Optional[float] = 5.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_config(cls, retry_config, timeout: Optional[float] = None) -> "RetryPolicy":
        return cls(
            max_attempts=retry_config.max_attempts,
            base_delay=retry_config.base_delay_seconds,
            multiplier=retry_config.multiplier,
            max_delay=retry_config.max_delay_seconds,
            timeout=timeout,
        )

    def get_delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

    def schedule(self) -> Tuple[float, ...]:
        """Delays slept between attempts, in order."""
        return tuple(self.get_delay(i) for i in range(self.max_attempts - 1))

    def _retrying(self, operation: str, retryable: Tuple[Type[BaseException], ...],
                  sleep: Callable[[float], Awaitable[None]]) -> AsyncRetrying:
        logger = get_logger("RetryPolicy")

        def log_retry(retry_state: RetryCallState):
            logger.debug(f"{operation}: retry {retry_state.attempt_number}/{self.max_attempts - 1} "
                         f"in {retry_state.next_action.sleep:.3f}s after {retry_state.outcome.exception()!r}")

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay),
            retry=retry_if_exception_type(retryable),
            before_sleep=log_retry,
            sleep=sleep,
        )

    async def call(self, operation: str, fn: Callable[..., Awaitable[Any]], *args,
                   retry_on: Tuple[Type[BaseException], ...] = (TransientStoreError,),
                   sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> Any:
        """
        Await fn(*args) with retries.

        Timeouts are always retried. Any exception outside retry_on propagates
        on its first occurrence.
        """
        retryable = tuple(retry_on) + (asyncio.TimeoutError,)
        try:
            async for attempt in self._retrying(operation, retryable, sleep):
                with attempt:
                    if self.timeout is not None:
                        result = await asyncio.wait_for(fn(*args), self.timeout)
                    else:
                        result = await fn(*args)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            get_logger("RetryPolicy").warning(
                f"{operation}: giving up after {self.max_attempts} attempts: {last_error!r}")
            raise RetryExhausted(operation, self.max_attempts, last_error) from last_error
        return result
